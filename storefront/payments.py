"""Stripe boundary: money conversion, the HTTP client and webhook signatures."""
import hashlib
import hmac
import logging
import time
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional, Tuple

import httpx

from . import config
from .errors import PaymentProviderError, SignatureInvalid, TimestampExpired

logger = logging.getLogger(__name__)


def to_minor_units(amount) -> int:
    """Major currency units -> integer cents, rounding half up. The only place this happens."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(cents: int) -> Decimal:
    return (Decimal(int(cents)) / 100).quantize(Decimal("0.01"))


class StripeClient:
    def __init__(self, secret_key: str, base_url: Optional[str] = None,
                 timeout: Optional[float] = None, transport: Optional[httpx.BaseTransport] = None):
        self._http = httpx.Client(
            base_url=base_url or config.STRIPE_API_BASE,
            headers={"Authorization": f"Bearer {secret_key}"},
            timeout=timeout or config.STRIPE_TIMEOUT_SEC,
            transport=transport,
        )

    def close(self):
        self._http.close()

    def _request(self, method: str, path: str, data: Optional[dict] = None) -> dict:
        try:
            resp = self._http.request(method, path, data=data)
        except httpx.HTTPError as e:
            logger.error("stripe %s %s failed: %s", method, path, e)
            raise PaymentProviderError("Stripe request failed") from e

        try:
            body = resp.json()
        except ValueError:
            body = None
        if not resp.is_success or not isinstance(body, dict):
            logger.error("stripe %s %s returned http=%s body=%s", method, path, resp.status_code, body)
            raise PaymentProviderError("Stripe returned an error")
        return body

    def create_checkout_session(self, form: dict) -> dict:
        body = self._request("POST", "/checkout/sessions", data=form)
        if not body.get("id") or not body.get("url"):
            logger.error("stripe checkout session response missing id/url: %s", body)
            raise PaymentProviderError("Stripe returned an error")
        return body

    def retrieve_checkout_session(self, session_id: str) -> dict:
        return self._request("GET", f"/checkout/sessions/{session_id}")

    def create_coupon(self, amount_off: int, currency: str, name: str) -> dict:
        body = self._request("POST", "/coupons", data={
            "amount_off": str(amount_off),
            "currency": currency,
            "duration": "once",
            "name": name[:40],
        })
        if not body.get("id"):
            logger.error("stripe coupon response missing id: %s", body)
            raise PaymentProviderError("Stripe returned an error")
        return body


def get_payment_client():
    if not config.STRIPE_SECRET_KEY:
        raise PaymentProviderError("Stripe is not configured (missing STRIPE_SECRET_KEY)")
    client = StripeClient(config.STRIPE_SECRET_KEY)
    try:
        yield client
    finally:
        client.close()


# ---------- webhook signatures ----------

def parse_signature_header(header: str) -> Tuple[Optional[str], List[str]]:
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def compute_signature(secret: str, timestamp: str, payload: bytes) -> str:
    signed = timestamp.encode("utf-8") + b"." + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, header: str, secret: str,
                     tolerance: Optional[int] = None, now: Optional[float] = None) -> int:
    """Authenticate a webhook delivery; returns its timestamp.

    ``header`` is the raw ``Stripe-Signature`` value: ``t=<unix>,v1=<hex>``,
    possibly with several ``v1`` entries during secret rotation.
    """
    if not header:
        raise SignatureInvalid("Missing Stripe-Signature header")
    timestamp, signatures = parse_signature_header(header)
    if timestamp is None or not signatures:
        raise SignatureInvalid("Invalid Stripe-Signature header")
    try:
        issued_at = int(timestamp)
    except ValueError:
        raise SignatureInvalid("Invalid Stripe-Signature header")

    tolerance = config.WEBHOOK_TOLERANCE_SEC if tolerance is None else tolerance
    now = time.time() if now is None else now
    if abs(now - issued_at) > tolerance:
        raise TimestampExpired()

    expected = compute_signature(secret, timestamp, payload)
    if not any(hmac.compare_digest(expected.encode("ascii"), candidate.encode("utf-8")) for candidate in signatures):
        raise SignatureInvalid()
    return issued_at
