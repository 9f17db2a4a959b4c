"""Checkout orchestration: cart -> Stripe Checkout Session, and the webhook
that reconciles the session once Stripe reports the outcome.

Prices always come from the products table, never from the client.
"""
import json
import logging
import re
from collections import OrderedDict
from typing import List, NamedTuple, Optional, Tuple

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import config
from .coupons import validate_coupon
from .crud import create_order_from_checkout
from .database import utcnow
from .errors import ProductNotFound, UpstreamProviderError, ValidationFailed
from .models import CheckoutSession, CheckoutSessionItem, Product, User
from .payments import StripeClient, to_minor_units, verify_signature
from .schemas import CheckoutCreate, CheckoutItemIn

logger = logging.getLogger(__name__)

ACK = {"status": "ok"}
SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_]+$")
TRACKING_ERROR = "Checkout created but local tracking failed"


class LineSnapshot(NamedTuple):
    product_id: int
    name: str
    unit_amount: int
    quantity: int


def normalize_items(items: List[CheckoutItemIn]) -> List[Tuple[int, int]]:
    """Validate cart lines and merge duplicates; returns (product_id, quantity) pairs."""
    if not items:
        raise ValidationFailed("items must be a non-empty array")
    errors = []
    merged = OrderedDict()
    for idx, item in enumerate(items):
        if item.product_id <= 0 or item.quantity <= 0:
            errors.append(f"items[{idx}]: product_id and quantity must be positive integers")
            continue
        merged[item.product_id] = merged.get(item.product_id, 0) + item.quantity
    if errors:
        raise ValidationFailed("Invalid items", errors=errors)
    return list(merged.items())


def _resolve_products(db: Session, lines: List[Tuple[int, int]]) -> List[Tuple[Product, int]]:
    ids = [product_id for product_id, _ in lines]
    found = {p.id: p for p in db.query(Product).filter(Product.id.in_(ids)).all()}
    resolved = []
    for product_id, quantity in lines:
        product = found.get(product_id)
        if product is None:
            raise ProductNotFound(product_id)
        resolved.append((product, quantity))
    return resolved


def _checkout_form(lines: List[LineSnapshot], currency: str, user_id: int, email: str,
                   success_url: str, cancel_url: str, provider_coupon: Optional[str]) -> dict:
    form = {
        "mode": "payment",
        "success_url": success_url,
        "cancel_url": cancel_url,
        "client_reference_id": str(user_id),
        "customer_email": email,
        "metadata[user_id]": str(user_id),
    }
    for idx, line in enumerate(lines):
        prefix = f"line_items[{idx}]"
        form[f"{prefix}[quantity]"] = str(line.quantity)
        form[f"{prefix}[price_data][currency]"] = currency
        form[f"{prefix}[price_data][unit_amount]"] = str(line.unit_amount)
        form[f"{prefix}[price_data][product_data][name]"] = line.name
    if provider_coupon:
        form["discounts[0][coupon]"] = provider_coupon
    return form


def create_checkout(db: Session, client: StripeClient, user: User, data: CheckoutCreate) -> dict:
    resolved = _resolve_products(db, normalize_items(data.items))
    currency = config.STRIPE_CURRENCY
    # commits below expire every loaded instance; nothing after them may lazy-load
    lines = [LineSnapshot(p.id, p.name, to_minor_units(p.price), q) for p, q in resolved]
    user_id, email = user.id, user.email
    subtotal = sum(line.unit_amount * line.quantity for line in lines)

    quote = None
    discount = 0
    if data.coupon_code and data.coupon_code.strip():
        quote = validate_coupon(db, data.coupon_code, sum(p.price * q for p, q in resolved))
        discount = min(to_minor_units(quote.discount_amount), subtotal)
    coupon_id = quote.coupon.id if quote else None
    coupon_code = quote.coupon.code if quote else None
    amount_total = subtotal - discount

    tracking_error = None
    checkout_id = None
    try:
        checkout = CheckoutSession(
            user_id=user_id,
            status="created",
            amount_total=amount_total,
            currency=currency,
            discount_amount=discount,
            coupon_id=coupon_id,
        )
        db.add(checkout)
        db.flush()
        checkout_id = checkout.id
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("could not record checkout for user %s: %s", user_id, e)
        checkout_id = None
        tracking_error = TRACKING_ERROR

    provider_coupon = None
    if discount > 0:
        provider_coupon = client.create_coupon(discount, currency, f"Coupon {coupon_code}")["id"]

    success_url = data.success_url or f"{config.FRONTEND_URL}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}"
    cancel_url = data.cancel_url or f"{config.FRONTEND_URL}/cart"
    session = client.create_checkout_session(
        _checkout_form(lines, currency, user_id, email, success_url, cancel_url, provider_coupon)
    )
    logger.info("checkout session %s created for user %s amount=%s %s",
                session["id"], user_id, amount_total, currency)

    if checkout_id is not None:
        try:
            db.execute(
                update(CheckoutSession)
                .where(CheckoutSession.id == checkout_id)
                .values(stripe_session_id=session["id"], updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            db.add_all([
                CheckoutSessionItem(
                    checkout_session_id=checkout_id,
                    product_id=line.product_id,
                    name_snapshot=line.name,
                    unit_amount=line.unit_amount,
                    quantity=line.quantity,
                )
                for line in lines
            ])
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning("could not attach stripe session %s to checkout %s: %s", session["id"], checkout_id, e)
            tracking_error = TRACKING_ERROR

    result = {
        "status": "ok",
        "checkout_url": session["url"],
        "stripe_session_id": session["id"],
        "amount_total": amount_total,
        "currency": currency,
        "discount_amount": discount,
    }
    if tracking_error:
        result["tracking_error"] = tracking_error
    return result


def session_status(client: StripeClient, session_id: Optional[str]) -> dict:
    session_id = (session_id or "").strip()
    if not session_id:
        raise ValidationFailed("session_id is required")
    if not SESSION_ID_RE.match(session_id):
        raise ValidationFailed("Invalid session_id")
    body = client.retrieve_checkout_session(session_id)
    return {
        "status": "ok",
        "id": body.get("id"),
        "payment_status": body.get("payment_status"),
        "amount_total": body.get("amount_total"),
        "currency": body.get("currency"),
    }


# ---------- webhook ----------

def _filled_amounts(obj: dict) -> dict:
    values = {}
    amount = obj.get("amount_total")
    if isinstance(amount, int) and not isinstance(amount, bool):
        values["amount_total"] = func.coalesce(CheckoutSession.amount_total, amount)
    currency = obj.get("currency")
    if isinstance(currency, str) and currency:
        values["currency"] = func.coalesce(CheckoutSession.currency, currency.lower()[:3])
    return values


def _mark_paid(db: Session, session_id: str, obj: dict):
    result = db.execute(
        update(CheckoutSession)
        .where(CheckoutSession.stripe_session_id == session_id, CheckoutSession.status != "paid")
        .values(status="paid", updated_at=utcnow(), **_filled_amounts(obj))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info("checkout %s: completed event changed nothing (unknown or already paid)", session_id)
        return
    checkout = (
        db.query(CheckoutSession)
        .filter(CheckoutSession.stripe_session_id == session_id)
        .populate_existing()
        .one()
    )
    order = create_order_from_checkout(db, checkout)
    logger.info("checkout %s paid -> order %s", session_id, order.id)


def _mark_expired(db: Session, session_id: str, obj: dict):
    result = db.execute(
        update(CheckoutSession)
        .where(CheckoutSession.stripe_session_id == session_id, CheckoutSession.status == "created")
        .values(status="expired", updated_at=utcnow(), **_filled_amounts(obj))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info("checkout %s: expired event changed nothing", session_id)
    else:
        logger.info("checkout %s expired", session_id)


HANDLERS = {
    "checkout.session.completed": _mark_paid,
    "checkout.session.expired": _mark_expired,
}


def handle_webhook(db: Session, payload: bytes, signature_header: Optional[str], now: Optional[float] = None) -> dict:
    """Authenticate and apply one Stripe event.

    Only authentication problems are reported back to Stripe. Anything wrong
    after that (odd payloads, unknown sessions, storage failures) is logged
    and acknowledged so Stripe stops retrying.
    """
    secret = config.STRIPE_WEBHOOK_SECRET
    if not secret:
        raise UpstreamProviderError("Stripe webhook secret is not configured")
    verify_signature(payload, signature_header or "", secret, now=now)

    try:
        event = json.loads(payload)
    except ValueError:
        logger.warning("webhook payload is not valid JSON; ignoring")
        return ACK
    if not isinstance(event, dict):
        logger.warning("webhook payload is not an object; ignoring")
        return ACK

    event_type = event.get("type")
    data = event.get("data")
    obj = data.get("object") if isinstance(data, dict) else None
    handler = HANDLERS.get(event_type)
    if handler is None:
        logger.info("webhook event %s ignored", event_type)
        return ACK
    if not isinstance(obj, dict) or not isinstance(obj.get("id"), str) or not obj.get("id"):
        logger.warning("webhook event %s without a session id; ignoring", event_type)
        return ACK

    try:
        handler(db, obj["id"], obj)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("webhook event %s for %s could not be applied", event_type, obj["id"])
    return ACK
