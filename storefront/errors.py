"""Error taxonomy for the storefront API.

Every error carries the HTTP status it maps to, a human readable ``message``
and an optional list of field level ``errors``. ``main`` installs the handler
that renders them as ``{"status": "error", "message": ..., "errors": [...]}``.
"""
from typing import List, Optional


class StorefrontError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[str]] = None):
        self.message = message or self.default_message
        self.errors = list(errors) if errors else []
        super().__init__(self.message)

    def to_body(self) -> dict:
        body = {"status": "error", "message": self.message}
        if self.errors:
            body["errors"] = self.errors
        return body


class ValidationFailed(StorefrontError):
    status_code = 400
    default_message = "Validation failed"


class Unauthenticated(StorefrontError):
    status_code = 401
    default_message = "Authentication required"


class Forbidden(StorefrontError):
    status_code = 403
    default_message = "Admin privileges required"


class NotFound(StorefrontError):
    status_code = 404
    default_message = "Not found"


class Conflict(StorefrontError):
    status_code = 400
    default_message = "Conflict"


class UpstreamProviderError(StorefrontError):
    status_code = 500
    default_message = "Payment provider request failed"


class PaymentProviderError(UpstreamProviderError):
    pass


class StorageUnavailable(StorefrontError):
    status_code = 500
    default_message = "Storage unavailable"


class ProductNotFound(StorefrontError):
    status_code = 400

    def __init__(self, product_id: int):
        self.product_id = product_id
        super().__init__(f"Product not found: id={product_id}")


class CouponNotFound(NotFound):
    default_message = "Coupon not found or not currently valid"


class UsageLimitReached(StorefrontError):
    status_code = 400
    default_message = "Coupon usage limit reached"


class InvalidCoupon(StorefrontError):
    status_code = 400
    default_message = "Coupon has invalid discount value"


class WebhookAuthenticationError(StorefrontError):
    status_code = 400


class SignatureInvalid(WebhookAuthenticationError):
    default_message = "Signature verification failed"


class TimestampExpired(WebhookAuthenticationError):
    default_message = "Webhook timestamp outside tolerance"
