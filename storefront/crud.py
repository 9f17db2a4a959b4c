import logging
from datetime import datetime, time, timezone
from decimal import Decimal
from typing import Optional

from email_validator import EmailNotValidError, validate_email
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .coupons import redeem
from .errors import Conflict, NotFound, StorageUnavailable, ValidationFailed
from .models import (
    DISCOUNT_TYPES, ORDER_STATUSES, USER_ROLES, CheckoutSession, Coupon, EventOutbox, Order, OrderItem,
    Product, User, UserAddress, UserProfile, UserVehicle,
)
from .payments import from_minor_units
from .schemas import (
    AddressOut, CouponIn, CouponOut, OrderItemOut, OrderOut, ProductIn, ProductOut, ProfileOut, UserUpdate,
    VehicleOut, dump,
)

logger = logging.getLogger(__name__)

RECENT_ORDERS_LIMIT = 20


def add_outbox_event(db: Session, event_type: str, payload: dict) -> EventOutbox:
    event = EventOutbox(event_type=event_type, payload=payload)
    db.add(event)
    return event


def _commit(db: Session, failure: str):
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("%s: %s", failure, e)
        raise StorageUnavailable(failure) from e


def _user_summary(user: User) -> dict:
    return {"id": user.id, "name": user.name, "email": user.email, "role": user.role,
            "is_verified": user.is_verified, "created_at": user.created_at}


# ---------- account profile ----------

def _dump_or_none(schema, obj):
    return dump(schema, obj) if obj is not None else None


def get_profile(db: Session, user: User) -> dict:
    """The signed-in user with profile, primary vehicle and default address; each may be None."""
    user_id = user.id
    try:
        profile = db.get(UserProfile, user_id)
        vehicle = (
            db.query(UserVehicle)
            .filter(UserVehicle.user_id == user_id)
            .order_by(UserVehicle.is_primary.desc(), UserVehicle.id.desc())
            .first()
        )
        address = (
            db.query(UserAddress)
            .filter(UserAddress.user_id == user_id)
            .order_by(UserAddress.is_default.desc(), UserAddress.id.desc())
            .first()
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("profile for user %s could not be loaded: %s", user_id, e)
        raise StorageUnavailable("Failed to load profile") from e
    return {
        "user": _user_summary(user),
        "profile": _dump_or_none(ProfileOut, profile),
        "vehicle": _dump_or_none(VehicleOut, vehicle),
        "address": _dump_or_none(AddressOut, address),
    }


# ---------- products ----------

def _product_fields(data: ProductIn) -> dict:
    fields = {
        "name": data.name.strip(),
        "brand": data.brand.strip(),
        "category": data.category.strip(),
        "description": data.description.strip(),
        "price": data.price,
        "stock": data.stock,
        "image_url": (data.image_url or "").strip() or None,
    }
    errors = []
    for key in ("name", "brand", "category"):
        if not fields[key]:
            errors.append(f"{key} is required")
    if fields["price"] is None or not fields["price"].is_finite() or fields["price"] <= 0:
        errors.append("price must be a positive number")
    if fields["stock"] < 0:
        errors.append("stock cannot be negative")
    if errors:
        raise ValidationFailed(errors=errors)
    return fields


def _get_or_404(db: Session, model, obj_id: int, label: str):
    obj = db.get(model, obj_id) if obj_id > 0 else None
    if obj is None:
        raise NotFound(f"{label} not found")
    return obj


def create_product(db: Session, data: ProductIn) -> dict:
    product = Product(**_product_fields(data))
    db.add(product)
    _commit(db, "Failed to create product")
    db.refresh(product)
    logger.info("product created id=%s", product.id)
    return dump(ProductOut, product)


def update_product(db: Session, product_id: int, data: ProductIn) -> dict:
    product = _get_or_404(db, Product, product_id, "Product")
    for key, value in _product_fields(data).items():
        setattr(product, key, value)
    _commit(db, "Failed to update product")
    db.refresh(product)
    return dump(ProductOut, product)


def delete_product(db: Session, product_id: int) -> dict:
    product = _get_or_404(db, Product, product_id, "Product")
    summary = {
        "id": product.id,
        "name": product.name,
        "brand": product.brand,
        "category": product.category,
        "price": product.price,
        "stock": product.stock,
        "deleted": True,
    }
    db.delete(product)
    _commit(db, "Failed to delete product")
    logger.info("product deleted id=%s", product_id)
    return summary


# ---------- users ----------

def get_user_detail(db: Session, user_id: int) -> dict:
    """The user plus their most recent orders.

    Orders are a secondary load: if that query fails the user is still
    returned, with ``orders_error`` explaining what is missing.
    """
    user = _get_or_404(db, User, user_id, "User")
    result = {"user": _user_summary(user), "orders": []}
    try:
        orders = (
            db.query(Order)
            .filter(Order.user_id == user.id)
            .order_by(Order.created_at.desc(), Order.id.desc())
            .limit(RECENT_ORDERS_LIMIT)
            .all()
        )
        result["orders"] = [dump(OrderOut, o) for o in orders]
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("orders for user %s could not be loaded: %s", user_id, e)
        result["orders_error"] = "Failed to load orders"
    return result


def update_user(db: Session, admin: User, user_id: int, data: UserUpdate) -> dict:
    user = _get_or_404(db, User, user_id, "User")

    name = data.name.strip()
    email = data.email.strip().lower()
    errors = []
    if not name:
        errors.append("name is required")
    if not email:
        errors.append("email is required")
    else:
        try:
            validate_email(email, check_deliverability=False)
        except EmailNotValidError:
            errors.append("Valid email is required")
    role = data.role.strip() if data.role is not None else None
    if role is not None and role not in USER_ROLES:
        errors.append("Invalid role value")
    if errors:
        raise ValidationFailed(errors=errors)

    if role == "user" and user.id == admin.id:
        raise Conflict("You cannot remove your own admin role")
    if db.query(User.id).filter(User.email == email, User.id != user.id).first():
        raise Conflict("Email is already registered")

    user.name = name
    user.email = email
    if role is not None:
        user.role = role
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("Email is already registered")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("updating user %s failed: %s", user_id, e)
        raise StorageUnavailable("Failed to update user") from e
    db.refresh(user)
    return _user_summary(user)


def delete_user(db: Session, admin: User, user_id: int) -> dict:
    user = _get_or_404(db, User, user_id, "User")
    if user.id == admin.id:
        raise Conflict("You cannot delete your own account from admin panel")
    summary = {"id": user.id, "name": user.name, "email": user.email, "role": user.role, "deleted": True}
    db.delete(user)
    _commit(db, "Failed to delete user")
    logger.info("user deleted id=%s by admin=%s", user_id, admin.id)
    return summary


# ---------- orders ----------

def get_order_detail(db: Session, order_id: int) -> dict:
    order = _get_or_404(db, Order, order_id, "Order")
    user = db.get(User, order.user_id) if order.user_id is not None else None
    data = dump(OrderOut, order)
    data["user_name"] = user.name if user else None
    data["user_email"] = user.email if user else None

    result = {"order": data, "items": []}
    try:
        items = db.query(OrderItem).filter(OrderItem.order_id == order.id).order_by(OrderItem.id).all()
        result["items"] = [dump(OrderItemOut, i) for i in items]
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning("items for order %s could not be loaded: %s", order_id, e)
        result["items_error"] = "Failed to load order items"
    return result


def update_order_status(db: Session, order_id: int, status: str) -> dict:
    # any status may follow any other: admins use this as a manual override
    status = (status or "").strip()
    if status not in ORDER_STATUSES:
        raise ValidationFailed("Invalid status value",
                               errors=[f"status must be one of: {', '.join(ORDER_STATUSES)}"])
    order = _get_or_404(db, Order, order_id, "Order")
    previous = order.status
    order.status = status
    _commit(db, "Failed to update order status")
    db.refresh(order)
    logger.info("order %s status %s -> %s", order_id, previous, status)
    return dump(OrderOut, order)


def create_order_from_checkout(db: Session, checkout: CheckoutSession) -> Order:
    """
    In the caller's transaction:
    - orders / order_items from the checkout line-item snapshot
    - one coupon redemption, if the checkout used a coupon
    - order.paid outbox event
    """
    total_amount = from_minor_units(checkout.amount_total or 0)
    order = Order(user_id=checkout.user_id, status="paid", total_amount=total_amount)
    db.add(order)
    db.flush()

    for item in checkout.items:
        product_id = item.product_id if db.get(Product, item.product_id) is not None else None
        db.add(OrderItem(
            order_id=order.id,
            product_id=product_id,
            product_name=item.name_snapshot,
            quantity=item.quantity,
            unit_price=from_minor_units(item.unit_amount),
        ))

    if checkout.coupon_id is not None and not redeem(db, checkout.coupon_id):
        logger.warning("coupon %s exhausted before checkout %s was paid", checkout.coupon_id, checkout.id)

    checkout.order_id = order.id
    user = db.get(User, checkout.user_id) if checkout.user_id is not None else None
    add_outbox_event(db, "order.paid", {
        "order_id": order.id,
        "user_id": checkout.user_id,
        "email": user.email if user else None,
        "name": user.name if user else None,
        "total_amount": str(total_amount),
        "currency": checkout.currency,
    })
    return order


# ---------- coupons ----------

def _parse_moment(raw: Optional[str], label: str, errors: list, end_of_day: bool = False) -> Optional[datetime]:
    value = (raw or "").strip()
    if not value:
        return None
    try:
        moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        errors.append(f"{label} must be a valid date")
        return None
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    elif end_of_day and len(value) == 10:
        moment = datetime.combine(moment.date(), time.max)
    return moment


def _coupon_fields(data: CouponIn) -> dict:
    errors = []
    code = data.code.strip()
    discount_type = data.discount_type.strip()
    value = data.discount_value if data.discount_value is not None else Decimal(0)

    if not code:
        errors.append("code is required")
    if discount_type not in DISCOUNT_TYPES:
        errors.append("discount_type must be one of: percent, fixed")
    if not value.is_finite() or value <= 0:
        errors.append("discount_value must be greater than 0")
    elif discount_type == "percent" and value > 100:
        errors.append("percent discount_value cannot be greater than 100")
    if data.usage_limit is not None and data.usage_limit < 0:
        errors.append("usage_limit cannot be negative")

    valid_from = _parse_moment(data.valid_from, "valid_from", errors)
    valid_to = _parse_moment(data.valid_to, "valid_to", errors, end_of_day=True)
    if valid_from and valid_to and valid_from > valid_to:
        errors.append("valid_from must not be after valid_to")

    if errors:
        raise ValidationFailed(errors=errors)
    return {
        "code": code,
        "discount_type": discount_type,
        "discount_value": value,
        "valid_from": valid_from,
        "valid_to": valid_to,
        "is_active": data.is_active,
        "usage_limit": data.usage_limit,
    }


def _ensure_unique_code(db: Session, code: str, exclude_id: Optional[int] = None):
    query = db.query(Coupon.id).filter(Coupon.code == code)
    if exclude_id is not None:
        query = query.filter(Coupon.id != exclude_id)
    if query.first():
        raise Conflict("Coupon code already exists")


def _commit_coupon(db: Session, failure: str):
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict("Coupon code already exists")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("%s: %s", failure, e)
        raise StorageUnavailable(failure) from e


def create_coupon(db: Session, data: CouponIn) -> dict:
    fields = _coupon_fields(data)
    _ensure_unique_code(db, fields["code"])
    coupon = Coupon(used_count=0, **fields)
    db.add(coupon)
    _commit_coupon(db, "Failed to create coupon")
    db.refresh(coupon)
    logger.info("coupon created id=%s code=%s", coupon.id, coupon.code)
    return dump(CouponOut, coupon)


def update_coupon(db: Session, coupon_id: int, data: CouponIn) -> dict:
    coupon = _get_or_404(db, Coupon, coupon_id, "Coupon")
    fields = _coupon_fields(data)
    _ensure_unique_code(db, fields["code"], exclude_id=coupon.id)
    for key, value in fields.items():
        setattr(coupon, key, value)
    _commit_coupon(db, "Failed to update coupon")
    db.refresh(coupon)
    return dump(CouponOut, coupon)


def deactivate_coupon(db: Session, coupon_id: int) -> dict:
    coupon = _get_or_404(db, Coupon, coupon_id, "Coupon")
    coupon.is_active = False
    _commit(db, "Failed to deactivate coupon")
    return {
        "id": coupon.id,
        "code": coupon.code,
        "discount_type": coupon.discount_type,
        "discount_value": coupon.discount_value,
        "usage_limit": coupon.usage_limit,
        "used_count": coupon.used_count,
        "is_active": False,
        "deleted": True,
    }
