import logging
from typing import Mapping

from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import NotFound, StorageUnavailable, ValidationFailed
from .models import DISCOUNT_TYPES, ORDER_STATUSES, USER_ROLES, Coupon, Order, Product, User
from .querying import (
    Exact, Listing, Page, Predicate, Range, Search, as_date, as_decimal, as_flag, as_positive_int,
    end_of_day_exclusive, one_of, run_listing, start_of_day,
)
from .schemas import CouponOut, OrderOut, ProductOut, dump

logger = logging.getLogger(__name__)


def _order_row(row) -> dict:
    order, user_name, user_email = row
    data = dump(OrderOut, order)
    data["user_name"] = user_name
    data["user_email"] = user_email
    return data


def _user_row(row) -> dict:
    user = row[0]
    return {"id": user.id, "name": user.name, "email": user.email, "role": user.role,
            "is_verified": user.is_verified, "created_at": user.created_at}


PRODUCTS = Listing(
    entity="products",
    base=lambda: select(Product),
    filters=(
        Search("q", (Product.name, Product.brand, Product.category)),
        Exact("id", Product.id, as_positive_int),
        Exact("category", Product.category),
        Exact("brand", Product.brand),
        Range("min_price", Product.price, "ge", as_decimal),
        Range("max_price", Product.price, "le", as_decimal),
    ),
    sorts={
        "newest": (Product.created_at.desc(), Product.id.desc()),
        "price_asc": (Product.price.asc(), Product.id.asc()),
        "price_desc": (Product.price.desc(), Product.id.desc()),
        "name_asc": (Product.name.asc(), Product.id.asc()),
        "name_desc": (Product.name.desc(), Product.id.desc()),
    },
    default_sort="newest",
    row=lambda r: dump(ProductOut, r[0]),
)

USERS = Listing(
    entity="users",
    base=lambda: select(User),
    filters=(
        Search("q", (User.name, User.email)),
        Exact("role", User.role, one_of(*USER_ROLES)),
    ),
    sorts={
        "newest": (User.id.desc(),),
        "name_asc": (User.name.asc(), User.id.asc()),
        "name_desc": (User.name.desc(), User.id.desc()),
    },
    default_sort="newest",
    row=_user_row,
)

ORDERS = Listing(
    entity="orders",
    base=lambda: (
        select(Order, User.name.label("user_name"), User.email.label("user_email"))
        .outerjoin(User, Order.user_id == User.id)
    ),
    filters=(
        Search("q", (User.name, User.email)),
        Exact("status", Order.status, one_of(*ORDER_STATUSES)),
        Exact("user_id", Order.user_id, as_positive_int),
        Predicate("date_from", as_date, lambda d: Order.created_at >= start_of_day(d)),
        Predicate("date_to", as_date, lambda d: Order.created_at < end_of_day_exclusive(d)),
    ),
    sorts={
        "newest": (Order.created_at.desc(), Order.id.desc()),
        "oldest": (Order.created_at.asc(), Order.id.asc()),
        "total_asc": (Order.total_amount.asc(), Order.id.asc()),
        "total_desc": (Order.total_amount.desc(), Order.id.desc()),
    },
    default_sort="newest",
    row=_order_row,
)

COUPONS = Listing(
    entity="coupons",
    base=lambda: select(Coupon),
    filters=(
        Search("q", (Coupon.code,)),
        Exact("discount_type", Coupon.discount_type, one_of(*DISCOUNT_TYPES)),
        Exact("is_active", Coupon.is_active, as_flag),
        Predicate("valid_on", as_date, lambda d: and_(
            or_(Coupon.valid_from.is_(None), Coupon.valid_from < end_of_day_exclusive(d)),
            or_(Coupon.valid_to.is_(None), Coupon.valid_to >= start_of_day(d)),
        )),
    ),
    sorts={
        "newest": (Coupon.created_at.desc(), Coupon.id.desc()),
        "code_asc": (Coupon.code.asc(), Coupon.id.asc()),
    },
    default_sort="newest",
    row=lambda r: dump(CouponOut, r[0]),
)

LISTINGS = {listing.entity: listing for listing in (PRODUCTS, USERS, ORDERS, COUPONS)}


def list_entities(db: Session, entity: str, params: Mapping[str, str]) -> Page:
    return run_listing(db, LISTINGS[entity], params)


def get_product(db: Session, product_id: int) -> dict:
    if product_id <= 0:
        raise ValidationFailed("Invalid product id")
    try:
        product = db.get(Product, product_id)
    except SQLAlchemyError as e:
        logger.error("loading product %s failed: %s", product_id, e)
        raise StorageUnavailable("Failed to fetch product") from e
    if product is None:
        raise NotFound("Product not found")
    return dump(ProductOut, product)


def category_summary(db: Session) -> list:
    try:
        rows = db.execute(
            select(Product.category, func.count(Product.id).label("product_count"))
            .group_by(Product.category)
            .order_by(Product.category)
        ).all()
    except SQLAlchemyError as e:
        logger.error("category summary failed: %s", e)
        raise StorageUnavailable("Failed to fetch categories") from e
    return [{"category": category, "product_count": count} for category, count in rows]


def product_count(db: Session) -> int:
    try:
        return db.execute(select(func.count(Product.id))).scalar_one()
    except SQLAlchemyError as e:
        logger.error("health query failed: %s", e)
        raise StorageUnavailable("Query failed") from e
