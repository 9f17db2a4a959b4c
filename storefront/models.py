import uuid

from sqlalchemy import (
    JSON, Boolean, Column, Date, DateTime, ForeignKey, Integer, Numeric, String, Text,
)
from sqlalchemy.orm import relationship

from .database import Base, utcnow

USER_ROLES = ("user", "admin")
ORDER_STATUSES = ("pending", "paid", "shipped", "cancelled", "refunded")
DISCOUNT_TYPES = ("percent", "fixed")
CHECKOUT_STATUSES = ("created", "paid", "expired")


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(120), nullable=False)
    email = Column(String(255), nullable=False, unique=True, index=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(16), nullable=False, default="user")
    is_verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class UserProfile(Base):
    __tablename__ = "user_profiles"
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    gender = Column(String(16), nullable=True)
    date_of_birth = Column(Date, nullable=True)


class UserVehicle(Base):
    __tablename__ = "user_vehicles"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    year = Column(Integer, nullable=True)
    make = Column(String(64), nullable=False)
    model = Column(String(64), nullable=False)
    engine = Column(String(64), nullable=True)
    is_primary = Column(Boolean, nullable=False, default=False)


class UserAddress(Base):
    __tablename__ = "user_addresses"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    address_line1 = Column(String(255), nullable=False)
    apartment = Column(String(64), nullable=True)
    city = Column(String(120), nullable=False)
    postal_code = Column(String(20), nullable=True)
    country = Column(String(64), nullable=False)
    is_default = Column(Boolean, nullable=False, default=False)


class EmailVerification(Base):
    __tablename__ = "email_verifications"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token_hash = Column(String(64), nullable=False, unique=True, index=True)
    expires_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class UserSession(Base):
    __tablename__ = "user_sessions"
    id = Column(String(64), primary_key=True)  # sha256 of the cookie value
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Product(Base):
    __tablename__ = "products"
    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    brand = Column(String(120), nullable=False)
    category = Column(String(120), nullable=False, index=True)
    description = Column(Text, nullable=False, default="")
    price = Column(Numeric(10, 2), nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    image_url = Column(String(500), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Coupon(Base):
    __tablename__ = "coupons"
    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(64), nullable=False, unique=True, index=True)
    discount_type = Column(String(16), nullable=False)
    discount_value = Column(Numeric(10, 2), nullable=False)
    valid_from = Column(DateTime, nullable=True)
    valid_to = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    usage_limit = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Order(Base):
    __tablename__ = "orders"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    status = Column(String(16), nullable=False, default="pending")
    total_amount = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    items = relationship("OrderItem", back_populates="order", order_by="OrderItem.id")


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True)
    product_name = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    order = relationship("Order", back_populates="items")


class CheckoutSession(Base):
    __tablename__ = "stripe_checkout_sessions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    stripe_session_id = Column(String(255), nullable=True, unique=True)
    status = Column(String(16), nullable=False, default="created")
    amount_total = Column(Integer, nullable=True)  # minor units
    currency = Column(String(3), nullable=True)
    discount_amount = Column(Integer, nullable=False, default=0)
    coupon_id = Column(Integer, ForeignKey("coupons.id", ondelete="SET NULL"), nullable=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    items = relationship("CheckoutSessionItem", back_populates="checkout_session",
                         order_by="CheckoutSessionItem.id")


class CheckoutSessionItem(Base):
    __tablename__ = "stripe_checkout_session_items"
    id = Column(Integer, primary_key=True, autoincrement=True)
    checkout_session_id = Column(Integer, ForeignKey("stripe_checkout_sessions.id", ondelete="CASCADE"),
                                 nullable=False)
    product_id = Column(Integer, nullable=False)
    name_snapshot = Column(String(255), nullable=False)
    unit_amount = Column(Integer, nullable=False)
    quantity = Column(Integer, nullable=False)
    checkout_session = relationship("CheckoutSession", back_populates="items")


class EventOutbox(Base):
    __tablename__ = "event_outbox"
    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(64), nullable=False)
    event_id = Column(String(36), nullable=False, default=lambda: str(uuid.uuid4()))
    occurred_at = Column(DateTime, nullable=False, default=utcnow)
    version = Column(Integer, nullable=False, default=1)
    payload = Column(JSON, nullable=False)
    published_at = Column(DateTime, nullable=True)
    status = Column(String(16), nullable=False, default="NEW", index=True)


class ProcessedEvent(Base):
    __tablename__ = "processed_events"
    service_name = Column(String(64), primary_key=True)
    event_id = Column(String(64), primary_key=True)
    processed_at = Column(DateTime, nullable=False, default=utcnow)
