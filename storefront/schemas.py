from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class RegisterIn(BaseModel):
    name: str = ""
    email: str = ""
    password: str = ""


class LoginIn(BaseModel):
    email: str = ""
    password: str = ""


class CouponValidateIn(BaseModel):
    code: str = ""
    order_total: Optional[Decimal] = None


class CheckoutItemIn(BaseModel):
    product_id: int
    quantity: int


class CheckoutCreate(BaseModel):
    items: List[CheckoutItemIn] = []
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    coupon_code: Optional[str] = None


class ProductIn(BaseModel):
    name: str = ""
    brand: str = ""
    category: str = ""
    description: str = ""
    price: Optional[Decimal] = None
    stock: int = 0
    image_url: Optional[str] = None


class UserUpdate(BaseModel):
    name: str = ""
    email: str = ""
    role: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    status: str = ""


class CouponIn(BaseModel):
    code: str = ""
    discount_type: str = ""
    discount_value: Optional[Decimal] = None
    valid_from: Optional[str] = None
    valid_to: Optional[str] = None
    is_active: bool = True
    usage_limit: Optional[int] = None


# Read models

class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    role: str
    is_verified: bool
    created_at: datetime


class ProfileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    gender: Optional[str] = None
    date_of_birth: Optional[date] = None


class VehicleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    year: Optional[int] = None
    make: str
    model: str
    engine: Optional[str] = None


class AddressOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    address_line1: str
    apartment: Optional[str] = None
    city: str
    postal_code: Optional[str] = None
    country: str


class ProductOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    brand: str
    category: str
    description: str
    price: Decimal
    stock: int
    image_url: Optional[str] = None
    created_at: datetime


class CouponOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    discount_type: str
    discount_value: Decimal
    valid_from: Optional[datetime] = None
    valid_to: Optional[datetime] = None
    is_active: bool
    usage_limit: Optional[int] = None
    used_count: int
    created_at: datetime


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: Optional[int] = None
    status: str
    total_amount: Decimal
    created_at: datetime


class OrderItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: Optional[int] = None
    product_name: str
    quantity: int
    unit_price: Decimal


def dump(schema, obj) -> dict:
    return schema.model_validate(obj).model_dump()
