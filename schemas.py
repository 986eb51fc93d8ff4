"""
Database Schemas

Each Pydantic model represents a MongoDB collection document (or a document
embedded in one). Model name lowercased is the collection name.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="BCrypt hashed password")
    role: str = Field("customer", description="Role: customer | admin | super-admin")
    created_at: datetime = Field(default_factory=_now)


class Product(BaseModel):
    name: str = Field(..., max_length=100)
    slug: Optional[str] = None
    description: str = Field("", max_length=2000)
    price: float = Field(..., ge=0)
    discount_price: Optional[float] = Field(None, ge=0)
    quantity: int = Field(..., ge=0)
    sold: int = Field(0, ge=0)
    status: str = Field("in stock", description="in stock | low stock | out of stock | draft")
    active: bool = True
    category: Optional[str] = None
    image: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    color: List[str] = Field(default_factory=list)
    size: List[str] = Field(default_factory=list)
    featured: bool = False
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class CartItem(BaseModel):
    cart_item_key: str
    product_id: str
    quantity: int = Field(..., ge=1)
    color: Optional[str] = None
    size: Optional[str] = None
    price: float = Field(..., ge=0, description="Unit price captured when the item was added")
    total_price: float = Field(..., ge=0)


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    total_items: int = 0
    total_price: float = 0


class OrderItem(BaseModel):
    product_id: str
    name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    total_price: float = Field(..., ge=0)
    color: Optional[str] = None
    size: Optional[str] = None
    image: Optional[str] = None


class ShippingAddress(BaseModel):
    full_name: str
    address: str
    city: str
    state: str
    postal_code: str
    country: str
    phone: str


class Payment(BaseModel):
    method: Literal["credit_card", "paypal", "cash_on_delivery", "bank_transfer"]
    transaction_id: Optional[str] = None
    status: Literal["pending", "paid", "failed"] = "pending"
    details: Optional[Dict[str, Any]] = None


class Order(BaseModel):
    user_id: str
    order_number: str
    items: List[OrderItem]
    shipping: Optional[ShippingAddress] = None
    payment: Optional[Payment] = None
    items_price: float = Field(..., ge=0)
    shipping_price: float = Field(..., ge=0)
    tax_price: float = Field(0, ge=0)
    total_price: float = Field(..., ge=0)
    status: str = Field("pending", description="pending | processing | shipped | delivered | cancelled | refunded | failed")
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class Category(BaseModel):
    name: str = Field(..., max_length=32)
    slug: Optional[str] = None
    description: Optional[str] = Field(None, max_length=500)
    image: Optional[str] = None
    active: bool = True
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class Address(BaseModel):
    user_id: str
    full_name: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str
    postal_code: str
    country: str
    phone: str
    is_default: bool = False
    type: Literal["shipping", "billing", "both"] = "both"
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
