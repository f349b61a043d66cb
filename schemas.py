"""
Storage Schemas

Each Pydantic model below is one collection of the in-memory store.
Records are immutable: the store replaces a record instead of mutating it,
so a model handed out by the store can never drift from what is stored.
"""

from datetime import datetime
from typing import List, Literal, Optional, get_args

from pydantic import BaseModel, ConfigDict, EmailStr, Field

UserRole = Literal["user", "admin"]
ProductCategory = Literal["women", "men", "accessories"]
OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]

ORDER_STATUSES = get_args(OrderStatus)


class Record(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int


class User(Record):
    username: str = Field(..., min_length=3, max_length=30)
    email: EmailStr
    password_hash: str = Field(..., description="BCrypt hashed password")
    role: UserRole = "user"
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None


class Product(Record):
    name: str = Field(..., min_length=1)
    description: str = ""
    price: float = Field(..., ge=0)
    discount_price: Optional[float] = Field(default=None, ge=0)
    category: ProductCategory
    image_urls: List[str] = Field(..., min_length=1)
    sizes: List[str] = Field(default_factory=list)
    colors: List[str] = Field(default_factory=list)
    featured: bool = False
    in_stock: bool = True
    sku: str = Field(..., min_length=1)
    material: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    @property
    def effective_price(self) -> float:
        """Price a customer pays right now."""
        return self.discount_price if self.discount_price is not None else self.price


class CartItem(Record):
    user_id: int
    product_id: int
    quantity: int = Field(1, ge=1)
    size: Optional[str] = None
    color: Optional[str] = None


class ShippingAddress(BaseModel):
    model_config = ConfigDict(frozen=True)

    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: Optional[str] = None
    zip_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)
    phone: Optional[str] = None


class PaymentDetails(BaseModel):
    """What is kept of a card after checkout. Never the full number or CVV."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    card_name: str = Field(..., min_length=1)
    card_number_last4: str = Field(..., pattern=r"^\d{4}$")
    expiry_month: Optional[str] = None
    expiry_year: Optional[str] = None


class Order(Record):
    user_id: int
    total: float = Field(..., ge=0)
    status: OrderStatus = "pending"
    shipping_address: ShippingAddress
    payment_details: PaymentDetails
    created_at: datetime


class OrderItem(Record):
    order_id: int
    product_id: int
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price at purchase time")
    size: Optional[str] = None
    color: Optional[str] = None


class Review(Record):
    user_id: int
    product_id: int
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    created_at: datetime
