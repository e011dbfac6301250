"""
Request schemas for the store API.

Each table (users, products, orders) has a create schema here; update
schemas carry the same fields as optional so only the fields sent are
written.
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

Category = Literal["laptops", "phones", "cameras", "audio", "accessories", "smart-home"]
Role = Literal["user", "admin"]
PaymentMethod = Literal["cash", "mpesa", "card", "bank_transfer", "pesapal"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled"]

CATEGORIES = ("laptops", "phones", "cameras", "audio", "accessories", "smart-home")

# Largest id a BIGINT column or BSON int64 can hold.
MAX_ID = 2**63 - 1


def _lower(value):
    return value.strip().lower() if isinstance(value, str) else value


class User(BaseModel):
    name: str = Field(..., min_length=2, max_length=100, description="Full name")
    email: EmailStr
    password: str = Field(..., min_length=6, description="Plain password, hashed before storage")
    phone: Optional[str] = None

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v):
        return _lower(v)


class LoginBody(BaseModel):
    email: EmailStr
    password: str

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v):
        return _lower(v)


class RoleUpdate(BaseModel):
    role: Role


class ProductImage(BaseModel):
    url: str = Field(..., min_length=1)
    alt: Optional[str] = None
    isPrimary: bool = False


class Rating(BaseModel):
    average: float = Field(0, ge=0, le=5)
    count: int = Field(0, ge=0)


class Product(BaseModel):
    name: str = Field(..., min_length=2, max_length=200)
    description: str = Field(..., min_length=10, max_length=2000)
    price: float = Field(..., ge=0)
    originalPrice: Optional[float] = Field(None, ge=0)
    category: Category
    subcategory: Optional[str] = None
    brand: str = Field(..., min_length=1, max_length=100)
    model: Optional[str] = None
    images: List[ProductImage] = Field(..., min_length=1, description="At least one image")
    specifications: Dict[str, Any] = Field(default_factory=dict)
    features: List[str] = Field(default_factory=list)
    stock: int = Field(0, ge=0)
    sku: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    isActive: bool = True
    isFeatured: bool = False
    rating: Rating = Field(default_factory=Rating)

    @field_validator("category", mode="before")
    @classmethod
    def normalize_category(cls, v):
        return _lower(v)


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=200)
    description: Optional[str] = Field(None, min_length=10, max_length=2000)
    price: Optional[float] = Field(None, ge=0)
    originalPrice: Optional[float] = Field(None, ge=0)
    category: Optional[Category] = None
    subcategory: Optional[str] = None
    brand: Optional[str] = Field(None, min_length=1, max_length=100)
    model: Optional[str] = None
    images: Optional[List[ProductImage]] = Field(None, min_length=1)
    specifications: Optional[Dict[str, Any]] = None
    features: Optional[List[str]] = None
    stock: Optional[int] = Field(None, ge=0)
    sku: Optional[str] = None
    tags: Optional[List[str]] = None
    isActive: Optional[bool] = None
    isFeatured: Optional[bool] = None

    @field_validator("category", mode="before")
    @classmethod
    def normalize_category(cls, v):
        return _lower(v)


class FeaturedToggle(BaseModel):
    isFeatured: bool


class Address(BaseModel):
    name: str = Field(..., min_length=2)
    street: str = Field(..., min_length=5)
    city: str = Field(..., min_length=2)
    state: str = Field(..., min_length=2)
    zipCode: str = Field(..., min_length=3)
    country: str = Field(..., min_length=2)
    phone: Optional[str] = None


class OrderItem(BaseModel):
    product: int = Field(..., ge=1, le=MAX_ID, description="Product id")
    quantity: int = Field(..., ge=1)


class Order(BaseModel):
    items: List[OrderItem] = Field(..., min_length=1)
    shippingAddress: Address
    billingAddress: Optional[Address] = None
    paymentMethod: PaymentMethod
    notes: Optional[str] = Field(None, max_length=1000)


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    paymentStatus: Optional[PaymentStatus] = None
    trackingNumber: Optional[str] = Field(None, min_length=5)
    notes: Optional[str] = Field(None, max_length=1000)
