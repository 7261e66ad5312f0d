# Creative Merch UK Schemas

from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, EmailStr, Field


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class ArtworkStatus(str, Enum):
    SUBMITTED = "submitted"
    APPROVED_MOCKUP = "approved_mockup"
    CHANGES_REQUESTED = "changes_requested"
    REJECTED = "rejected"


# Catalog

class Customization(BaseModel):
    enabled: bool = False
    options: Dict[str, List[str]] = Field(default_factory=dict)


class Rating(BaseModel):
    average: float = 0
    count: int = 0


class Product(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    slug: Optional[str] = None
    description: Optional[str] = None
    price: float = Field(..., ge=0, description="Price in GBP")
    stock: int = Field(0, ge=0)
    category: str = "apparel"
    subcategory: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    customization: Customization = Field(default_factory=Customization)
    featured: bool = False
    is_active: bool = True
    rating: Rating = Field(default_factory=Rating)


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    slug: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    subcategory: Optional[str] = None
    images: Optional[List[str]] = None
    customization: Optional[Customization] = None
    featured: Optional[bool] = None
    is_active: Optional[bool] = None


class StockAdjustment(BaseModel):
    operation: Literal["set", "add", "subtract"] = "set"
    quantity: int = Field(..., ge=0)


# Checkout / orders

class CheckoutItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    customization: Dict[str, Any] = Field(default_factory=dict)
    custom_artwork_url: Optional[str] = None


class ShippingAddress(BaseModel):
    name: str = Field(..., min_length=1)
    street: str = Field(..., min_length=1)
    apartment: Optional[str] = None
    city: str = Field(..., min_length=1)
    postcode: str = Field(..., min_length=2)
    country: str = "United Kingdom"
    phone: Optional[str] = None


class CheckoutRequest(BaseModel):
    items: List[CheckoutItem] = Field(..., min_length=1)
    email: EmailStr
    shipping_address: ShippingAddress
    cart_id: Optional[str] = None


class OrderItem(BaseModel):
    product_id: str
    name: str
    unit_price: Decimal
    quantity: int = Field(..., ge=1)
    line_total: Decimal
    customization: Dict[str, Any] = Field(default_factory=dict)
    custom_artwork_url: Optional[str] = None


class Pricing(BaseModel):
    subtotal: Decimal
    shipping: Decimal
    tax: Decimal
    total: Decimal


class Order(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    email: EmailStr
    items: List[OrderItem]
    pricing: Pricing
    shipping_address: ShippingAddress
    status: OrderStatus = OrderStatus.PENDING_PAYMENT
    payment_intent_id: Optional[str] = None
    cart_id: Optional[str] = None
    has_custom_artwork: bool = False
    artwork_status: Optional[ArtworkStatus] = None
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    paid_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    review_requested: bool = False


class PaymentConfirmation(BaseModel):
    payment_intent_id: str = Field(..., min_length=1)
    order_id: Optional[str] = None


class ShipOrder(BaseModel):
    tracking_number: str = Field(..., min_length=1)
    carrier: Optional[str] = None


class CancelOrder(BaseModel):
    reason: Optional[str] = None


class ArtworkReview(BaseModel):
    decision: Literal["approved_mockup", "changes_requested", "rejected"]
    notes: str = ""
    mockup_url: Optional[str] = None


class ArtworkResubmission(BaseModel):
    artwork_url: str = Field(..., min_length=1)


# Abandoned cart tracking

class CartItem(BaseModel):
    product_id: str
    name: str
    quantity: int = Field(1, ge=1)
    price: float = Field(0, ge=0)


class Cart(BaseModel):
    email: Optional[EmailStr] = None
    items: List[CartItem] = Field(default_factory=list)


# Community

class ReviewIn(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=10, max_length=1000)


class WaitlistJoin(BaseModel):
    email: EmailStr


class NewsletterRequest(BaseModel):
    email: EmailStr


class ContactMessage(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=20)
    service: Optional[str] = Field(None, max_length=100)
    message: str = Field(..., min_length=10, max_length=2000)


class ReviewUpdate(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = Field(None, min_length=10, max_length=1000)


class ContactStatusUpdate(BaseModel):
    status: Literal["pending", "in-progress", "resolved", "closed"]
    notes: Optional[str] = Field(None, max_length=1000)


# Saved design-studio configurations

class DesignConfigIn(BaseModel):
    name: str = Field("Untitled Design", min_length=1, max_length=200)
    product_id: Optional[str] = None
    configuration: Dict[str, Any]
    screenshot: Optional[str] = None
    session_id: Optional[str] = None


class DesignConfigUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    configuration: Optional[Dict[str, Any]] = None
    screenshot: Optional[str] = None
