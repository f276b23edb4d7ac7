"""
Database Schemas

MongoDB collection schemas for the DayKart storefront, defined as Pydantic
models. These schemas validate every document the services write.

Each Pydantic model represents a collection in the database.
Model name is converted to lowercase for the collection name:
- User -> "user" collection
- Profile -> "profile" collection
- CartItem -> "cartitem" collection
- ReferralTransaction -> "referraltransaction" collection
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Category = Literal["beds", "stationery", "books", "bathware", "dorm"]
CATEGORIES = ["beds", "stationery", "books", "bathware", "dorm"]

OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["paid", "partial", "pending"]
PaymentMethod = Literal["upi", "phonepe", "card", "cod"]


class User(BaseModel):
    """
    Auth credentials
    Collection name: "user" (lowercase of class name)
    """
    email: EmailStr = Field(..., description="Email address (login)")
    password_hash: str = Field(..., description="Password hash (internal)")
    salt: str = Field(..., description="Password salt (internal)")
    is_active: bool = Field(True, description="Whether user is active")


class Session(BaseModel):
    token: str
    user_id: Optional[str] = None
    role: Literal["user", "admin"] = "user"
    email: Optional[str] = None
    expires_at: datetime


class Profile(BaseModel):
    """
    Shopper profile and referral bookkeeping
    Collection name: "profile" (lowercase of class name)
    """
    user_id: str = Field(..., description="Owning user id")
    email: EmailStr
    full_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    is_admin: bool = False
    referral_code: str = Field(..., description="Unique code derived from the user id")
    referred_by: Optional[str] = Field(None, description="Referrer user id, set at signup only")
    referral_activated: bool = Field(False, description="Set once, on the first qualifying order")
    total_referral_rewards: float = Field(0, ge=0)
    pending_referral_rewards: float = Field(0, ge=0)


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product" (lowercase of class name)
    """
    title: str = Field(..., min_length=1, description="Product title")
    description: str = Field("", description="Product description")
    image_url: Optional[str] = Field(None, description="Primary image URL")
    image_urls: List[str] = Field(default_factory=list)
    price: float = Field(..., gt=0, description="Price in rupees")
    category: Category
    is_featured: bool = False
    stock_quantity: Optional[int] = Field(None, ge=0, description="Units in stock; None means untracked")


class CartItem(BaseModel):
    """
    Cart items collection schema
    Collection name: "cartitem" (lowercase of class name)
    """
    user_id: str = Field(..., description="User ID")
    product_id: str = Field(..., description="Product ID")
    quantity: int = Field(1, ge=1, description="Quantity")


class WishlistItem(BaseModel):
    user_id: str
    product_id: str


class OrderLine(BaseModel):
    """Snapshot of a product at purchase time, never a live reference."""
    product_id: str
    title: str
    price: float = Field(..., gt=0, description="Unit price at purchase time")
    quantity: int = Field(..., ge=1)
    image_url: Optional[str] = None


class Order(BaseModel):
    user_id: str
    products: List[OrderLine]
    total_amount: float = Field(..., gt=0)
    payment_method: PaymentMethod = "upi"
    payment_status: PaymentStatus = "paid"
    order_status: OrderStatus = "pending"
    transaction_id: Optional[str] = None
    is_cod: bool = False
    cod_amount: Optional[float] = None
    upfront_amount: Optional[float] = None


class ReferralTransaction(BaseModel):
    """Append-only ledger row, one per qualifying referred order."""
    referrer_id: str
    referred_id: str
    order_id: Optional[str] = None
    amount: float
    status: Literal["pending", "completed"] = "completed"
    completed_at: Optional[datetime] = None


class RedemptionRequest(BaseModel):
    user_id: str
    amount: float = Field(..., gt=0)
    status: Literal["pending", "paid", "rejected"] = "pending"


class PaymentSession(BaseModel):
    user_id: str
    amount: float = Field(..., gt=0)
    total_amount: float = Field(..., gt=0)
    is_cod: bool = False
    upi_string: str
    qr_urls: List[str]
    transaction_ref: str
    status: Literal["pending", "processing", "completed", "failed"] = "pending"
    expires_at: datetime
    order_id: Optional[str] = None
