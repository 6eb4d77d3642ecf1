"""
Database Schemas for SoftShop

Each Pydantic model describes the documents of one MongoDB collection.

Collections:
- user
- vendor_profile
- product
- cart
- order
- rating
- setting
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["user", "vendor"]
OrderStatus = Literal["pending", "paid", "fulfilled", "cancelled"]


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: Optional[str] = Field(None, description="Display name")
    email: EmailStr = Field(..., description="Email address, unique")
    password_hash: str = Field(..., description="BCrypt password hash")
    role: Role = Field("user", description="user | vendor (admin is configured, not stored)")
    avatar_url: Optional[str] = Field(None, description="Avatar image URL")
    is_active: bool = Field(True, description="Inactive users cannot log in")


class VendorProfile(BaseModel):
    """
    Vendor profiles collection schema
    Collection name: "vendor_profile"
    """
    user_id: str = Field(..., description="Owning vendor user id")
    brand_name: str = Field(..., description="Public brand name")
    business_name: Optional[str] = None
    business_type: Optional[str] = None
    business_address: Optional[str] = None
    phone_number: Optional[str] = None
    logo_url: Optional[str] = None
    contact_email: Optional[str] = None
    bio: Optional[str] = None
    is_approved: bool = Field(False, description="Set by an admin")


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    vendor_id: str = Field(..., description="Owning vendor user id")
    name: str = Field(..., min_length=1, description="Product name")
    description: Optional[str] = Field(None, description="Product description")
    price: float = Field(..., ge=0, description="Unit price")
    image_url: Optional[str] = Field(None, description="Image URL")
    category: str = Field(..., min_length=1, description="Product category")
    stock: int = Field(0, ge=0, description="Units in stock")
    is_active: bool = Field(True, description="Hidden from the storefront when false")


class CartLine(BaseModel):
    """
    Cart collection schema, one document per (user_id, product_id)
    Collection name: "cart"
    """
    user_id: str
    product_id: str
    quantity: int = Field(1, ge=1)


class OrderItem(BaseModel):
    product_id: str
    vendor_id: str
    name: str
    price: float = Field(..., ge=0, description="Unit price at checkout time")
    quantity: int = Field(..., ge=1)
    image_url: Optional[str] = None


class ShippingInfo(BaseModel):
    full_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    payment_method: str = "dummy"


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    user_id: str = Field(..., description="Buyer user id")
    vendor_id: str = Field(..., description="Vendor whose lines this order holds")
    checkout_id: str = Field(..., description="Shared by the orders of one checkout")
    items: List[OrderItem]
    total: float = Field(..., ge=0)
    status: OrderStatus = Field("paid", description="pending | paid | fulfilled | cancelled")
    next_status: Optional[OrderStatus] = Field(None, description="Scheduled next status")
    status_due_at: Optional[datetime] = Field(None, description="When next_status becomes due")
    shipping: ShippingInfo = Field(default_factory=ShippingInfo)


class Rating(BaseModel):
    """
    Ratings collection schema, one document per (user_id, product_id)
    Collection name: "rating"
    """
    user_id: str
    product_id: str
    order_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class Setting(BaseModel):
    """
    Settings collection schema
    Collection name: "setting"
    """
    key: str
    value: str
