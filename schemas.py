"""
Database Schemas for the Capriccio storefront

Each Pydantic model represents a MongoDB collection. Collection name is the lowercase of the class name.
"""
from typing import Optional, List, Literal
from pydantic import BaseModel, Field, EmailStr

OrderStatus = Literal["Pending", "Preparing", "OutForDelivery", "Delivered", "Cancelled"]
ReviewStatus = Literal["pending", "approved", "rejected"]
Role = Literal["user", "admin"]
PaymentMethod = Literal["cash", "mercadopago"]
DeliveryMethod = Literal["delivery", "pickup"]
OrderType = Literal["immediate", "reserved"]

ORDER_STATUSES = ("Pending", "Preparing", "OutForDelivery", "Delivered", "Cancelled")


# Products collection
class Product(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    price: float = Field(..., ge=0)
    stock: int = Field(default=0, ge=0)
    category: Optional[str] = None
    image: Optional[str] = None


# Reviews collection
class Review(BaseModel):
    product_id: str
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    status: ReviewStatus = "pending"
    created_at: Optional[str] = None


# Orders collection
class OrderItem(BaseModel):
    id: str
    name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)


class CustomerInfo(BaseModel):
    name: str
    address: Optional[str] = None
    phone: str


class Order(BaseModel):
    user_id: str
    items: List[OrderItem]
    total: int = Field(..., ge=0)
    customer_info: CustomerInfo
    payment_method: PaymentMethod
    cash_amount: Optional[float] = None
    change: Optional[int] = None
    delivery_method: DeliveryMethod
    order_type: OrderType
    order_time: str
    notes: Optional[str] = None
    status: OrderStatus = "Pending"
    created_at: Optional[str] = None


# User profiles collection, keyed by auth uid
class User(BaseModel):
    role: Role = "user"
    created_at: Optional[str] = None


# Credential accounts for email/password sign-in
class Account(BaseModel):
    email: EmailStr
    password_hash: str = Field(..., min_length=10)
    is_active: bool = True


# Favorite products, one document per (user, product)
class Favorite(BaseModel):
    user_id: str
    product_id: str
