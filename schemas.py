"""
Request schemas for the shop API

Stored documents live in MongoDB collections named after the lowercase
entity: "user", "product", "cart", "order".
"""
from typing import List, Literal, Optional
from pydantic import BaseModel, EmailStr, Field

OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
SortOrder = Literal["asc", "desc"]

# Auth
class RegisterRequest(BaseModel):
    email: EmailStr = Field(..., description="Email address")
    password: str = Field(..., min_length=8, description="Plain password, hashed before storage")
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class RefreshRequest(BaseModel):
    refresh_token: str

# Catalog
class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1)
    slug: Optional[str] = Field(None, description="URL-safe identifier, derived from name when empty")
    description: str = ""
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    images: List[str] = []
    category: str = Field(..., min_length=1)

class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    images: Optional[List[str]] = None
    category: Optional[str] = Field(None, min_length=1)

class ProductInfoRequest(BaseModel):
    ids: List[str]

# Cart
class CartItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)

# Orders
class ShippingAddress(BaseModel):
    street: str
    city: str
    state: str
    country: str
    zip_code: str

class OrderCreate(BaseModel):
    shipping_address: ShippingAddress

class OrderStatusUpdate(BaseModel):
    status: OrderStatus

# MFA
class MfaTokenRequest(BaseModel):
    token: str

class MfaChallengeRequest(BaseModel):
    token: Optional[str] = None
    backup_code: Optional[str] = None
