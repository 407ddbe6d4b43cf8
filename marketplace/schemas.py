"""
Pydantic schemas for the marketplace API.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    password: str = Field(..., min_length=1)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class UserResponse(BaseModel):
    id: int
    username: str
    email: str
    created_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    message: str
    user: UserResponse
    token: str


class ProductResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    price: Decimal
    image_key: Optional[str] = None
    image_url: Optional[str] = None
    signed_image_url: Optional[str] = None
    user_id: int
    created_at: datetime


class ProductMutationResponse(BaseModel):
    message: str
    product: ProductResponse


class MessageResponse(BaseModel):
    message: str


class HealthResponse(BaseModel):
    status: Literal["ok"]
    message: str
