"""
Pydantic schemas for authentication endpoints.
"""
from pydantic import BaseModel, EmailStr, ConfigDict
from typing import Optional
from datetime import datetime


class UserLogin(BaseModel):
    """Login request schema."""
    email: EmailStr
    password: str


class Token(BaseModel):
    """JWT token response."""
    access_token: str
    token_type: str = "bearer"


class UserResponse(BaseModel):
    """User information response."""
    id: int
    email: str
    full_name: Optional[str] = None
    created_at: Optional[datetime] = None
    is_active: bool
    role: str

    model_config = ConfigDict(from_attributes=True)


class AuthResponse(BaseModel):
    """Authentication response with token and user info."""
    success: bool
    token: Token
    user: UserResponse


class OwnerInfo(BaseModel):
    """Entry of the owner directory used to configure lead assignment."""
    id: int
    display_name: str
    email: str
    role: str
