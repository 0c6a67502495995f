"""
Authenticated caller models.
"""

from pydantic import BaseModel
from typing import Optional
from enum import Enum


class UserRole(str, Enum):
    """User roles in the system."""
    ADMIN = "admin"
    DOCTOR = "doctor"
    STAFF = "staff"


class User(BaseModel):
    """Caller identity decoded from the bearer token."""
    id: str
    institution_id: str
    role: UserRole = UserRole.STAFF
    name: Optional[str] = None


class TokenData(BaseModel):
    """JWT token payload data."""
    user_id: Optional[str] = None
    institution_id: Optional[str] = None
    role: Optional[UserRole] = None
    name: Optional[str] = None
