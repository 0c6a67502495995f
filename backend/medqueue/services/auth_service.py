"""
Bearer token handling. Tokens are minted by the platform auth service; this
engine only needs to read the caller and their institution from them.
"""

from datetime import datetime, timedelta
from typing import Optional
from jose import JWTError, jwt

from ..config import get_settings
from ..models.user import TokenData, UserRole

settings = get_settings()


class AuthService:
    """JWT decoding for the scheduling API."""

    @staticmethod
    def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
        """Create JWT access token (service-to-service calls and tests)."""
        to_encode = data.copy()
        expire = datetime.utcnow() + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
        to_encode.update({"exp": expire})
        return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)

    @staticmethod
    def decode_token(token: str) -> Optional[TokenData]:
        """
        Decode and validate a JWT. Returns None for a bad signature, an
        expired token or a token without a subject; the institution claim is
        left for the caller to check.
        """
        try:
            payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
            user_id: str = payload.get("sub")
            institution_id: str = payload.get("institution_id")
            if user_id is None:
                return None
            return TokenData(
                user_id=user_id,
                institution_id=institution_id,
                role=UserRole(payload.get("role", UserRole.STAFF.value)),
                name=payload.get("name")
            )
        except (JWTError, ValueError):
            return None
