"""
Caller resolution for the scheduling API.

Every request acts inside the institution named by its bearer token; a token
without one cannot reach any tenant data.
"""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..services.auth_service import AuthService
from ..models.user import User, UserRole

security = HTTPBearer()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"}
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> User:
    """Resolve the caller and their institution from the bearer token."""
    token_data = AuthService.decode_token(credentials.credentials)
    if token_data is None:
        raise _unauthorized("Invalid or expired token")

    if not token_data.institution_id:
        raise _unauthorized("Token is not bound to an institution")

    return User(
        id=token_data.user_id,
        institution_id=token_data.institution_id,
        role=token_data.role,
        name=token_data.name
    )


def require_role(*roles: UserRole):
    """Dependency factory for role-based access control."""
    async def role_checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"{current_user.role.value} cannot do this; needs one of {[r.value for r in roles]}"
            )
        return current_user
    return role_checker


# Doctors may run their own shifts; only admins change schedules and desks
require_admin = require_role(UserRole.ADMIN)
require_doctor = require_role(UserRole.DOCTOR, UserRole.ADMIN)
require_staff = require_role(UserRole.STAFF, UserRole.DOCTOR, UserRole.ADMIN)
