"""Role-Based Access Control (RBAC) utilities."""

from enum import Enum
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Request, status

from tabpay.core.errors import Forbidden
from tabpay.core.security import decode_access_token


class UserRole(str, Enum):
    """User roles for RBAC."""

    OWNER = "owner"
    MANAGER = "manager"
    STAFF = "staff"


# Role hierarchy: owner > manager > staff
ROLE_HIERARCHY = {
    UserRole.OWNER: 3,
    UserRole.MANAGER: 2,
    UserRole.STAFF: 1,
}


class TokenData:
    """Decoded token data.

    Attributes:
        user_id: The user's id in the auth service.
        email: The user's email address.
        role: The user's role (owner/manager/staff).
        restaurant_id: The restaurant the user works for. Every staff query
            is scoped to it.
    """

    def __init__(self, user_id: str, email: str, role: UserRole,
                 restaurant_id: Optional[str] = None):
        self.user_id = user_id
        self.email = email
        self.role = role
        self.restaurant_id = restaurant_id


def _token_from_request(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1]
        if token:
            return token
    return request.cookies.get("access_token")


def token_data_from_payload(payload: Optional[dict]) -> Optional[TokenData]:
    """Build TokenData from a decoded JWT payload, or None if it is incomplete."""
    if not payload:
        return None

    user_id = payload.get("sub")
    email = payload.get("email")
    role = payload.get("role")
    if user_id is None or email is None or role is None:
        return None

    try:
        user_role = UserRole(role)
    except ValueError:
        return None

    restaurant_id = payload.get("restaurant_id")
    return TokenData(
        user_id=str(user_id), email=email, role=user_role,
        restaurant_id=str(restaurant_id) if restaurant_id else None,
    )


async def get_current_user(request: Request) -> TokenData:
    """Get the current authenticated user from the bearer token or cookie."""
    token = _token_from_request(request)
    payload = decode_access_token(token) if token else None

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = token_data_from_payload(payload)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )
    return user


def require_role(minimum_role: UserRole):
    """Dependency to require a minimum role level and a restaurant scope."""

    async def role_checker(
        current_user: Annotated[TokenData, Depends(get_current_user)]
    ) -> TokenData:
        user_level = ROLE_HIERARCHY.get(current_user.role, 0)
        required_level = ROLE_HIERARCHY.get(minimum_role, 0)

        if user_level < required_level:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role {minimum_role.value} or higher",
            )
        if not current_user.restaurant_id:
            raise Forbidden("Token is not bound to a restaurant", reason="no_restaurant_scope")
        return current_user

    return role_checker


# Common role dependencies
RequireManager = Annotated[TokenData, Depends(require_role(UserRole.MANAGER))]
RequireStaff = Annotated[TokenData, Depends(require_role(UserRole.STAFF))]
