"""
Bearer-token identity.

Tokens are HS256 JWTs issued elsewhere; ``sub`` is the user id and ``role``
is one of customer, staff or admin. The resolved user is the actor recorded
on every mutation.
"""
import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from order_service import config, models
from order_service.errors import ForbiddenError

logger = logging.getLogger(__name__)

STAFF_ROLES = ("staff", "admin")

security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)


class CurrentUser(BaseModel):
    id: str
    role: str = "customer"

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def decode_token(token: str) -> CurrentUser:
    """
    Raises:
        HTTPException: 401 if the token is invalid or lacks a subject
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid or missing token",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except JWTError as e:
        logger.warning(f"JWT validation error: {e}")
        raise credentials_exception

    user_id = payload.get("sub")
    if user_id is None:
        raise credentials_exception
    return CurrentUser(id=str(user_id), role=payload.get("role") or "customer")


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> CurrentUser:
    return decode_token(credentials.credentials)


def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security),
) -> Optional[CurrentUser]:
    """Guest checkout: no token means no user, a bad token is still rejected."""
    if credentials is None:
        return None
    return decode_token(credentials.credentials)


def require_staff(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not current_user.is_staff:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Staff privileges required")
    return current_user


def ensure_order_access(order: models.Order, user: CurrentUser) -> None:
    """Only the order's owner or staff may see or act on it."""
    if user.is_staff or (order.user_id is not None and order.user_id == user.id):
        return
    raise ForbiddenError()
