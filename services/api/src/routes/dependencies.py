from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from utils import log

logger = log.get_logger(__name__)


def _parse_roles(raw: Optional[str]) -> list:
    if not raw:
        return []
    return [r.strip() for r in raw.split(",") if r.strip()]


async def current_user_get(
    x_user_id: Optional[str] = Header(default=None),
    x_user_roles: Optional[str] = Header(default=None),
) -> Optional[dict]:
    """
    Identity asserted by the upstream gateway that authenticated the caller.
    Returns None for anonymous requests.
    """
    if not x_user_id:
        return None
    return {"sub": x_user_id, "roles": _parse_roles(x_user_roles)}


async def require_authenticated(user: Optional[dict] = Depends(current_user_get)) -> dict:
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return user


def is_admin(user: dict) -> bool:
    return "admin" in user.get("roles", [])


async def require_admin(user: dict = Depends(require_authenticated)) -> dict:
    """
    Dependency to ensure the user has the 'admin' role.
    """
    if not is_admin(user):
        logger.warning(f"User {user.get('sub')} attempted admin access without 'admin' role. Roles: {user.get('roles')}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required"
        )
    return user
