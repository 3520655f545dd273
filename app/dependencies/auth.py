from collections.abc import Callable
from enum import Enum
from typing import Annotated

from fastapi import Depends, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer


class Role(str, Enum):
    """Service desk roles referenced by workflow transitions."""

    END_USER = "END_USER"
    SUPPORT_STAFF = "SUPPORT_STAFF"
    SUPPORT_MANAGER = "SUPPORT_MANAGER"
    ADMIN = "ADMIN"


class User:
    """Authenticated user acting under one of their roles."""

    def __init__(self, user_id: str, username: str, roles: tuple[Role, ...], active_role: Role | None = None):
        self.id = user_id
        self.username = username
        self.roles = roles
        self.active_role = active_role or roles[0]

    def has_role(self, role: Role) -> bool:
        return role in self.roles


bearer_scheme = HTTPBearer(auto_error=False)

_TOKENS: dict[str, tuple[str, str, tuple[Role, ...]]] = {
    "admin-token": ("u-admin", "admin", (Role.ADMIN, Role.SUPPORT_MANAGER, Role.SUPPORT_STAFF)),
    "manager-token": ("u-manager", "manager", (Role.SUPPORT_MANAGER, Role.SUPPORT_STAFF)),
    "staff-token": ("u-staff", "staff", (Role.SUPPORT_STAFF,)),
    "user-token": ("u-user", "user", (Role.END_USER,)),
}


def resolve_user_from_token(token: str | None) -> User:
    """Map a bearer token to a known user.

    Authentication is handled outside this service; the static table stands in
    for the identity provider in development and tests.
    """

    if token is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    if token not in _TOKENS:
        raise HTTPException(status_code=401, detail="Invalid authentication credentials")
    user_id, username, roles = _TOKENS[token]
    return User(user_id=user_id, username=username, roles=roles)


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)]
) -> User:
    return resolve_user_from_token(None if credentials is None else credentials.credentials)


def role_required(*roles: Role) -> Callable[[User], User]:
    """Dependency factory ensuring the current user holds one of ``roles``."""

    async def dependency(user: Annotated[User, Depends(get_current_user)]) -> User:
        if not any(user.has_role(role) for role in roles):
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user

    return dependency


CurrentUser = Annotated[User, Depends(get_current_user)]
