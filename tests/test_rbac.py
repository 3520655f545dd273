import pytest
from fastapi import HTTPException

from app.dependencies.auth import Role, User, resolve_user_from_token, role_required


@pytest.mark.asyncio
async def test_role_required_allows_authorized_user():
    dependency = role_required(Role.ADMIN)
    user = User("u-alice", "alice", (Role.ADMIN,))
    result = await dependency(user)  # type: ignore[arg-type]
    assert result.username == "alice"


@pytest.mark.asyncio
async def test_role_required_rejects_unauthorized_user():
    dependency = role_required(Role.SUPPORT_STAFF, Role.ADMIN)
    user = User("u-bob", "bob", (Role.END_USER,))
    with pytest.raises(HTTPException) as exc:
        await dependency(user)  # type: ignore[arg-type]

    assert exc.value.status_code == 403
    assert exc.value.detail == "Insufficient permissions"


def test_active_role_defaults_to_first_role():
    user = User("u-carol", "carol", (Role.SUPPORT_MANAGER, Role.SUPPORT_STAFF))
    assert user.active_role is Role.SUPPORT_MANAGER

    acting = User("u-carol", "carol", (Role.SUPPORT_MANAGER, Role.SUPPORT_STAFF), active_role=Role.SUPPORT_STAFF)
    assert acting.active_role is Role.SUPPORT_STAFF


def test_resolve_user_from_token():
    user = resolve_user_from_token("staff-token")
    assert user.id == "u-staff"
    assert user.has_role(Role.SUPPORT_STAFF)

    with pytest.raises(HTTPException) as missing:
        resolve_user_from_token(None)
    assert missing.value.status_code == 401

    with pytest.raises(HTTPException) as unknown:
        resolve_user_from_token("forged")
    assert unknown.value.status_code == 401
