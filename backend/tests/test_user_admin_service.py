"""
Tests for UserAdminService: auth account pairing, updates with audit entries
and soft deletion.
"""
from unittest.mock import MagicMock

import pytest

from admin.user_service import UserAdminService
from errors import NotFoundError, ValidationFailedError

ORG = "org-1"
ADMIN = "user-admin"


def _user_row(**overrides):
    row = {
        "id": "user-2",
        "email": "rep@example.com",
        "full_name": "Field Rep",
        "role": "rep",
        "organization_id": ORG,
        "is_active": True,
    }
    row.update(overrides)
    return row


@pytest.fixture
def service(supabase):
    supabase.auth.admin.create_user.return_value = MagicMock(user=MagicMock(id="user-2"))
    return UserAdminService(supabase, ORG, ADMIN)


@pytest.mark.asyncio
async def test_list_users_scoped_to_org(service, supabase):
    supabase.respond("users", [_user_row(full_name=None, is_active=None)])

    users = await service.list_users()

    assert users[0].full_name == ""
    assert users[0].is_active is True
    query = supabase.calls_to("users")[0]
    assert query.has_filter("organization_id", ORG)
    assert query.orders == [("created_at", True)]


@pytest.mark.asyncio
async def test_get_user_missing(service, supabase):
    with pytest.raises(NotFoundError):
        await service.get_user("user-9")


@pytest.mark.asyncio
async def test_create_user(service, supabase):
    supabase.respond("users", [_user_row(role="manager")], op="insert")

    user = await service.create_user("rep@example.com", "Field Rep", role="manager", password="s3cret-pass")

    auth_args = supabase.auth.admin.create_user.call_args[0][0]
    assert auth_args["email"] == "rep@example.com"
    assert auth_args["password"] == "s3cret-pass"
    assert auth_args["email_confirm"] is True

    profile = supabase.calls_to("users", "insert")[0].payload
    assert profile["id"] == "user-2"
    assert profile["organization_id"] == ORG
    assert profile["role"] == "manager"
    assert user.role == "manager"

    log = supabase.calls_to("admin_action_logs", "insert")[0].payload
    assert log["action_type"] == "user_create"
    assert log["risk_level"] == "medium"
    assert log["admin_user_id"] == ADMIN


@pytest.mark.asyncio
async def test_create_user_generates_password(service, supabase):
    supabase.respond("users", [_user_row()], op="insert")
    await service.create_user("rep@example.com", "Field Rep")

    password = supabase.auth.admin.create_user.call_args[0][0]["password"]
    assert len(password) == 16
    assert password.isalnum()


@pytest.mark.asyncio
async def test_auth_failure_is_a_validation_error(service, supabase):
    supabase.auth.admin.create_user.side_effect = RuntimeError("User already registered")

    with pytest.raises(ValidationFailedError) as exc:
        await service.create_user("rep@example.com", "Field Rep")

    assert exc.value.details == "User already registered"
    assert supabase.calls_to("users") == []


@pytest.mark.asyncio
async def test_profile_failure_removes_auth_account(service, supabase):
    supabase.respond("users", error=RuntimeError("duplicate key"), op="insert")

    with pytest.raises(RuntimeError):
        await service.create_user("rep@example.com", "Field Rep")

    supabase.auth.admin.delete_user.assert_called_once_with("user-2")
    assert supabase.calls_to("admin_action_logs") == []


@pytest.mark.asyncio
async def test_update_ignores_unknown_fields(service, supabase):
    supabase.respond("users", [_user_row()], op="select")
    supabase.respond("users", [_user_row(department="North")], op="update")

    user = await service.update_user("user-2", {"department": "North", "organization_id": "org-2"})

    assert user.department == "North"
    update = supabase.calls_to("users", "update")[0]
    assert update.payload == {"department": "North"}
    assert update.has_filter("organization_id", ORG)
    log = supabase.calls_to("admin_action_logs", "insert")[0].payload
    assert log["action_type"] == "user_update"
    assert log["risk_level"] == "low"
    assert log["previous_state"] == {"department": None}


@pytest.mark.asyncio
async def test_role_change_is_high_risk(service, supabase):
    supabase.respond("users", [_user_row()], op="select")
    supabase.respond("users", [_user_row(role="admin")], op="update")

    await service.update_user("user-2", {"role": "admin"})

    log = supabase.calls_to("admin_action_logs", "insert")[0].payload
    assert log["action_type"] == "role_change"
    assert log["risk_level"] == "high"
    assert log["previous_state"] == {"role": "rep"}


@pytest.mark.asyncio
async def test_update_without_changes_returns_existing(service, supabase):
    supabase.respond("users", [_user_row()], op="select")
    user = await service.update_user("user-2", {"email": "new@example.com"})

    assert user.email == "rep@example.com"
    assert supabase.calls_to("users", "update") == []


@pytest.mark.asyncio
async def test_deactivate_user(service, supabase):
    supabase.respond("users", [_user_row()], op="select")
    supabase.respond("users", [_user_row(is_active=False)], op="update")

    user = await service.deactivate_user("user-2")

    assert user.is_active is False
    assert supabase.calls_to("users", "update")[0].payload == {"is_active": False}
    assert supabase.calls_to("users", "delete") == []
    log = supabase.calls_to("admin_action_logs", "insert")[0].payload
    assert log["action_type"] == "user_delete"
    assert log["new_state"] == {"isActive": False}


@pytest.mark.asyncio
async def test_cannot_deactivate_self(service, supabase):
    with pytest.raises(ValidationFailedError):
        await service.deactivate_user(ADMIN)
    assert supabase.calls == []


@pytest.mark.asyncio
async def test_deactivate_user_in_other_org(service, supabase):
    with pytest.raises(NotFoundError):
        await service.deactivate_user("user-9")
