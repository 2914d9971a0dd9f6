"""
Tests for access token verification and the admin dependencies.
"""
import os
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi import HTTPException

from auth_service import TokenData, generate_temporary_password, parse_bearer, verify_token
from dependencies import Permissions, get_admin_context, get_current_user, require_admin_role

SECRET = os.environ["SUPABASE_JWT_SECRET"]


def make_token(sub="user-1", audience="authenticated", expires_in=3600, secret=SECRET, **claims):
    payload = {
        "sub": sub,
        "aud": audience,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        "email": "admin@example.com",
        "role": "authenticated",
        **claims,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def _token_data(user_id="user-1"):
    return TokenData(user_id=user_id, email="admin@example.com",
                     exp=datetime.now(timezone.utc) + timedelta(hours=1))


class TestVerifyToken:
    def test_valid_token(self):
        data = verify_token(make_token())
        assert data.user_id == "user-1"
        assert data.email == "admin@example.com"
        assert data.exp.tzinfo is not None

    def test_expired_token(self):
        assert verify_token(make_token(expires_in=-60)) is None

    def test_wrong_audience(self):
        assert verify_token(make_token(audience="anon")) is None

    def test_wrong_secret(self):
        assert verify_token(make_token(secret="another-secret-that-is-also-32-bytes-long")) is None

    def test_missing_subject(self):
        token = jwt.encode(
            {"aud": "authenticated", "exp": datetime.now(timezone.utc) + timedelta(hours=1)},
            SECRET, algorithm="HS256",
        )
        assert verify_token(token) is None

    def test_garbage(self):
        assert verify_token("not-a-jwt") is None


class TestParseBearer:
    @pytest.mark.parametrize("header, expected", [
        ("Bearer abc", "abc"),
        ("bearer abc", "abc"),
        ("Basic abc", None),
        ("Bearer", None),
        ("Bearer a b", None),
        ("", None),
        (None, None),
    ])
    def test_parse(self, header, expected):
        assert parse_bearer(header) == expected


def test_temporary_password():
    first, second = generate_temporary_password(), generate_temporary_password()
    assert len(first) == 16
    assert first.isalnum()
    assert first != second


class TestGetCurrentUser:
    @pytest.mark.asyncio
    async def test_missing_header(self):
        with pytest.raises(HTTPException) as exc:
            await get_current_user(authorization=None)
        assert exc.value.status_code == 401
        assert exc.value.detail == "Authorization header required"

    @pytest.mark.asyncio
    async def test_malformed_header(self):
        with pytest.raises(HTTPException) as exc:
            await get_current_user(authorization="Token abc")
        assert exc.value.detail == "Invalid authorization header"

    @pytest.mark.asyncio
    async def test_invalid_token(self):
        with pytest.raises(HTTPException) as exc:
            await get_current_user(authorization="Bearer nope")
        assert exc.value.detail == "Invalid or expired token"

    @pytest.mark.asyncio
    async def test_valid_token(self):
        user = await get_current_user(authorization=f"Bearer {make_token(sub='user-7')}")
        assert user.user_id == "user-7"


class TestAdminContext:
    @pytest.mark.asyncio
    async def test_permission_granted(self, supabase):
        supabase.respond("users", [{"organization_id": "org-1", "role": "manager", "email": None}])
        supabase.respond_rpc("has_admin_permission", True)
        dependency = get_admin_context(Permissions.MODULES_EDIT)

        ctx = await dependency(current_user=_token_data(), supabase=supabase)

        assert ctx.organization_id == "org-1"
        assert ctx.role == "manager"
        assert ctx.email == "admin@example.com"
        params = supabase.rpc_calls("has_admin_permission")[0].payload
        assert params["p_permission_key"] == "admin.modules.edit"

    @pytest.mark.asyncio
    async def test_permission_denied(self, supabase):
        supabase.respond("users", [{"organization_id": "org-1", "role": "rep"}])
        supabase.respond_rpc("has_admin_permission", False)
        dependency = get_admin_context(Permissions.MODULES_EDIT)

        with pytest.raises(HTTPException) as exc:
            await dependency(current_user=_token_data(), supabase=supabase)
        assert exc.value.status_code == 403

    @pytest.mark.asyncio
    async def test_user_without_organization(self, supabase):
        supabase.respond("users", [{"organization_id": None, "role": "admin"}])
        dependency = get_admin_context(Permissions.MODULES_VIEW)

        with pytest.raises(HTTPException) as exc:
            await dependency(current_user=_token_data(), supabase=supabase)
        assert exc.value.status_code == 404

    @pytest.mark.asyncio
    async def test_profile_lookup_failure(self, supabase):
        supabase.respond("users", error=RuntimeError("db down"))
        dependency = get_admin_context(Permissions.MODULES_VIEW)

        with pytest.raises(HTTPException) as exc:
            await dependency(current_user=_token_data(), supabase=supabase)
        assert exc.value.status_code == 500

    @pytest.mark.asyncio
    async def test_role_defaults_to_rep(self, supabase):
        supabase.respond("users", [{"organization_id": "org-1", "role": None}])
        supabase.respond_rpc("has_admin_permission", True)
        ctx = await get_admin_context(Permissions.MODULES_VIEW)(current_user=_token_data(), supabase=supabase)
        assert ctx.role == "rep"


class TestRequireAdminRole:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("role", ["admin", "super_admin"])
    async def test_admin_roles_allowed(self, supabase, role):
        supabase.respond("users", [{"organization_id": "org-1", "role": role}])
        ctx = await require_admin_role(current_user=_token_data(), supabase=supabase)
        assert ctx.role == role

    @pytest.mark.asyncio
    async def test_manager_rejected(self, supabase):
        supabase.respond("users", [{"organization_id": "org-1", "role": "manager"}])
        with pytest.raises(HTTPException) as exc:
            await require_admin_role(current_user=_token_data(), supabase=supabase)
        assert exc.value.status_code == 403
