"""FastAPI dependencies: Supabase client, bearer auth, admin context and the shared insight engine."""
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from admin.configuration_service import ConfigurationService, has_admin_permission
from auth_service import TokenData, parse_bearer, verify_token
from insights.engine import InsightEngine
from supabase_client import db_call, first_row, get_supabase

logger = logging.getLogger(__name__)


class Permissions:
    MODULES_VIEW = "admin.modules.view"
    MODULES_EDIT = "admin.modules.edit"
    USERS_VIEW = "admin.users.view"
    USERS_MANAGE = "admin.users.manage"
    AUDIT_VIEW = "admin.audit.view"
    INTEGRATIONS_MANAGE = "admin.integrations.manage"
    ANALYTICS_VIEW = "admin.analytics.view"
    KPI_TEST = "admin.kpi.test"


ADMIN_ROLES = ("admin", "super_admin")


@dataclass
class AdminContext:
    user_id: str
    organization_id: str
    role: str
    email: Optional[str] = None


def get_supabase_client():
    return get_supabase()


def get_insight_engine(request: Request) -> InsightEngine:
    return request.app.state.insight_engine


# ============ Auth ============

async def get_current_user(authorization: Optional[str] = Header(None)) -> TokenData:
    """Verify the Supabase access token and return the caller"""
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")

    token = parse_bearer(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Invalid authorization header")

    token_data = verify_token(token)
    if not token_data:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    return token_data


async def _load_profile(supabase, user_id: str) -> dict:
    try:
        result = await db_call(lambda: supabase.table("users").select(
            "organization_id, role, email"
        ).eq("id", user_id).limit(1).execute())
    except Exception as e:
        logger.error(f"Failed to load profile for user {user_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to load user profile")

    profile = first_row(result)
    if not profile or not profile.get("organization_id"):
        raise HTTPException(status_code=404, detail="User not found")
    return profile


def get_admin_context(permission_key: str):
    """Dependency factory: the caller must hold `permission_key` (has_admin_permission RPC)."""

    async def dependency(
        current_user: TokenData = Depends(get_current_user),
        supabase=Depends(get_supabase_client),
    ) -> AdminContext:
        profile = await _load_profile(supabase, current_user.user_id)
        if not await has_admin_permission(supabase, current_user.user_id, permission_key):
            logger.warning(f"User {current_user.user_id} denied {permission_key}")
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return AdminContext(
            user_id=current_user.user_id,
            organization_id=profile["organization_id"],
            role=profile.get("role") or "rep",
            email=profile.get("email") or current_user.email,
        )

    return dependency


async def require_admin_role(
    current_user: TokenData = Depends(get_current_user),
    supabase=Depends(get_supabase_client),
) -> AdminContext:
    """User management is limited to admin / super_admin roles."""
    profile = await _load_profile(supabase, current_user.user_id)
    role = profile.get("role")
    if role not in ADMIN_ROLES:
        logger.warning(f"User {current_user.user_id} with role {role} denied user management")
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    return AdminContext(
        user_id=current_user.user_id,
        organization_id=profile["organization_id"],
        role=role,
        email=profile.get("email") or current_user.email,
    )


def configuration_service(ctx: AdminContext, supabase) -> ConfigurationService:
    return ConfigurationService(supabase, ctx.organization_id, ctx.user_id)
