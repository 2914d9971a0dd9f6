"""Role and role-permission endpoints (admin / super_admin roles only)."""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends

from admin.models import CamelModel
from admin.role_service import RoleService
from dependencies import AdminContext, get_supabase_client, require_admin_role
from errors import ServiceError, internal_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/roles", tags=["admin-roles"])


class RoleCreateRequest(CamelModel):
    role_key: str
    role_name: str
    description: Optional[str] = None
    inherits_from: Optional[str] = None
    permissions: List[str] = []


class RolePermissionsRequest(CamelModel):
    permissions: List[str]


def _service(ctx: AdminContext, supabase) -> RoleService:
    return RoleService(supabase, ctx.organization_id, ctx.user_id)


@router.get("")
async def list_roles(
    ctx: AdminContext = Depends(require_admin_role),
    supabase=Depends(get_supabase_client),
):
    try:
        roles = await _service(ctx, supabase).list_roles()
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error listing roles: {e}")
        raise internal_error("fetch roles", e)
    return {"roles": [r.dump() for r in roles]}


@router.post("", status_code=201)
async def create_role(
    request: RoleCreateRequest,
    ctx: AdminContext = Depends(require_admin_role),
    supabase=Depends(get_supabase_client),
):
    """Create a role, optionally seeded with permission grants"""
    try:
        role = await _service(ctx, supabase).create_role(
            role_key=request.role_key,
            role_name=request.role_name,
            description=request.description,
            inherits_from=request.inherits_from,
            permissions=request.permissions,
        )
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error creating role {request.role_key}: {e}")
        raise internal_error("create role", e)
    return {"success": True, "role": role.dump()}


@router.get("/{role_id}/permissions")
async def get_role_permissions(
    role_id: str,
    ctx: AdminContext = Depends(require_admin_role),
    supabase=Depends(get_supabase_client),
):
    try:
        role, permissions = await _service(ctx, supabase).get_role_permissions(role_id)
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error fetching permissions of role {role_id}: {e}")
        raise internal_error("fetch role permissions", e)
    return {
        "role": {"id": role.id, "roleKey": role.role_key, "roleName": role.role_name},
        "permissions": [p.dump() for p in permissions],
    }


@router.put("/{role_id}/permissions")
async def set_role_permissions(
    role_id: str,
    request: RolePermissionsRequest,
    ctx: AdminContext = Depends(require_admin_role),
    supabase=Depends(get_supabase_client),
):
    """Replace the role's grants with the given permission keys"""
    try:
        granted = await _service(ctx, supabase).set_role_permissions(role_id, request.permissions)
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error updating permissions of role {role_id}: {e}")
        raise internal_error("update role permissions", e)
    return {"success": True, "permissions": granted}
