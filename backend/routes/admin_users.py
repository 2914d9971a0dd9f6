"""User management endpoints (admin / super_admin roles only)."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import EmailStr

from admin.models import CamelModel
from admin.user_service import UserAdminService
from dependencies import AdminContext, get_supabase_client, require_admin_role
from errors import ServiceError, internal_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/users", tags=["admin-users"])


class UserCreateRequest(CamelModel):
    email: EmailStr
    full_name: str
    role: str = "rep"
    department: Optional[str] = None
    manager_id: Optional[str] = None
    password: Optional[str] = None


class UserUpdateRequest(CamelModel):
    full_name: Optional[str] = None
    role: Optional[str] = None
    enterprise_role: Optional[str] = None
    department: Optional[str] = None
    cost_center: Optional[str] = None
    manager_id: Optional[str] = None
    hire_date: Optional[str] = None
    is_active: Optional[bool] = None


def _service(ctx: AdminContext, supabase) -> UserAdminService:
    return UserAdminService(supabase, ctx.organization_id, ctx.user_id)


@router.get("")
async def list_users(
    ctx: AdminContext = Depends(require_admin_role),
    supabase=Depends(get_supabase_client),
):
    try:
        users = await _service(ctx, supabase).list_users()
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error listing users: {e}")
        raise internal_error("fetch users", e)
    return {"users": [u.dump() for u in users]}


@router.post("", status_code=201)
async def create_user(
    request: UserCreateRequest,
    ctx: AdminContext = Depends(require_admin_role),
    supabase=Depends(get_supabase_client),
):
    """Create the Supabase Auth account and the profile row"""
    try:
        user = await _service(ctx, supabase).create_user(
            email=request.email,
            full_name=request.full_name,
            role=request.role,
            department=request.department,
            manager_id=request.manager_id,
            password=request.password,
        )
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error creating user {request.email}: {e}")
        raise internal_error("create user", e)
    return {"user": user.dump()}


@router.get("/{user_id}")
async def get_user(
    user_id: str,
    ctx: AdminContext = Depends(require_admin_role),
    supabase=Depends(get_supabase_client),
):
    try:
        user = await _service(ctx, supabase).get_user(user_id)
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error fetching user {user_id}: {e}")
        raise internal_error("fetch user", e)
    return {"user": user.dump()}


@router.put("/{user_id}")
async def update_user(
    user_id: str,
    request: UserUpdateRequest,
    ctx: AdminContext = Depends(require_admin_role),
    supabase=Depends(get_supabase_client),
):
    try:
        user = await _service(ctx, supabase).update_user(user_id, request.model_dump(exclude_unset=True))
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error updating user {user_id}: {e}")
        raise internal_error("update user", e)
    return {"user": user.dump()}


@router.delete("/{user_id}")
async def delete_user(
    user_id: str,
    ctx: AdminContext = Depends(require_admin_role),
    supabase=Depends(get_supabase_client),
):
    """Deactivate a user; accounts are never hard-deleted"""
    try:
        await _service(ctx, supabase).deactivate_user(user_id)
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error deactivating user {user_id}: {e}")
        raise internal_error("delete user", e)
    return {"success": True}
