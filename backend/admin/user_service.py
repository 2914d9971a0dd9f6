"""User administration for one organization (admin / super_admin only)."""

import logging
from typing import Any, Dict, List, Optional

from admin.configuration_service import ConfigurationService
from admin.models import AdminUser
from auth_service import generate_temporary_password
from errors import NotFoundError, ValidationFailedError
from supabase_client import db_call, first_row

logger = logging.getLogger(__name__)

ADMIN_ROLES = ("admin", "super_admin")

# Columns an admin may change through update_user
UPDATABLE_FIELDS = (
    "full_name", "role", "enterprise_role", "department", "cost_center",
    "manager_id", "hire_date", "is_active",
)


class UserAdminService:
    """CRUD over the users table, paired with Supabase Auth accounts."""

    def __init__(self, supabase, organization_id: str, actor_id: str):
        self.supabase = supabase
        self.organization_id = organization_id
        self.actor_id = actor_id
        self.audit = ConfigurationService(supabase, organization_id, actor_id)

    async def list_users(self) -> List[AdminUser]:
        try:
            result = await db_call(lambda: self.supabase.table("users").select("*").eq(
                "organization_id", self.organization_id
            ).order("created_at", desc=True).execute())
        except Exception as e:
            logger.error(f"Error listing users for org {self.organization_id}: {e}")
            raise
        return [AdminUser.from_row(row) for row in result.data or []]

    async def get_user(self, user_id: str) -> AdminUser:
        return AdminUser.from_row(await self._get_user_row(user_id))

    async def create_user(
        self,
        email: str,
        full_name: str,
        role: str = "rep",
        department: Optional[str] = None,
        manager_id: Optional[str] = None,
        password: Optional[str] = None,
    ) -> AdminUser:
        """Create the auth account first, then the profile row; undo the account if the row fails."""
        try:
            auth_response = await db_call(lambda: self.supabase.auth.admin.create_user({
                "email": email,
                "password": password or generate_temporary_password(),
                "email_confirm": True,
                "user_metadata": {"full_name": full_name},
            }))
        except Exception as e:
            logger.error(f"Error creating auth user {email}: {e}")
            raise ValidationFailedError("Failed to create user", details=str(e))

        auth_user_id = auth_response.user.id
        try:
            result = await db_call(lambda: self.supabase.table("users").insert({
                "id": auth_user_id,
                "email": email,
                "full_name": full_name,
                "role": role,
                "organization_id": self.organization_id,
                "department": department,
                "manager_id": manager_id,
                "is_active": True,
            }).execute())
            row = first_row(result)
            if not row:
                raise RuntimeError("users insert returned no row")
        except Exception as e:
            logger.error(f"Error creating user profile {email}, removing auth user: {e}")
            await db_call(lambda: self.supabase.auth.admin.delete_user(auth_user_id))
            raise

        await self.audit.log_admin_action(
            action_type="user_create",
            action_category="user_management",
            action_description=f"Created user {email} with role {role}",
            target_entity_type="user",
            target_entity_id=auth_user_id,
            new_state={"email": email, "fullName": full_name, "role": role},
            risk_level="medium",
        )
        logger.info(f"User {email} created in org {self.organization_id} by {self.actor_id}")
        return AdminUser.from_row(row)

    async def update_user(self, user_id: str, updates: Dict[str, Any]) -> AdminUser:
        existing = await self._get_user_row(user_id)
        changes = {k: v for k, v in updates.items() if k in UPDATABLE_FIELDS}
        if not changes:
            return AdminUser.from_row(existing)

        try:
            result = await db_call(lambda: self.supabase.table("users").update(changes).eq(
                "id", user_id
            ).eq("organization_id", self.organization_id).execute())
        except Exception as e:
            logger.error(f"Error updating user {user_id}: {e}")
            raise

        row = first_row(result)
        if not row:
            raise NotFoundError("User not found")

        role_changed = "role" in changes and changes["role"] != existing.get("role")
        await self.audit.log_admin_action(
            action_type="role_change" if role_changed else "user_update",
            action_category="user_management",
            action_description=f"Updated user {existing.get('email')}",
            target_entity_type="user",
            target_entity_id=user_id,
            previous_state={k: existing.get(k) for k in changes},
            new_state=changes,
            risk_level="high" if role_changed else "low",
        )
        return AdminUser.from_row(row)

    async def deactivate_user(self, user_id: str) -> AdminUser:
        """Soft delete: the profile is kept with is_active = false."""
        if user_id == self.actor_id:
            raise ValidationFailedError("Cannot delete your own account")

        existing = await self._get_user_row(user_id)
        try:
            result = await db_call(lambda: self.supabase.table("users").update({
                "is_active": False,
            }).eq("id", user_id).eq("organization_id", self.organization_id).execute())
        except Exception as e:
            logger.error(f"Error deactivating user {user_id}: {e}")
            raise

        row = first_row(result)
        if not row:
            raise NotFoundError("User not found")

        await self.audit.log_admin_action(
            action_type="user_delete",
            action_category="user_management",
            action_description=f"Deactivated user {existing.get('email')}",
            target_entity_type="user",
            target_entity_id=user_id,
            previous_state={"isActive": existing.get("is_active", True)},
            new_state={"isActive": False},
            risk_level="high",
        )
        return AdminUser.from_row(row)

    async def _get_user_row(self, user_id: str) -> dict:
        result = await db_call(lambda: self.supabase.table("users").select("*").eq(
            "id", user_id
        ).eq("organization_id", self.organization_id).limit(1).execute())
        row = first_row(result)
        if not row:
            raise NotFoundError("User not found")
        return row
