"""
Role management for one organization.

Roles live in the `roles` table; their grants are `role_permissions` rows keyed
by (organization_id, role_name) where role_name holds the role's role_key, the
same value stored in users.role. Every change to a role's grants is written to
the admin audit log as a high risk permission_change.
"""

import logging
import re
from collections import Counter
from typing import List, Optional

from admin.configuration_service import ConfigurationService
from admin.models import PermissionDefinition, Role
from errors import ConflictError, NotFoundError, ValidationFailedError
from supabase_client import db_call, first_row

logger = logging.getLogger(__name__)

ROLE_KEY_PATTERN = re.compile(r"^[a-z][a-z0-9_]{1,49}$")


class RoleService:
    def __init__(self, supabase, organization_id: str, actor_id: str):
        self.supabase = supabase
        self.organization_id = organization_id
        self.actor_id = actor_id
        self.audit = ConfigurationService(supabase, organization_id, actor_id)

    async def list_roles(self) -> List[Role]:
        """Roles of the organization ordered by name, each with its number of users."""
        try:
            result = await db_call(lambda: self.supabase.table("roles").select("*").eq(
                "organization_id", self.organization_id
            ).order("role_name").execute())
            users = await db_call(lambda: self.supabase.table("users").select("role").eq(
                "organization_id", self.organization_id
            ).execute())
        except Exception as e:
            logger.error(f"Error listing roles for org {self.organization_id}: {e}")
            raise

        counts = Counter(row.get("role") for row in users.data or [])
        return [Role.from_row(row, counts.get(row.get("role_key"), 0)) for row in result.data or []]

    async def create_role(
        self,
        role_key: str,
        role_name: str,
        description: Optional[str] = None,
        inherits_from: Optional[str] = None,
        permissions: Optional[List[str]] = None,
    ) -> Role:
        if not ROLE_KEY_PATTERN.match(role_key):
            raise ValidationFailedError(
                "Invalid role key",
                details="Use 2-50 lowercase letters, digits or underscores, starting with a letter",
            )
        if not role_name.strip():
            raise ValidationFailedError("Role name is required")

        if await self._find_role_by_key(role_key):
            raise ConflictError("Role key already exists", details=f"A role with key {role_key} already exists")
        if inherits_from and not await self._find_role_by_key(inherits_from):
            raise ValidationFailedError(f"Unknown parent role: {inherits_from}")

        # Resolve grants before the insert so unknown keys leave nothing behind
        definitions = await self._resolve_permissions(permissions or [])

        try:
            result = await db_call(lambda: self.supabase.table("roles").insert({
                "organization_id": self.organization_id,
                "role_key": role_key,
                "role_name": role_name.strip(),
                "description": description,
                "inherits_from": inherits_from,
                "is_active": True,
                "is_system_role": False,
            }).execute())
            row = first_row(result)
            if not row:
                raise RuntimeError("roles insert returned no row")
        except Exception as e:
            logger.error(f"Error creating role {role_key}: {e}")
            raise

        if definitions:
            await self._write_grants(role_key, definitions)

        granted = sorted(d["permission_key"] for d in definitions)
        await self.audit.log_admin_action(
            action_type="permission_change",
            action_category="role_management",
            action_description=f"Created role {role_key} with {len(granted)} permissions",
            target_entity_type="role",
            target_entity_id=row.get("id"),
            new_state={"roleKey": role_key, "roleName": row.get("role_name"), "permissions": granted},
            risk_level="high",
        )
        logger.info(f"Role {role_key} created in org {self.organization_id} by {self.actor_id}")
        return Role.from_row(row)

    async def get_role_permissions(self, role_id: str) -> tuple[Role, List[PermissionDefinition]]:
        role = await self._get_role_row(role_id)
        return Role.from_row(role), await self._granted_permissions(role["role_key"])

    async def set_role_permissions(self, role_id: str, permission_keys: List[str]) -> List[str]:
        """Replace the role's grants with exactly `permission_keys`; returns the granted keys."""
        role = await self._get_role_row(role_id)
        role_key = role["role_key"]
        definitions = await self._resolve_permissions(permission_keys)
        previous = sorted(p.permission_key for p in await self._granted_permissions(role_key))

        try:
            await db_call(lambda: self.supabase.table("role_permissions").delete().eq(
                "organization_id", self.organization_id
            ).eq("role_name", role_key).execute())
        except Exception as e:
            logger.error(f"Error clearing permissions for role {role_key}: {e}")
            raise
        if definitions:
            await self._write_grants(role_key, definitions)

        granted = sorted(d["permission_key"] for d in definitions)
        await self.audit.log_admin_action(
            action_type="permission_change",
            action_category="role_management",
            action_description=f"Updated permissions of role {role_key}",
            target_entity_type="role",
            target_entity_id=role_id,
            previous_state={"permissions": previous},
            new_state={"permissions": granted},
            risk_level="high",
        )
        logger.info(f"Role {role_key}: {len(previous)} -> {len(granted)} permissions, by {self.actor_id}")
        return granted

    async def _granted_permissions(self, role_key: str) -> List[PermissionDefinition]:
        try:
            result = await db_call(lambda: self.supabase.table("role_permissions").select(
                "permission_id, permission_definitions!inner(*)"
            ).eq("organization_id", self.organization_id).eq(
                "role_name", role_key
            ).eq("is_granted", True).execute())
        except Exception as e:
            logger.error(f"Error getting permissions for role {role_key}: {e}")
            raise

        permissions = [
            PermissionDefinition.from_row(item["permission_definitions"])
            for item in result.data or []
            if item.get("permission_definitions")
        ]
        permissions.sort(key=lambda p: (p.permission_category, p.permission_key))
        return permissions

    async def _resolve_permissions(self, permission_keys: List[str]) -> List[dict]:
        keys = list(dict.fromkeys(permission_keys))
        if not keys:
            return []
        try:
            result = await db_call(lambda: self.supabase.table("permission_definitions").select(
                "id, permission_key"
            ).in_("permission_key", keys).execute())
        except Exception as e:
            logger.error(f"Error resolving permission keys: {e}")
            raise

        definitions = result.data or []
        unknown = sorted(set(keys) - {d.get("permission_key") for d in definitions})
        if unknown:
            raise ValidationFailedError("Unknown permissions", details=unknown)
        return definitions

    async def _write_grants(self, role_key: str, definitions: List[dict]) -> None:
        rows = [
            {
                "organization_id": self.organization_id,
                "role_name": role_key,
                "permission_id": d["id"],
                "is_granted": True,
                "granted_by": self.actor_id,
            }
            for d in definitions
        ]
        try:
            await db_call(lambda: self.supabase.table("role_permissions").insert(rows).execute())
        except Exception as e:
            logger.error(f"Error granting permissions to role {role_key}: {e}")
            raise

    async def _find_role_by_key(self, role_key: str) -> Optional[dict]:
        result = await db_call(lambda: self.supabase.table("roles").select("id, role_key").eq(
            "organization_id", self.organization_id
        ).eq("role_key", role_key).limit(1).execute())
        return first_row(result)

    async def _get_role_row(self, role_id: str) -> dict:
        result = await db_call(lambda: self.supabase.table("roles").select("*").eq(
            "id", role_id
        ).eq("organization_id", self.organization_id).limit(1).execute())
        row = first_row(result)
        if not row:
            raise NotFoundError("Role not found")
        return row
