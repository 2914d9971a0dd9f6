"""
Integration connection store.
Keeps third-party connections (Monday.com today) in the integrations table, one row per
organization and integration_type. API tokens are encrypted at rest; inactive rows are kept
(soft delete) so reconnecting updates the same row.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from crypto_utils import MASK, decrypt_value, encrypt_value
from supabase_client import db_call, first_row

logger = logging.getLogger(__name__)

# In-memory cache: {(organization_id, integration_type): {"connection": {...}, "cached_at": float}}
_connection_cache: Dict[tuple, Dict] = {}
CONNECTION_CACHE_TTL = 300  # 5 minutes


def public_view(row: Optional[Dict]) -> Optional[Dict]:
    """Connection row safe to return to the browser."""
    if not row:
        return row
    credentials = dict(row.get("credentials") or {})
    if credentials.get("api_token"):
        credentials["api_token"] = MASK
    return {**row, "credentials": credentials}


class IntegrationStore:
    """Reads and writes integration connections for an organization."""

    def __init__(self, supabase_client):
        self.supabase = supabase_client

    async def get_connection(self, organization_id: str, integration_type: str = "monday") -> Optional[Dict]:
        """Active connection for an organization, with caching."""
        key = (organization_id, integration_type)
        now = time.time()

        entry = _connection_cache.get(key)
        if entry:
            if now - entry.get("cached_at", 0) < CONNECTION_CACHE_TTL:
                return entry["connection"]
            _connection_cache.pop(key, None)

        try:
            result = await db_call(lambda: self.supabase.table("integrations").select("*").eq(
                "organization_id", organization_id
            ).eq("integration_type", integration_type).eq("status", "active").limit(1).execute())
        except Exception as e:
            logger.warning(f"Failed to get {integration_type} connection for org {organization_id}: {e}")
            raise

        connection = first_row(result)
        _connection_cache[key] = {"connection": connection, "cached_at": now}
        return connection

    async def get_api_token(self, organization_id: str, integration_type: str = "monday") -> Optional[str]:
        connection = await self.get_connection(organization_id, integration_type)
        if not connection:
            return None
        token = (connection.get("credentials") or {}).get("api_token")
        return decrypt_value(token) if token else None

    async def get_by_id(self, integration_id: str) -> Optional[Dict]:
        result = await db_call(lambda: self.supabase.table("integrations").select("*").eq(
            "id", integration_id
        ).eq("status", "active").limit(1).execute())
        return first_row(result)

    async def save_connection(
        self,
        organization_id: str,
        api_token: str,
        *,
        integration_type: str = "monday",
        name: Optional[str] = None,
        description: Optional[str] = None,
        account: Optional[Dict] = None,
        user: Optional[Dict] = None,
    ) -> Dict:
        """Store or update a connection (UPSERT on organization + type)."""
        account = account or {}
        user = user or {}
        data = {
            "organization_id": organization_id,
            "integration_type": integration_type,
            "name": name or f"Monday.com - {account.get('name') or 'Connection'}",
            "description": description or "Monday.com integration for project management",
            "status": "active",
            "credentials": {
                "api_token": encrypt_value(api_token),
                "account_id": account.get("id"),
                "account_name": account.get("name"),
                "account_slug": account.get("slug"),
            },
            "metadata": {
                "user_name": user.get("name"),
                "user_email": user.get("email"),
                "connected_at": self._now_iso(),
            },
        }

        # Includes inactive (soft-deleted) rows
        existing_result = await db_call(lambda: self.supabase.table("integrations").select("id, settings").eq(
            "organization_id", organization_id
        ).eq("integration_type", integration_type).limit(1).execute())
        existing = first_row(existing_result)

        try:
            if existing:
                result = await db_call(lambda: self.supabase.table("integrations").update(data).eq(
                    "id", existing["id"]
                ).eq("organization_id", organization_id).execute())
            else:
                data["settings"] = {"sync_enabled": False, "webhook_enabled": False, "webhooks": []}
                result = await db_call(lambda: self.supabase.table("integrations").insert(data).execute())
        except Exception as e:
            logger.error(f"Failed to store {integration_type} connection for org {organization_id}: {e}")
            raise
        finally:
            self._invalidate_cache(organization_id, integration_type)

        logger.info(f"Stored {integration_type} connection for org {organization_id}")
        return first_row(result) or {}

    async def remove_connection(self, organization_id: str, integration_type: str = "monday") -> None:
        """Soft-delete a connection (status=inactive)."""
        try:
            await db_call(lambda: self.supabase.table("integrations").update({
                "status": "inactive",
                "updated_at": self._now_iso(),
            }).eq("organization_id", organization_id).eq("integration_type", integration_type).execute())
        finally:
            self._invalidate_cache(organization_id, integration_type)
        logger.info(f"Removed {integration_type} connection for org {organization_id}")

    async def add_webhook(self, connection: Dict, webhook: Dict) -> None:
        settings = dict(connection.get("settings") or {})
        settings["webhooks"] = list(settings.get("webhooks") or []) + [{**webhook, "created_at": self._now_iso()}]
        settings["webhook_enabled"] = True
        try:
            await db_call(lambda: self.supabase.table("integrations").update({
                "settings": settings,
            }).eq("id", connection["id"]).execute())
        finally:
            self._invalidate_cache(connection["organization_id"], connection.get("integration_type", "monday"))

    async def record_event(self, connection: Dict, event_type: Optional[str], payload: Dict[str, Any]) -> Optional[Dict]:
        """Append an incoming webhook event to integration_events."""
        result = await db_call(lambda: self.supabase.table("integration_events").insert({
            "integration_id": connection["id"],
            "organization_id": connection["organization_id"],
            "event_type": event_type or "unknown",
            "payload": payload,
            "processed_at": self._now_iso(),
        }).execute())
        return first_row(result)

    def _invalidate_cache(self, organization_id: str, integration_type: str):
        _connection_cache.pop((organization_id, integration_type), None)

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()
