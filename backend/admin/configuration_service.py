"""
Configuration Service
=====================
Per-request wrapper around the administration tables and RPCs:

  system_configurations   key/value settings, one production row per key
  configuration_history   written by the log_configuration_change RPC
  module_features         per-organization feature flags
  module_parameters       per-module tunables
  admin_action_logs       audit trail for every admin mutation
  permission_definitions / role_permissions

Hierarchy resolution (user > role > organization > default) and history
versioning are done by the database functions; this class marshals parameters,
validates values before they are written and maps rows into DTOs.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Optional

from admin.models import (
    AdminActionLog,
    ConfigurationHistory,
    ModuleFeature,
    ModuleParameter,
    PermissionDefinition,
    SystemConfiguration,
    ValidationRule,
)
from crypto_utils import MASK, decrypt_json, encrypt_json, mask_value
from errors import NotFoundError, ValidationFailedError
from supabase_client import db_call, first_row

logger = logging.getLogger(__name__)

DEFAULT_ENVIRONMENT = "production"
DEFAULT_ROLE = "rep"
HISTORY_LIMIT = 50


def infer_data_type(value: Any) -> str:
    """Map a JSON value onto a config data type. bool is checked before number."""
    if isinstance(value, str):
        return "string"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, list):
        return "array"
    return "json"


def _matches_type(value: Any, data_type: str) -> bool:
    if value is None:
        return True
    if data_type == "string":
        return isinstance(value, str)
    if data_type == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if data_type == "boolean":
        return isinstance(value, bool)
    if data_type == "array":
        return isinstance(value, list)
    return True


def _measure(value: Any) -> Optional[float]:
    """Numbers compare by value, strings and arrays by length."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, (str, list)):
        return float(len(value))
    return None


def validate_config_value(
    value: Any,
    data_type: str,
    rules: Optional[list[ValidationRule]] = None,
    min_value: Optional[float] = None,
    max_value: Optional[float] = None,
    allowed_values: Optional[list[str]] = None,
) -> list[str]:
    """Return the list of validation failures for a candidate config value."""
    errors: list[str] = []

    if not _matches_type(value, data_type):
        errors.append(f"Value must be of type {data_type}")
        return errors

    for rule in rules or []:
        if rule.type == "required":
            if value is None or value == "" or value == []:
                errors.append(rule.message)
        elif rule.type in ("min", "max"):
            measured = _measure(value)
            try:
                bound = float(rule.value)
            except (TypeError, ValueError):
                continue
            if measured is None:
                continue
            if rule.type == "min" and measured < bound:
                errors.append(rule.message)
            if rule.type == "max" and measured > bound:
                errors.append(rule.message)
        elif rule.type == "pattern":
            if isinstance(value, str) and isinstance(rule.value, str):
                try:
                    matched = re.search(rule.value, value)
                except re.error as e:
                    errors.append(f"Invalid pattern rule {rule.value!r}: {e}")
                    continue
                if not matched:
                    errors.append(rule.message)
        # "custom" rules are evaluated by the database trigger

    measured = _measure(value) if data_type == "number" else None
    if measured is not None:
        if min_value is not None and measured < min_value:
            errors.append(f"Value must be at least {min_value}")
        if max_value is not None and measured > max_value:
            errors.append(f"Value must be at most {max_value}")

    if allowed_values and value is not None and str(value) not in allowed_values:
        errors.append(f"Value must be one of: {', '.join(allowed_values)}")

    return errors


def group_features_by_module(features: list[ModuleFeature]) -> list[dict]:
    """Group features into the modules overview, preserving first-seen order."""
    modules: dict[str, dict] = {}
    for feature in features:
        entry = modules.setdefault(feature.module_name, {
            "name": feature.module_name,
            "features": [],
            "enabledFeatures": 0,
            "totalFeatures": 0,
        })
        entry["features"].append(feature)
        entry["totalFeatures"] += 1
        if feature.is_enabled:
            entry["enabledFeatures"] += 1
    return list(modules.values())


class ConfigurationService:
    """Configuration, module and audit operations for one organization and acting user."""

    def __init__(self, supabase, organization_id: str, user_id: str):
        self.supabase = supabase
        self.organization_id = organization_id
        self.user_id = user_id

    # ── Configuration values ─────────────────────────────────────────

    async def get_config_value(
        self,
        config_key: str,
        user_id: Optional[str] = None,
        role_name: Optional[str] = None,
    ) -> Any:
        """Resolved value for a key. Priority: user override > role override > organization > default."""
        try:
            result = await db_call(lambda: self.supabase.rpc("get_config_value", {
                "p_organization_id": self.organization_id,
                "p_config_key": config_key,
                "p_user_id": user_id,
                "p_role_name": role_name,
            }).execute())
        except Exception as e:
            logger.error(f"Error getting config value {config_key}: {e}")
            raise
        return decrypt_json(result.data)

    async def set_config_value(
        self,
        config_key: str,
        value: Any,
        category: str,
        data_type: str,
        *,
        description: Optional[str] = None,
        is_public: Optional[bool] = None,
        requires_restart: Optional[bool] = None,
        validation_rules: Optional[list[ValidationRule]] = None,
        reason: Optional[str] = None,
    ) -> SystemConfiguration:
        """Create or update the production value for a key and record the change."""
        existing = await self._get_configuration_row(config_key)

        rules = validation_rules
        if rules is None and existing:
            # stored rules predate pattern checking; bad ones are reported by validate_config_value
            rules = [ValidationRule.model_construct(**r) for r in existing.get("validation_rules") or []]
        effective_type = existing.get("data_type", data_type) if existing else data_type
        errors = validate_config_value(
            value,
            effective_type,
            rules,
            min_value=existing.get("min_value") if existing else None,
            max_value=existing.get("max_value") if existing else None,
            allowed_values=existing.get("allowed_values") if existing else None,
        )
        if errors:
            raise ValidationFailedError("Validation error", details=errors)

        options: dict[str, Any] = {}
        if description is not None:
            options["description"] = description
        if is_public is not None:
            options["is_public"] = is_public
        if requires_restart is not None:
            options["requires_restart"] = requires_restart
        if validation_rules is not None:
            options["validation_rules"] = [r.model_dump() for r in validation_rules]

        try:
            if existing:
                stored = encrypt_json(value) if existing.get("is_encrypted") else value
                result = await db_call(lambda: self.supabase.table("system_configurations").update({
                    "config_value": stored,
                    "updated_by": self.user_id,
                    "version": (existing.get("version") or 1) + 1,
                    **options,
                }).eq("id", existing["id"]).eq("organization_id", self.organization_id).execute())
                row = first_row(result)
                if not row:
                    raise NotFoundError(f"Configuration {config_key} not found")
                await self._log_configuration_change(
                    existing["id"],
                    existing.get("config_value"),
                    stored,
                    reason or "Configuration updated",
                )
            else:
                result = await db_call(lambda: self.supabase.table("system_configurations").insert({
                    "organization_id": self.organization_id,
                    "config_key": config_key,
                    "config_category": category,
                    "config_value": value,
                    "data_type": data_type,
                    "environment": DEFAULT_ENVIRONMENT,
                    "created_by": self.user_id,
                    **options,
                }).execute())
                row = first_row(result)
                if not row:
                    raise NotFoundError(f"Configuration {config_key} was not created")
                await self._log_configuration_change(
                    row["id"], None, value, reason or "Configuration created"
                )
        except (NotFoundError, ValidationFailedError):
            raise
        except Exception as e:
            logger.error(f"Error setting config value {config_key}: {e}")
            raise

        logger.info(f"Config {config_key} set by {self.user_id} in org {self.organization_id}")
        return self._map_configuration(row)

    async def get_configurations_by_category(
        self,
        category: str,
        environment: str = DEFAULT_ENVIRONMENT,
    ) -> list[SystemConfiguration]:
        try:
            result = await db_call(lambda: self.supabase.table("system_configurations").select("*").eq(
                "organization_id", self.organization_id
            ).eq("config_category", category).eq("environment", environment).order(
                "config_key"
            ).execute())
        except Exception as e:
            logger.error(f"Error getting configurations for category {category}: {e}")
            raise
        return [self._map_configuration(row) for row in result.data or []]

    async def get_configuration_history(
        self,
        config_key: str,
        limit: int = HISTORY_LIMIT,
    ) -> list[ConfigurationHistory]:
        """Newest-first change history of a key."""
        try:
            result = await db_call(lambda: self.supabase.table("configuration_history").select(
                "*, system_configurations!inner(config_key, organization_id, is_encrypted)"
            ).eq(
                "system_configurations.organization_id", self.organization_id
            ).eq(
                "system_configurations.config_key", config_key
            ).order("changed_at", desc=True).limit(limit).execute())
        except Exception as e:
            logger.error(f"Error getting configuration history for {config_key}: {e}")
            raise

        history = []
        for row in result.data or []:
            parent = row.get("system_configurations") or {}
            if parent.get("is_encrypted"):
                row = {
                    **row,
                    "previous_value": mask_value(row.get("previous_value")),
                    "new_value": mask_value(row.get("new_value")),
                }
            history.append(ConfigurationHistory.from_row(row))
        return history

    async def rollback_configuration(self, config_key: str, history_id: str) -> SystemConfiguration:
        """Restore the value a history entry replaced."""
        config = await self._get_configuration_row(config_key)
        if not config:
            raise NotFoundError(f"Configuration {config_key} not found")

        history_result = await db_call(lambda: self.supabase.table("configuration_history").select("*").eq(
            "id", history_id
        ).eq("configuration_id", config["id"]).limit(1).execute())
        history = first_row(history_result)
        if not history:
            raise NotFoundError(f"History entry {history_id} not found for {config_key}")

        restored = history.get("previous_value")
        try:
            result = await db_call(lambda: self.supabase.table("system_configurations").update({
                "config_value": restored,
                "updated_by": self.user_id,
                "version": (config.get("version") or 1) + 1,
            }).eq("id", config["id"]).eq("organization_id", self.organization_id).execute())
        except Exception as e:
            logger.error(f"Error rolling back configuration {config_key}: {e}")
            raise

        row = first_row(result)
        if not row:
            raise NotFoundError(f"Configuration {config_key} not found")

        await self._log_configuration_change(
            config["id"],
            config.get("config_value"),
            restored,
            f"Rollback to version {history.get('changed_at')}",
        )
        logger.info(f"Config {config_key} rolled back to history {history_id}")
        return self._map_configuration(row)

    # ── Module features ──────────────────────────────────────────────

    async def get_module_features(self, module_name: Optional[str] = None) -> list[ModuleFeature]:
        query = self.supabase.table("module_features").select("*").eq(
            "organization_id", self.organization_id
        )
        if module_name:
            query = query.eq("module_name", module_name)
        try:
            result = await db_call(lambda: query.order("module_name").execute())
        except Exception as e:
            logger.error(f"Error getting module features: {e}")
            raise
        return [ModuleFeature.from_row(row) for row in result.data or []]

    async def toggle_module_feature(
        self,
        module_name: str,
        feature_key: str,
        enabled: bool,
        reason: Optional[str] = None,
    ) -> ModuleFeature:
        try:
            result = await db_call(lambda: self.supabase.table("module_features").update({
                "is_enabled": enabled,
                "updated_by": self.user_id,
            }).eq("organization_id", self.organization_id).eq(
                "module_name", module_name
            ).eq("feature_key", feature_key).execute())
        except Exception as e:
            logger.error(f"Error toggling feature {module_name}.{feature_key}: {e}")
            raise

        row = first_row(result)
        if not row:
            raise NotFoundError(f"Feature {feature_key} not found in module {module_name}")

        description = f"{'Enabled' if enabled else 'Disabled'} feature {feature_key} in module {module_name}"
        if reason:
            description = f"{description}: {reason}"
        await self.log_admin_action(
            action_type="module_enable" if enabled else "module_disable",
            action_category="module_management",
            action_description=description,
            target_entity_type="module_feature",
            target_entity_id=row.get("id"),
            new_state={"moduleName": module_name, "featureKey": feature_key, "enabled": enabled},
            risk_level="low",
        )
        return ModuleFeature.from_row(row)

    # ── Module parameters ────────────────────────────────────────────

    async def get_module_parameters(self, module_name: str) -> list[ModuleParameter]:
        try:
            result = await db_call(lambda: self.supabase.table("module_parameters").select("*").eq(
                "organization_id", self.organization_id
            ).eq("module_name", module_name).order(
                "parameter_category"
            ).order("display_order").execute())
        except Exception as e:
            logger.error(f"Error getting parameters for module {module_name}: {e}")
            raise

        parameters = []
        for row in result.data or []:
            if row.get("is_sensitive"):
                row = {**row, "parameter_value": mask_value(row.get("parameter_value"))}
            parameters.append(ModuleParameter.from_row(row))
        return parameters

    async def set_module_parameter(
        self,
        module_name: str,
        parameter_key: str,
        value: Any,
        *,
        parameter_name: Optional[str] = None,
        parameter_type: Optional[str] = None,
        parameter_category: Optional[str] = None,
        help_text: Optional[str] = None,
        admin_only: Optional[bool] = None,
        reason: Optional[str] = None,
    ) -> ModuleParameter:
        existing_result = await db_call(lambda: self.supabase.table("module_parameters").select("*").eq(
            "organization_id", self.organization_id
        ).eq("module_name", module_name).eq("parameter_key", parameter_key).limit(1).execute())
        existing = first_row(existing_result)

        options = {
            key: val for key, val in {
                "parameter_name": parameter_name,
                "parameter_type": parameter_type,
                "parameter_category": parameter_category,
                "help_text": help_text,
                "admin_only": admin_only,
            }.items() if val is not None
        }
        sensitive = bool(existing and existing.get("is_sensitive"))
        stored = encrypt_json(value) if sensitive else value
        shown = mask_value(value) if sensitive else value

        try:
            if existing:
                result = await db_call(lambda: self.supabase.table("module_parameters").update({
                    "parameter_value": stored,
                    "updated_by": self.user_id,
                    **options,
                }).eq("id", existing["id"]).eq("organization_id", self.organization_id).execute())
                previous = mask_value(existing.get("parameter_value")) if sensitive else existing.get("parameter_value")
                verb = "Updated"
                previous_state = {"parameterKey": parameter_key, "oldValue": previous}
                new_state = {"parameterKey": parameter_key, "newValue": shown}
            else:
                result = await db_call(lambda: self.supabase.table("module_parameters").insert({
                    "organization_id": self.organization_id,
                    "module_name": module_name,
                    "parameter_key": parameter_key,
                    "parameter_value": value,
                    "parameter_name": parameter_name or parameter_key,
                    "created_by": self.user_id,
                    **options,
                }).execute())
                verb = "Created"
                previous_state = None
                new_state = {"parameterKey": parameter_key, "value": value}
        except Exception as e:
            logger.error(f"Error setting parameter {module_name}.{parameter_key}: {e}")
            raise

        row = first_row(result)
        if not row:
            raise NotFoundError(f"Parameter {parameter_key} not found in module {module_name}")

        description = f"{verb} parameter {parameter_key} in module {module_name}"
        if reason:
            description = f"{description}: {reason}"
        await self.log_admin_action(
            action_type="config_change",
            action_category="module_parameters",
            action_description=description,
            target_entity_type="module_parameter",
            target_entity_id=row.get("id"),
            previous_state=previous_state,
            new_state=new_state,
            risk_level="low",
        )
        if sensitive:
            row = {**row, "parameter_value": MASK}
        return ModuleParameter.from_row(row)

    # ── Permissions ──────────────────────────────────────────────────

    async def has_admin_permission(self, permission_key: str) -> bool:
        return await has_admin_permission(self.supabase, self.user_id, permission_key)

    async def get_user_role(self) -> str:
        try:
            result = await db_call(lambda: self.supabase.table("users").select("role").eq(
                "id", self.user_id
            ).limit(1).execute())
            row = first_row(result)
            if row and row.get("role"):
                return row["role"]
        except Exception as e:
            logger.error(f"Error getting role for user {self.user_id}: {e}")
        return DEFAULT_ROLE

    async def get_user_permissions(self) -> list[str]:
        role = await self.get_user_role()
        try:
            result = await db_call(lambda: self.supabase.table("role_permissions").select(
                "permission_definitions!inner(permission_key)"
            ).eq("organization_id", self.organization_id).eq(
                "role_name", role
            ).eq("is_granted", True).execute())
        except Exception as e:
            logger.error(f"Error getting permissions for role {role}: {e}")
            return []

        keys = []
        for item in result.data or []:
            definition = item.get("permission_definitions") or {}
            if definition.get("permission_key"):
                keys.append(definition["permission_key"])
        return keys

    async def get_permission_definitions(self) -> list[PermissionDefinition]:
        try:
            result = await db_call(lambda: self.supabase.table("permission_definitions").select("*").order(
                "permission_category"
            ).order("permission_name").execute())
        except Exception as e:
            logger.error(f"Error getting permission definitions: {e}")
            raise
        return [PermissionDefinition.from_row(row) for row in result.data or []]

    # ── Audit ────────────────────────────────────────────────────────

    async def log_admin_action(
        self,
        action_type: str,
        action_category: str,
        action_description: str,
        *,
        target_entity_type: Optional[str] = None,
        target_entity_id: Optional[str] = None,
        previous_state: Optional[dict] = None,
        new_state: Optional[dict] = None,
        risk_level: str = "low",
    ) -> Optional[str]:
        """Insert an admin_action_logs row and return its id."""
        try:
            result = await db_call(lambda: self.supabase.table("admin_action_logs").insert({
                "organization_id": self.organization_id,
                "admin_user_id": self.user_id,
                "action_type": action_type,
                "action_category": action_category,
                "action_description": action_description,
                "target_entity_type": target_entity_type,
                "target_entity_id": target_entity_id,
                "previous_state": previous_state,
                "new_state": new_state,
                "risk_level": risk_level,
            }).execute())
        except Exception as e:
            logger.error(f"Error logging admin action {action_type}: {e}")
            raise
        row = first_row(result)
        return row.get("id") if row else None

    async def get_admin_action_logs(
        self,
        action_type: Optional[str] = None,
        risk_level: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[AdminActionLog]:
        query = self.supabase.table("admin_action_logs").select("*").eq(
            "organization_id", self.organization_id
        )
        if action_type:
            query = query.eq("action_type", action_type)
        if risk_level:
            query = query.eq("risk_level", risk_level)
        if start_date:
            query = query.gte("created_at", start_date.isoformat())
        if end_date:
            query = query.lte("created_at", end_date.isoformat())
        query = query.order("created_at", desc=True)
        if limit:
            query = query.limit(limit)

        try:
            result = await db_call(lambda: query.execute())
        except Exception as e:
            logger.error(f"Error getting admin action logs: {e}")
            raise
        return [AdminActionLog.from_row(row) for row in result.data or []]

    # ── Helpers ──────────────────────────────────────────────────────

    async def _get_configuration_row(self, config_key: str) -> Optional[dict]:
        try:
            result = await db_call(lambda: self.supabase.table("system_configurations").select("*").eq(
                "organization_id", self.organization_id
            ).eq("config_key", config_key).eq("environment", DEFAULT_ENVIRONMENT).limit(1).execute())
        except Exception as e:
            logger.error(f"Error loading configuration {config_key}: {e}")
            raise
        return first_row(result)

    async def _log_configuration_change(
        self,
        configuration_id: str,
        previous_value: Any,
        new_value: Any,
        reason: str,
    ) -> Any:
        try:
            result = await db_call(lambda: self.supabase.rpc("log_configuration_change", {
                "p_configuration_id": configuration_id,
                "p_previous_value": previous_value,
                "p_new_value": new_value,
                "p_change_reason": reason,
                "p_changed_by": self.user_id,
            }).execute())
        except Exception as e:
            logger.error(f"Error logging configuration change for {configuration_id}: {e}")
            raise
        return result.data

    @staticmethod
    def _map_configuration(row: dict) -> SystemConfiguration:
        if row.get("is_encrypted"):
            row = {**row, "config_value": mask_value(row.get("config_value"))}
        return SystemConfiguration.from_row(row)


async def has_admin_permission(supabase, user_id: str, permission_key: str) -> bool:
    """has_admin_permission RPC; any failure counts as not permitted."""
    try:
        result = await db_call(lambda: supabase.rpc("has_admin_permission", {
            "p_user_id": user_id,
            "p_permission_key": permission_key,
        }).execute())
        return bool(result.data)
    except Exception as e:
        logger.error(f"Error checking admin permission {permission_key} for {user_id}: {e}")
        return False
