"""
DTO shapes for the administration module.

Rows come back from PostgREST in snake_case; these models are validated by
field name and serialized by camelCase alias, which is what the admin UI reads.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Literal, Optional, get_args

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


ConfigCategory = Literal[
    "organization", "crm", "sales_performance", "kpi", "learning",
    "integrations", "ai", "mobile", "security", "workflow", "ui",
]
ConfigDataType = Literal["string", "number", "boolean", "json", "array"]
Environment = Literal["development", "staging", "production", "all"]
ModuleName = Literal[
    "crm", "sales_performance", "kpi", "learning", "integrations", "ai",
    "mobile", "pharmaceutical_bi", "workflows", "analytics",
]
LicenseTier = Literal["standard", "professional", "enterprise", "enterprise_plus"]
ParameterType = Literal["string", "number", "boolean", "json", "array", "select", "multiselect"]
AdminActionType = Literal[
    "config_change", "user_create", "user_update", "user_delete", "role_change",
    "permission_change", "module_enable", "module_disable", "integration_setup",
    "security_change", "system_change",
]
RiskLevel = Literal["low", "medium", "high", "critical"]

CONFIG_CATEGORIES: tuple[str, ...] = get_args(ConfigCategory)
MODULE_NAMES: tuple[str, ...] = get_args(ModuleName)


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        protected_namespaces=(),
    )

    @classmethod
    def from_row(cls, row: dict):
        return cls.model_validate(row)

    def dump(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class ValidationRule(CamelModel):
    type: Literal["required", "min", "max", "pattern", "custom"]
    value: Any = None
    message: str

    @model_validator(mode="after")
    def _check_pattern(self):
        if self.type == "pattern":
            if not isinstance(self.value, str):
                raise ValueError("pattern rule value must be a regular expression string")
            try:
                re.compile(self.value)
            except re.error as e:
                raise ValueError(f"invalid pattern: {e}") from e
        return self


class SystemConfiguration(CamelModel):
    id: str
    organization_id: str
    config_key: str
    config_category: str
    config_value: Any = None
    data_type: str
    is_encrypted: bool = False
    is_public: bool = False
    validation_rules: list[ValidationRule] = Field(default_factory=list)
    description: Optional[str] = None
    default_value: Any = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    allowed_values: Optional[list[str]] = None
    requires_restart: bool = False
    environment: str = "production"
    version: int = 1
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict):
        row = dict(row)
        row["validation_rules"] = row.get("validation_rules") or []
        return cls.model_validate(row)


class ConfigurationHistory(CamelModel):
    id: str
    configuration_id: str
    previous_value: Any = None
    new_value: Any = None
    change_reason: Optional[str] = None
    changed_by: Optional[str] = None
    changed_at: Optional[datetime] = None
    rollback_id: Optional[str] = None
    is_rollback: bool = False


class ModuleFeature(CamelModel):
    id: str
    organization_id: str
    module_name: str
    feature_key: str
    feature_name: Optional[str] = None
    is_enabled: bool = False
    is_beta: bool = False
    requires_license: Optional[str] = None
    depends_on: list[str] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)
    rollout_percentage: int = 100
    enabled_for_roles: list[str] = Field(default_factory=list)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict):
        row = dict(row)
        for key, empty in (("depends_on", []), ("config", {}), ("enabled_for_roles", [])):
            if row.get(key) is None:
                row[key] = empty
        if row.get("rollout_percentage") is None:
            row["rollout_percentage"] = 100
        return cls.model_validate(row)


class ModuleParameter(CamelModel):
    id: str
    organization_id: str
    module_name: str
    parameter_key: str
    parameter_name: Optional[str] = None
    parameter_value: Any = None
    parameter_type: Optional[str] = None
    parameter_category: Optional[str] = None
    display_order: int = 0
    is_required: bool = False
    is_sensitive: bool = False
    validation_schema: dict[str, Any] = Field(default_factory=dict)
    help_text: Optional[str] = None
    admin_only: bool = False
    effective_from: Optional[datetime] = None
    effective_until: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict):
        row = dict(row)
        if row.get("validation_schema") is None:
            row["validation_schema"] = {}
        if row.get("display_order") is None:
            row["display_order"] = 0
        return cls.model_validate(row)


class AdminActionLog(CamelModel):
    id: str
    organization_id: str
    admin_user_id: str
    action_type: str
    action_category: str
    target_entity_type: Optional[str] = None
    target_entity_id: Optional[str] = None
    action_description: str
    previous_state: Optional[dict[str, Any]] = None
    new_state: Optional[dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    risk_level: str = "low"
    requires_approval: bool = False
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class PermissionDefinition(CamelModel):
    id: str
    permission_key: str
    permission_name: str
    permission_category: str
    description: Optional[str] = None
    module_name: Optional[str] = None
    is_system_permission: bool = False
    parent_permission_id: Optional[str] = None
    created_at: Optional[datetime] = None


class Role(CamelModel):
    id: str
    organization_id: Optional[str] = None
    role_key: str
    role_name: str
    description: Optional[str] = None
    inherits_from: Optional[str] = None
    is_active: bool = True
    is_system_role: bool = False
    user_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict, user_count: int = 0):
        row = dict(row)
        if row.get("is_active") is None:
            row["is_active"] = True
        if row.get("is_system_role") is None:
            row["is_system_role"] = False
        row["user_count"] = user_count
        return cls.model_validate(row)


class AdminUser(CamelModel):
    id: str
    email: str
    full_name: str = ""
    role: str
    enterprise_role: Optional[str] = None
    organization_id: str
    department: Optional[str] = None
    cost_center: Optional[str] = None
    manager_id: Optional[str] = None
    hire_date: Optional[str] = None
    last_login_at: Optional[datetime] = None
    mfa_enabled: bool = False
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict):
        row = dict(row)
        row["full_name"] = row.get("full_name") or ""
        if row.get("is_active") is None:
            row["is_active"] = True
        if row.get("mfa_enabled") is None:
            row["mfa_enabled"] = False
        return cls.model_validate(row)
