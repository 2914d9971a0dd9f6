"""Admin configuration, module, audit and permission endpoints."""
import logging
from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from admin.configuration_service import group_features_by_module, infer_data_type
from admin.models import (
    CONFIG_CATEGORIES,
    MODULE_NAMES,
    AdminActionType,
    CamelModel,
    ConfigDataType,
    RiskLevel,
    ValidationRule,
)
from dependencies import (
    AdminContext,
    Permissions,
    configuration_service,
    get_admin_context,
    get_supabase_client,
)
from errors import ServiceError, ValidationFailedError, internal_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


# ============ Request Models ============

class ConfigUpdateRequest(CamelModel):
    value: Any = None
    data_type: Optional[ConfigDataType] = None
    description: Optional[str] = None
    is_public: Optional[bool] = None
    requires_restart: Optional[bool] = None
    validation_rules: Optional[List[ValidationRule]] = None
    reason: Optional[str] = None


class BulkConfigItem(CamelModel):
    key: str
    value: Any = None
    reason: Optional[str] = None


class BulkConfigRequest(CamelModel):
    configs: List[BulkConfigItem]


class RollbackRequest(CamelModel):
    history_id: UUID


class FeatureUpdate(CamelModel):
    feature_key: str
    enabled: bool


class ParameterUpdate(CamelModel):
    parameter_key: str
    value: Any = None


class ModuleUpdateRequest(CamelModel):
    features: List[FeatureUpdate] = []
    parameters: List[ParameterUpdate] = []
    reason: Optional[str] = None


def category_for_key(config_key: str) -> str:
    """Keys are namespaced by category: 'crm.pipeline.stages' -> 'crm'."""
    category = config_key.split(".", 1)[0]
    if category not in CONFIG_CATEGORIES:
        raise ValidationFailedError(
            f"Unknown configuration category: {category}",
            details={"allowed": list(CONFIG_CATEGORIES)},
        )
    return category


def _check_module(module_name: str) -> None:
    if module_name not in MODULE_NAMES:
        raise ValidationFailedError(
            f"Unknown module: {module_name}", details={"allowed": list(MODULE_NAMES)}
        )


# ============ Configuration Endpoints ============

@router.get("/config")
async def get_configurations(
    category: Optional[str] = None,
    module: Optional[str] = None,
    environment: str = "production",
    ctx: AdminContext = Depends(get_admin_context(Permissions.MODULES_VIEW)),
    supabase=Depends(get_supabase_client),
):
    """Configurations of a category, or the parameters of a module"""
    if not category and not module:
        raise ValidationFailedError("Either category or module is required")

    service = configuration_service(ctx, supabase)
    try:
        if module:
            _check_module(module)
            parameters = await service.get_module_parameters(module)
            return {"parameters": [p.dump() for p in parameters]}

        if category not in CONFIG_CATEGORIES:
            raise ValidationFailedError(
                f"Unknown configuration category: {category}",
                details={"allowed": list(CONFIG_CATEGORIES)},
            )
        configs = await service.get_configurations_by_category(category, environment)
        return {"configurations": [c.dump() for c in configs]}
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error fetching configurations: {e}")
        raise internal_error("fetch configurations", e)


@router.get("/config/value/{config_key}")
async def get_config_value(
    config_key: str,
    user_id: Optional[str] = Query(None, alias="userId"),
    role_name: Optional[str] = Query(None, alias="roleName"),
    ctx: AdminContext = Depends(get_admin_context(Permissions.MODULES_VIEW)),
    supabase=Depends(get_supabase_client),
):
    """Resolved value after user / role / organization overrides"""
    service = configuration_service(ctx, supabase)
    try:
        value = await service.get_config_value(config_key, user_id=user_id, role_name=role_name)
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error resolving config value {config_key}: {e}")
        raise internal_error("resolve configuration value", e)
    return {"key": config_key, "value": value}


@router.post("/config/bulk")
async def bulk_update_configurations(
    request: BulkConfigRequest,
    ctx: AdminContext = Depends(get_admin_context(Permissions.MODULES_EDIT)),
    supabase=Depends(get_supabase_client),
):
    """Apply several values; each item reports its own outcome"""
    service = configuration_service(ctx, supabase)
    results = []
    for item in request.configs:
        try:
            config = await service.set_config_value(
                item.key,
                item.value,
                category_for_key(item.key),
                infer_data_type(item.value),
                reason=item.reason,
            )
            results.append({"key": item.key, "success": True, "config": config.dump()})
        except ServiceError as e:
            results.append({"key": item.key, "success": False, "error": e.message, "details": e.details})
        except Exception as e:
            logger.error(f"Bulk update failed for {item.key}: {e}")
            results.append({"key": item.key, "success": False, "error": str(e)})

    succeeded = sum(1 for r in results if r["success"])
    return {"results": results, "succeeded": succeeded, "failed": len(results) - succeeded}


@router.put("/config/{config_key}")
async def update_configuration(
    config_key: str,
    request: ConfigUpdateRequest,
    ctx: AdminContext = Depends(get_admin_context(Permissions.MODULES_EDIT)),
    supabase=Depends(get_supabase_client),
):
    """Create or update a configuration value"""
    service = configuration_service(ctx, supabase)
    try:
        config = await service.set_config_value(
            config_key,
            request.value,
            category_for_key(config_key),
            request.data_type or infer_data_type(request.value),
            description=request.description,
            is_public=request.is_public,
            requires_restart=request.requires_restart,
            validation_rules=request.validation_rules,
            reason=request.reason,
        )
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error updating configuration {config_key}: {e}")
        raise internal_error("update configuration", e)
    return {"configuration": config.dump()}


@router.get("/config/{config_key}/history")
async def get_configuration_history(
    config_key: str,
    limit: int = Query(50, ge=1, le=500),
    ctx: AdminContext = Depends(get_admin_context(Permissions.MODULES_VIEW)),
    supabase=Depends(get_supabase_client),
):
    service = configuration_service(ctx, supabase)
    try:
        history = await service.get_configuration_history(config_key, limit)
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error fetching history for {config_key}: {e}")
        raise internal_error("fetch configuration history", e)
    return {"history": [h.dump() for h in history]}


@router.post("/config/{config_key}/rollback")
async def rollback_configuration(
    config_key: str,
    request: RollbackRequest,
    ctx: AdminContext = Depends(get_admin_context(Permissions.MODULES_EDIT)),
    supabase=Depends(get_supabase_client),
):
    service = configuration_service(ctx, supabase)
    try:
        config = await service.rollback_configuration(config_key, str(request.history_id))
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error rolling back {config_key}: {e}")
        raise internal_error("roll back configuration", e)
    return {"configuration": config.dump()}


# ============ Module Endpoints ============

@router.get("/modules")
async def get_modules(
    ctx: AdminContext = Depends(get_admin_context(Permissions.MODULES_VIEW)),
    supabase=Depends(get_supabase_client),
):
    """Feature overview grouped by module"""
    service = configuration_service(ctx, supabase)
    try:
        features = await service.get_module_features()
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error fetching module features: {e}")
        raise internal_error("fetch modules", e)

    modules = group_features_by_module(features)
    for module in modules:
        module["features"] = [f.dump() for f in module["features"]]
    return {"modules": modules}


@router.get("/modules/{module_name}")
async def get_module(
    module_name: str,
    ctx: AdminContext = Depends(get_admin_context(Permissions.MODULES_VIEW)),
    supabase=Depends(get_supabase_client),
):
    _check_module(module_name)
    service = configuration_service(ctx, supabase)
    try:
        features = await service.get_module_features(module_name)
        parameters = await service.get_module_parameters(module_name)
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error fetching module {module_name}: {e}")
        raise internal_error("fetch module", e)
    return {
        "module": module_name,
        "features": [f.dump() for f in features],
        "parameters": [p.dump() for p in parameters],
    }


@router.put("/modules/{module_name}")
async def update_module(
    module_name: str,
    request: ModuleUpdateRequest,
    ctx: AdminContext = Depends(get_admin_context(Permissions.MODULES_EDIT)),
    supabase=Depends(get_supabase_client),
):
    """Batch toggle features and set parameters of one module"""
    _check_module(module_name)
    if not request.features and not request.parameters:
        raise ValidationFailedError("No feature or parameter updates provided")

    service = configuration_service(ctx, supabase)
    try:
        features = [
            await service.toggle_module_feature(module_name, f.feature_key, f.enabled, request.reason)
            for f in request.features
        ]
        parameters = [
            await service.set_module_parameter(module_name, p.parameter_key, p.value, reason=request.reason)
            for p in request.parameters
        ]
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error updating module {module_name}: {e}")
        raise internal_error("update module", e)
    return {
        "module": module_name,
        "features": [f.dump() for f in features],
        "parameters": [p.dump() for p in parameters],
    }


# ============ Audit & Permissions ============

@router.get("/audit/logs")
async def get_audit_logs(
    action_type: Optional[AdminActionType] = Query(None, alias="actionType"),
    risk_level: Optional[RiskLevel] = Query(None, alias="riskLevel"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    limit: int = Query(100, ge=1, le=1000),
    ctx: AdminContext = Depends(get_admin_context(Permissions.AUDIT_VIEW)),
    supabase=Depends(get_supabase_client),
):
    service = configuration_service(ctx, supabase)
    try:
        logs = await service.get_admin_action_logs(
            action_type=action_type,
            risk_level=risk_level,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
        )
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error fetching admin action logs: {e}")
        raise internal_error("fetch audit logs", e)
    return {"logs": [log.dump() for log in logs]}


@router.get("/permissions")
async def get_permissions(
    ctx: AdminContext = Depends(get_admin_context(Permissions.MODULES_VIEW)),
    supabase=Depends(get_supabase_client),
):
    """Permission catalogue plus the caller's own grants"""
    service = configuration_service(ctx, supabase)
    try:
        definitions = await service.get_permission_definitions()
        granted = await service.get_user_permissions()
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error fetching permissions: {e}")
        raise internal_error("fetch permissions", e)
    return {
        "role": ctx.role,
        "permissions": granted,
        "definitions": [d.dump() for d in definitions],
    }
