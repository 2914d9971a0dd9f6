"""Pipeline configuration endpoints."""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends

from admin.models import CamelModel
from dependencies import AdminContext, Permissions, get_admin_context, get_supabase_client
from errors import NotFoundError, ServiceError, internal_error
from pipeline_config import PipelineConfig, PipelineConfigService, PipelineStage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/pipelines", tags=["pipelines"])


class PipelineCreateRequest(CamelModel):
    name: str
    description: Optional[str] = None
    stages: List[PipelineStage]
    branch_specific: bool = False
    role_specific: bool = False
    branch_name: Optional[str] = None
    role_name: Optional[str] = None
    is_default: bool = False


class PipelineUpdateRequest(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    stages: Optional[List[PipelineStage]] = None
    branch_specific: Optional[bool] = None
    role_specific: Optional[bool] = None
    branch_name: Optional[str] = None
    role_name: Optional[str] = None
    is_default: Optional[bool] = None


@router.get("")
async def list_pipelines(
    branch: Optional[str] = None,
    role: Optional[str] = None,
    ctx: AdminContext = Depends(get_admin_context(Permissions.MODULES_VIEW)),
    supabase=Depends(get_supabase_client),
):
    """All pipelines, or those applying to a branch and / or role"""
    service = PipelineConfigService(supabase)
    try:
        if branch or role:
            pipelines = await service.get_configurations_by_branch_and_role(ctx.organization_id, branch, role)
        else:
            pipelines = await service.get_configurations(ctx.organization_id)
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error fetching pipelines: {e}")
        raise internal_error("fetch pipelines", e)
    return {"pipelines": [p.dump() for p in pipelines]}


@router.post("", status_code=201)
async def create_pipeline(
    request: PipelineCreateRequest,
    ctx: AdminContext = Depends(get_admin_context(Permissions.MODULES_EDIT)),
    supabase=Depends(get_supabase_client),
):
    service = PipelineConfigService(supabase)
    config = PipelineConfig(
        **request.model_dump(exclude={"stages"}),
        stages=request.stages,
        organization_id=ctx.organization_id,
        created_by=ctx.user_id,
    )
    try:
        pipeline = await service.create_configuration(config)
        if request.is_default:
            await service.set_as_default(pipeline.id, ctx.organization_id)
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error creating pipeline: {e}")
        raise internal_error("create pipeline", e)
    return {"pipeline": pipeline.dump()}


@router.get("/default")
async def get_default_pipeline(
    ctx: AdminContext = Depends(get_admin_context(Permissions.MODULES_VIEW)),
    supabase=Depends(get_supabase_client),
):
    try:
        pipeline = await PipelineConfigService(supabase).get_default_configuration(ctx.organization_id)
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error fetching default pipeline: {e}")
        raise internal_error("fetch default pipeline", e)
    return {"pipeline": pipeline.dump() if pipeline else None}


@router.post("/default-peak", status_code=201)
async def create_default_peak_pipeline(
    ctx: AdminContext = Depends(get_admin_context(Permissions.MODULES_EDIT)),
    supabase=Depends(get_supabase_client),
):
    """Seed the four-stage PEAK pipeline and make it the default"""
    service = PipelineConfigService(supabase)
    try:
        pipeline = await service.create_default_peak_pipeline(ctx.organization_id, ctx.user_id)
        await service.set_as_default(pipeline.id, ctx.organization_id)
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error creating default PEAK pipeline: {e}")
        raise internal_error("create default pipeline", e)
    return {"pipeline": pipeline.dump()}


@router.get("/{config_id}")
async def get_pipeline(
    config_id: str,
    ctx: AdminContext = Depends(get_admin_context(Permissions.MODULES_VIEW)),
    supabase=Depends(get_supabase_client),
):
    try:
        pipeline = await PipelineConfigService(supabase).get_configuration(config_id, ctx.organization_id)
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error fetching pipeline {config_id}: {e}")
        raise internal_error("fetch pipeline", e)
    if not pipeline:
        raise NotFoundError("Pipeline configuration not found")
    return {"pipeline": pipeline.dump()}


@router.put("/{config_id}")
async def update_pipeline(
    config_id: str,
    request: PipelineUpdateRequest,
    ctx: AdminContext = Depends(get_admin_context(Permissions.MODULES_EDIT)),
    supabase=Depends(get_supabase_client),
):
    updates = request.model_dump(exclude_unset=True, exclude={"stages"})
    if request.stages is not None:
        updates["stages"] = request.stages
    service = PipelineConfigService(supabase)
    try:
        pipeline = await service.update_configuration(config_id, updates, ctx.organization_id)
        if updates.get("is_default"):
            await service.set_as_default(config_id, ctx.organization_id)
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error updating pipeline {config_id}: {e}")
        raise internal_error("update pipeline", e)
    return {"pipeline": pipeline.dump()}


@router.delete("/{config_id}")
async def delete_pipeline(
    config_id: str,
    ctx: AdminContext = Depends(get_admin_context(Permissions.MODULES_EDIT)),
    supabase=Depends(get_supabase_client),
):
    try:
        await PipelineConfigService(supabase).delete_configuration(config_id, ctx.organization_id)
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error deleting pipeline {config_id}: {e}")
        raise internal_error("delete pipeline", e)
    return {"success": True}


@router.post("/{config_id}/default")
async def set_default_pipeline(
    config_id: str,
    ctx: AdminContext = Depends(get_admin_context(Permissions.MODULES_EDIT)),
    supabase=Depends(get_supabase_client),
):
    try:
        await PipelineConfigService(supabase).set_as_default(config_id, ctx.organization_id)
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error setting default pipeline {config_id}: {e}")
        raise internal_error("set default pipeline", e)
    return {"success": True}
