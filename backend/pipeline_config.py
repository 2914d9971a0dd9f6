"""
Pipeline configurations.
Stores the stage layout of an organization's sales pipeline in pipeline_configurations
(stages kept as a JSON array on the row). Configurations can be scoped to a branch or a role;
one per organization is the default.
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import Field

from admin.models import CamelModel
from errors import NotFoundError, ValidationFailedError
from supabase_client import db_call, first_row

logger = logging.getLogger(__name__)

TABLE = "pipeline_configurations"
TERMINAL_STAGES = ("closed_won", "closed_lost")

# Columns an update may touch
UPDATABLE_FIELDS = (
    "name", "description", "stages", "branch_specific", "role_specific",
    "branch_name", "role_name", "is_default",
)


class PipelineStage(CamelModel):
    id: str
    name: str
    color: str
    order: int
    probability: float
    is_active: bool = True
    requirements: List[str] = Field(default_factory=list)
    transitions: List[str] = Field(default_factory=list)


class PipelineConfig(CamelModel):
    id: Optional[str] = None
    name: str
    description: Optional[str] = None
    stages: List[PipelineStage] = Field(default_factory=list)
    branch_specific: bool = False
    role_specific: bool = False
    branch_name: Optional[str] = None
    role_name: Optional[str] = None
    is_default: bool = False
    organization_id: str
    created_by: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict):
        row = dict(row)
        row["stages"] = row.get("stages") or []
        for key in ("branch_specific", "role_specific", "is_default"):
            row[key] = bool(row.get(key))
        return cls.model_validate(row)


DEFAULT_PEAK_STAGES = [
    PipelineStage(
        id="prospecting", name="Prospecting", color="#3B82F6", order=1, probability=10,
        requirements=["Initial contact made", "Pain identified"],
        transitions=["engaging"],
    ),
    PipelineStage(
        id="engaging", name="Engaging", color="#8B5CF6", order=2, probability=25,
        requirements=["Champion identified", "Decision criteria established"],
        transitions=["advancing", "prospecting"],
    ),
    PipelineStage(
        id="advancing", name="Advancing", color="#F59E0B", order=3, probability=50,
        requirements=["Economic buyer engaged", "Decision process mapped"],
        transitions=["key_decision", "engaging"],
    ),
    PipelineStage(
        id="key_decision", name="Key Decision", color="#10B981", order=4, probability=75,
        requirements=["Paper process completed", "Competition neutralized"],
        transitions=["closed_won", "closed_lost", "advancing"],
    ),
]


def validate_stages(stages: List[PipelineStage]) -> List[str]:
    """Return problems with a stage layout; empty list when valid."""
    errors = []
    ids = [stage.id for stage in stages]
    seen = set()
    for stage_id in ids:
        if stage_id in seen:
            errors.append(f"Duplicate stage id: {stage_id}")
        seen.add(stage_id)

    known = set(ids) | set(TERMINAL_STAGES)
    for stage in stages:
        if not 0 <= stage.probability <= 100:
            errors.append(f"Stage {stage.id}: probability must be between 0 and 100")
        for target in stage.transitions:
            if target not in known:
                errors.append(f"Stage {stage.id}: unknown transition target {target}")
    return errors


def _is_missing_table(error: Exception) -> bool:
    message = str(error)
    return f'relation "{TABLE}" does not exist' in message or "Database not configured" in message


def _stages_payload(stages: List[PipelineStage]) -> List[dict]:
    return [stage.model_dump(by_alias=True) for stage in stages]


class PipelineConfigService:
    """CRUD over pipeline_configurations."""

    def __init__(self, supabase):
        self.supabase = supabase

    async def get_configurations(self, organization_id: str) -> List[PipelineConfig]:
        try:
            result = await db_call(lambda: self.supabase.table(TABLE).select("*").eq(
                "organization_id", organization_id
            ).order("created_at", desc=True).execute())
        except Exception as e:
            if _is_missing_table(e):
                logger.warning(f"{TABLE} table missing, returning no pipelines")
                return []
            logger.error(f"Failed to fetch pipeline configurations: {e}")
            raise
        return [PipelineConfig.from_row(row) for row in result.data or []]

    async def get_configuration(
        self, config_id: str, organization_id: Optional[str] = None
    ) -> Optional[PipelineConfig]:
        query = self.supabase.table(TABLE).select("*").eq("id", config_id)
        if organization_id:
            query = query.eq("organization_id", organization_id)
        try:
            result = await db_call(lambda: query.limit(1).execute())
        except Exception as e:
            if _is_missing_table(e):
                return None
            logger.error(f"Failed to fetch pipeline configuration {config_id}: {e}")
            raise
        row = first_row(result)
        return PipelineConfig.from_row(row) if row else None

    async def get_default_configuration(self, organization_id: str) -> Optional[PipelineConfig]:
        try:
            result = await db_call(lambda: self.supabase.table(TABLE).select("*").eq(
                "organization_id", organization_id
            ).eq("is_default", True).limit(1).execute())
        except Exception as e:
            if _is_missing_table(e):
                return None
            logger.error(f"Failed to fetch default pipeline configuration: {e}")
            raise
        row = first_row(result)
        return PipelineConfig.from_row(row) if row else None

    async def create_configuration(self, config: PipelineConfig) -> PipelineConfig:
        errors = validate_stages(config.stages)
        if errors:
            raise ValidationFailedError("Invalid pipeline stages", details=errors)

        try:
            result = await db_call(lambda: self.supabase.table(TABLE).insert({
                "name": config.name,
                "description": config.description,
                "stages": _stages_payload(config.stages),
                "branch_specific": config.branch_specific,
                "role_specific": config.role_specific,
                "branch_name": config.branch_name,
                "role_name": config.role_name,
                "is_default": config.is_default,
                "organization_id": config.organization_id,
                "created_by": config.created_by,
            }).execute())
        except Exception as e:
            logger.error(f"Failed to create pipeline configuration: {e}")
            raise

        row = first_row(result)
        if not row:
            raise NotFoundError("Pipeline configuration was not created")
        logger.info(f"Pipeline '{config.name}' created for org {config.organization_id}")
        return PipelineConfig.from_row(row)

    async def update_configuration(
        self,
        config_id: str,
        updates: Dict[str, Any],
        organization_id: Optional[str] = None,
    ) -> PipelineConfig:
        """Write only the supplied fields. `updates` uses snake_case field names."""
        data = {field: updates[field] for field in UPDATABLE_FIELDS if field in updates}

        if "stages" in data:
            stages = [s if isinstance(s, PipelineStage) else PipelineStage.model_validate(s)
                      for s in data["stages"] or []]
            errors = validate_stages(stages)
            if errors:
                raise ValidationFailedError("Invalid pipeline stages", details=errors)
            data["stages"] = _stages_payload(stages)

        if not data:
            existing = await self.get_configuration(config_id, organization_id)
            if not existing:
                raise NotFoundError(f"Pipeline configuration {config_id} not found")
            return existing

        query = self.supabase.table(TABLE).update(data).eq("id", config_id)
        if organization_id:
            query = query.eq("organization_id", organization_id)
        try:
            result = await db_call(lambda: query.execute())
        except Exception as e:
            logger.error(f"Failed to update pipeline configuration {config_id}: {e}")
            raise

        row = first_row(result)
        if not row:
            raise NotFoundError(f"Pipeline configuration {config_id} not found")
        return PipelineConfig.from_row(row)

    async def delete_configuration(self, config_id: str, organization_id: Optional[str] = None) -> None:
        query = self.supabase.table(TABLE).delete().eq("id", config_id)
        if organization_id:
            query = query.eq("organization_id", organization_id)
        try:
            await db_call(lambda: query.execute())
        except Exception as e:
            logger.error(f"Failed to delete pipeline configuration {config_id}: {e}")
            raise

    async def set_as_default(self, config_id: str, organization_id: str) -> None:
        """Clear the organization's current default, then mark config_id."""
        try:
            await db_call(lambda: self.supabase.table(TABLE).update({"is_default": False}).eq(
                "organization_id", organization_id
            ).execute())
            result = await db_call(lambda: self.supabase.table(TABLE).update({"is_default": True}).eq(
                "id", config_id
            ).eq("organization_id", organization_id).execute())
        except Exception as e:
            logger.error(f"Failed to set pipeline configuration {config_id} as default: {e}")
            raise
        if not first_row(result):
            raise NotFoundError(f"Pipeline configuration {config_id} not found")

    async def get_configurations_by_branch_and_role(
        self,
        organization_id: str,
        branch_name: Optional[str] = None,
        role_name: Optional[str] = None,
    ) -> List[PipelineConfig]:
        query = self.supabase.table(TABLE).select("*").eq("organization_id", organization_id)
        if branch_name:
            query = query.or_(f"branch_specific.eq.false,branch_name.eq.{branch_name}")
        if role_name:
            query = query.or_(f"role_specific.eq.false,role_name.eq.{role_name}")
        try:
            result = await db_call(lambda: query.order("created_at", desc=True).execute())
        except Exception as e:
            logger.error(f"Failed to fetch pipeline configurations by branch/role: {e}")
            raise
        return [PipelineConfig.from_row(row) for row in result.data or []]

    async def create_default_peak_pipeline(self, organization_id: str, created_by: str) -> PipelineConfig:
        return await self.create_configuration(PipelineConfig(
            name="Default PEAK Pipeline",
            description="Standard PEAK methodology pipeline configuration",
            stages=[stage.model_copy() for stage in DEFAULT_PEAK_STAGES],
            is_default=True,
            organization_id=organization_id,
            created_by=created_by,
        ))
