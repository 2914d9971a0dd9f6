"""AI insight endpoints: insights, forecasts, smart alerts and model registry."""
import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends

from admin.models import CamelModel
from dependencies import AdminContext, Permissions, get_admin_context, get_insight_engine
from insights.engine import DEFAULT_TRX_MODEL_ID, InsightEngine, serialize
from insights.models import AlertTrigger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ai-insights", tags=["ai-insights"])

view_analytics = get_admin_context(Permissions.ANALYTICS_VIEW)


class InsightsRequest(CamelModel):
    data: List[Dict[str, Any]]
    timeframe: str = "30d"
    context: Dict[str, Any] = {}


class PredictionsRequest(CamelModel):
    model_id: str = DEFAULT_TRX_MODEL_ID
    data: List[Dict[str, Any]]


class TriggerModel(CamelModel):
    metric: str
    condition: Literal["greater_than", "less_than", "equals"]
    threshold: float
    timeframe: Optional[str] = None


class AlertCreateRequest(CamelModel):
    name: str
    trigger: TriggerModel
    description: str = ""
    actions: Dict[str, Any] = {}


class AlertUpdateRequest(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[Literal["active", "triggered", "paused"]] = None
    actions: Optional[Dict[str, Any]] = None
    trigger: Optional[TriggerModel] = None


class AlertTriggerRequest(CamelModel):
    value: float
    threshold: Optional[float] = None


class TrainModelRequest(CamelModel):
    target_metric: Literal["trx", "nrx", "market_share"]
    model_type: str = "time_series"
    features: List[str] = []
    training_period: Optional[str] = None


class EvaluateModelRequest(CamelModel):
    data: List[Dict[str, Any]]


def _engine(engine: InsightEngine = Depends(get_insight_engine)) -> InsightEngine:
    """Shared engine, with expired cache entries swept on every request."""
    engine.sweep_cache()
    return engine


# ============ Insights & Predictions ============

@router.post("/generate")
async def generate_insights(
    request: InsightsRequest,
    ctx: AdminContext = Depends(view_analytics),
    engine: InsightEngine = Depends(_engine),
):
    context = {**request.context, "organization_id": ctx.organization_id, "timeframe": request.timeframe}
    insights = await engine.generate_insights(request.data, context)
    return {"insights": serialize(insights), "count": len(insights)}


@router.post("/predictions")
async def generate_predictions(
    request: PredictionsRequest,
    ctx: AdminContext = Depends(view_analytics),
    engine: InsightEngine = Depends(_engine),
):
    model = engine.get_model(request.model_id)
    predictions = await engine.generate_predictions(model, request.data)
    return {"modelId": model.id, "predictions": serialize(predictions)}


# ============ Smart Alerts ============

@router.get("/alerts")
async def list_alerts(
    ctx: AdminContext = Depends(view_analytics),
    engine: InsightEngine = Depends(_engine),
):
    return {"alerts": serialize(engine.list_alerts(ctx.organization_id))}


@router.post("/alerts", status_code=201)
async def create_alert(
    request: AlertCreateRequest,
    ctx: AdminContext = Depends(view_analytics),
    engine: InsightEngine = Depends(_engine),
):
    alert = await engine.create_alert(
        ctx.organization_id,
        request.name,
        AlertTrigger(**request.trigger.model_dump()),
        description=request.description,
        actions=request.actions,
        created_by=ctx.user_id,
    )
    logger.info(f"Alert {alert.id} created in org {ctx.organization_id}")
    return {"alert": serialize(alert)}


@router.patch("/alerts/{alert_id}")
async def update_alert(
    alert_id: str,
    request: AlertUpdateRequest,
    ctx: AdminContext = Depends(view_analytics),
    engine: InsightEngine = Depends(_engine),
):
    alert = await engine.update_alert(ctx.organization_id, alert_id, request.model_dump(exclude_unset=True))
    return {"alert": serialize(alert)}


@router.post("/alerts/{alert_id}/trigger")
async def trigger_alert(
    alert_id: str,
    request: AlertTriggerRequest,
    ctx: AdminContext = Depends(view_analytics),
    engine: InsightEngine = Depends(_engine),
):
    """Check an observed value against the alert condition"""
    data = {"value": request.value}
    if request.threshold is not None:
        data["threshold"] = request.threshold
    triggered = await engine.trigger_alert(ctx.organization_id, alert_id, data)
    return {"triggered": triggered, "alert": serialize(engine.get_alert(ctx.organization_id, alert_id))}


# ============ Models ============

@router.get("/models")
async def list_models(
    ctx: AdminContext = Depends(view_analytics),
    engine: InsightEngine = Depends(_engine),
):
    return {"models": serialize(engine.list_models())}


@router.post("/models/train", status_code=201)
async def train_model(
    request: TrainModelRequest,
    ctx: AdminContext = Depends(view_analytics),
    engine: InsightEngine = Depends(_engine),
):
    model = await engine.train_model(request.model_dump())
    return {"model": serialize(model)}


@router.post("/models/{model_id}/evaluate")
async def evaluate_model(
    model_id: str,
    request: EvaluateModelRequest,
    ctx: AdminContext = Depends(view_analytics),
    engine: InsightEngine = Depends(_engine),
):
    evaluation = await engine.evaluate_model(model_id, request.data)
    return {"evaluation": serialize(evaluation)}


@router.post("/models/{model_id}/deploy")
async def deploy_model(
    model_id: str,
    ctx: AdminContext = Depends(view_analytics),
    engine: InsightEngine = Depends(_engine),
):
    model = await engine.deploy_model(model_id)
    return {"model": serialize(model)}
