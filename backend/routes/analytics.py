"""Enterprise analytics endpoints."""
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from admin.models import CamelModel
from analytics_service import EnterpriseAnalyticsService, period_days
from dependencies import AdminContext, Permissions, get_admin_context, get_supabase_client
from errors import ServiceError, internal_error

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analytics", tags=["analytics"])

view_analytics = get_admin_context(Permissions.ANALYTICS_VIEW)


class DashboardCreateRequest(CamelModel):
    dashboard_name: str
    dashboard_type: str = "custom"
    config: Dict[str, Any] = {}
    kpis: List[Any] = []
    filters: Dict[str, Any] = {}
    refresh_frequency_minutes: int = 15
    is_public: bool = False
    access_level: str = "organization"


@router.get("/dashboards")
async def get_dashboards(
    ctx: AdminContext = Depends(view_analytics),
    supabase=Depends(get_supabase_client),
):
    try:
        dashboards = await EnterpriseAnalyticsService(supabase).get_dashboards(ctx.organization_id)
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error fetching dashboards: {e}")
        raise internal_error("fetch dashboards", e)
    return {"dashboards": dashboards}


@router.post("/dashboards", status_code=201)
async def create_dashboard(
    request: DashboardCreateRequest,
    ctx: AdminContext = Depends(view_analytics),
    supabase=Depends(get_supabase_client),
):
    try:
        dashboard = await EnterpriseAnalyticsService(supabase).create_dashboard(
            request.model_dump(), ctx.organization_id, ctx.user_id
        )
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error creating dashboard: {e}")
        raise internal_error("create dashboard", e)
    return {"dashboard": dashboard}


@router.get("/kpis")
async def get_kpis(
    include_templates: bool = False,
    ctx: AdminContext = Depends(view_analytics),
    supabase=Depends(get_supabase_client),
):
    service = EnterpriseAnalyticsService(supabase)
    try:
        response = {"kpis": await service.calculate_kpis(ctx.organization_id)}
        if include_templates:
            response["templates"] = await service.get_kpi_templates(ctx.organization_id)
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error calculating KPIs: {e}")
        raise internal_error("calculate KPIs", e)
    return response


@router.get("/real-time")
async def get_real_time_metrics(
    ctx: AdminContext = Depends(view_analytics),
    supabase=Depends(get_supabase_client),
):
    try:
        metrics = await EnterpriseAnalyticsService(supabase).get_real_time_metrics(ctx.organization_id)
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error fetching real-time metrics: {e}")
        raise internal_error("fetch real-time metrics", e)
    return {"metrics": metrics}


@router.get("/forecast")
async def get_forecast(
    period: str = "quarter",
    ctx: AdminContext = Depends(view_analytics),
    supabase=Depends(get_supabase_client),
):
    period_days(period)
    try:
        forecast = await EnterpriseAnalyticsService(supabase).generate_forecast(ctx.organization_id, period)
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error generating forecast: {e}")
        raise internal_error("generate forecast", e)
    return {"forecast": forecast}


@router.get("/executive-report")
async def get_executive_report(
    period: str = "month",
    ctx: AdminContext = Depends(view_analytics),
    supabase=Depends(get_supabase_client),
):
    period_days(period)
    try:
        report = await EnterpriseAnalyticsService(supabase).generate_executive_report(
            ctx.organization_id, period
        )
    except ServiceError:
        raise
    except Exception as e:
        logger.error(f"Error generating executive report: {e}")
        raise internal_error("generate executive report", e)
    return {"report": report}
