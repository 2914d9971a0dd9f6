"""KPI calculation test harness endpoints."""
import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends

from dependencies import AdminContext, Permissions, get_admin_context, get_supabase_client
from kpi.harness import KPITestSuite

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/kpi", tags=["kpi"])

run_kpi_tests = get_admin_context(Permissions.KPI_TEST)


@router.get("/tests")
async def list_kpi_tests(
    ctx: AdminContext = Depends(run_kpi_tests),
    supabase=Depends(get_supabase_client),
):
    return {"tests": KPITestSuite(supabase).list_tests()}


@router.post("/tests/run")
async def run_kpi_tests_all(
    ctx: AdminContext = Depends(run_kpi_tests),
    supabase=Depends(get_supabase_client),
):
    """Seed, calculate and clean up every KPI check; failures are reported per check"""
    logger.info(f"KPI test suite started by {ctx.user_id}")
    results = await KPITestSuite(supabase).run_all_tests()
    return asdict(results)


@router.post("/tests/{test_key}/run")
async def run_kpi_test(
    test_key: str,
    ctx: AdminContext = Depends(run_kpi_tests),
    supabase=Depends(get_supabase_client),
):
    result = await KPITestSuite(supabase).run_test(test_key)
    return asdict(result)
