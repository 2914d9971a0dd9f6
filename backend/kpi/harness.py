"""
KPI Test Harness
================
End-to-end checks for the KPI stored procedures. Each check

  1. creates a throwaway organization and sales rep
  2. seeds opportunities / leads / activities / quota plans with known values
  3. calls the KPI RPC for the last 30 days
  4. compares the returned aggregate with the expected value
  5. deletes everything it created (always, even on failure)

The KPI math lives in the database; this module only verifies it.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from errors import NotFoundError
from supabase_client import db_call, first_row

logger = logging.getLogger(__name__)

PERIOD_DAYS = 30
TOLERANCE = 0.1
MONEY_TOLERANCE = 0.01
PERFORMANCE_RECORDS = 1000
PERFORMANCE_THRESHOLD_MS = 5000

# Delete order respects foreign keys; the organization goes last
CLEANUP_TABLES = ("opportunities", "activities", "leads", "quota_plans", "users")


@dataclass
class TestResult:
    __test__ = False

    test_name: str
    passed: bool
    execution_time_ms: int
    error: Optional[str] = None
    details: Optional[dict] = None
    recommendations: list[str] = field(default_factory=list)


@dataclass
class TestResults:
    __test__ = False

    total: int
    passed: int
    failed: int
    execution_time_ms: int
    results: list[TestResult]
    summary: str


@dataclass
class Fixture:
    """Ids of the rows a check created."""
    organization_id: str
    user_id: str


@dataclass
class KPICheck:
    key: str
    test_name: str
    rpc: str
    seed: Callable[["KPITestSuite", Fixture], Awaitable[None]]
    evaluate: Callable[[Any, float], tuple[bool, dict]]
    recommendations: list[str]


def _close(actual: Any, expected: float, tolerance: float = TOLERANCE) -> bool:
    return actual is not None and abs(float(actual) - expected) < tolerance


# ---------------------------------------------------------------------------
# Seeds
# ---------------------------------------------------------------------------

async def _seed_win_rate(suite: "KPITestSuite", fx: Fixture) -> None:
    await suite.create_opportunities(fx, [
        {"stage": "closed_won", "deal_value": 100000},
        {"stage": "closed_won", "deal_value": 150000},
        {"stage": "closed_lost", "deal_value": 200000},
        {"stage": "closed_lost", "deal_value": 75000},
    ])


async def _seed_revenue_growth(suite: "KPITestSuite", fx: Fixture) -> None:
    today = suite.today()
    await suite.create_opportunities(fx, [
        {"stage": "closed_won", "deal_value": 100000, "close_date": today.isoformat()},
        {"stage": "closed_won", "deal_value": 150000, "close_date": today.isoformat()},
        {"stage": "closed_won", "deal_value": 80000,
         "close_date": (today - timedelta(days=2 * PERIOD_DAYS)).isoformat()},
        {"stage": "closed_won", "deal_value": 120000,
         "close_date": (today - timedelta(days=PERIOD_DAYS)).isoformat()},
    ])


DEAL_SIZES = (100000, 150000, 200000, 75000)


async def _seed_deal_size(suite: "KPITestSuite", fx: Fixture) -> None:
    await suite.create_opportunities(fx, [
        {"stage": "closed_won", "deal_value": value} for value in DEAL_SIZES
    ])


CYCLE_LENGTHS = (30, 45, 60, 90)


async def _seed_sales_cycle(suite: "KPITestSuite", fx: Fixture) -> None:
    now = suite.now()
    await suite.create_opportunities(fx, [
        {
            "stage": "closed_won",
            "deal_value": 100000,
            "created_at": (now - timedelta(days=days)).isoformat(),
            "close_date": now.date().isoformat(),
        }
        for days in CYCLE_LENGTHS
    ])


async def _seed_lead_conversion(suite: "KPITestSuite", fx: Fixture) -> None:
    await suite.create_leads(fx, ["qualified", "qualified", "unqualified", "new"])
    await suite.create_opportunities(fx, [{"stage": "qualifying"}, {"stage": "proposal"}])


async def _seed_two_won_deals(suite: "KPITestSuite", fx: Fixture) -> None:
    await suite.create_opportunities(fx, [
        {"stage": "closed_won", "deal_value": 100000},
        {"stage": "closed_won", "deal_value": 150000},
    ])


async def _seed_quota_attainment(suite: "KPITestSuite", fx: Fixture) -> None:
    await suite.create_quota_plan(fx, 200000)
    await suite.create_opportunities(fx, [
        {"stage": "closed_won", "deal_value": 120000},
        {"stage": "closed_won", "deal_value": 100000},
    ])


async def _seed_pipeline_coverage(suite: "KPITestSuite", fx: Fixture) -> None:
    await suite.create_quota_plan(fx, 300000)
    await suite.create_opportunities(fx, [
        {"stage": "prospecting", "deal_value": 100000},
        {"stage": "qualifying", "deal_value": 150000},
        {"stage": "proposal", "deal_value": 200000},
    ])


async def _seed_activities(suite: "KPITestSuite", fx: Fixture) -> None:
    await suite.create_activities(fx, ["call", "email", "meeting", "demo", "presentation"])


async def _seed_consistency(suite: "KPITestSuite", fx: Fixture) -> None:
    await suite.create_opportunities(fx, [
        {"stage": "closed_won", "deal_value": 100000},
        {"stage": "closed_lost", "deal_value": 50000},
    ])
    await suite.create_activities(fx, ["call", "email"])
    await suite.create_leads(fx, ["qualified", "unqualified"])


async def _seed_performance(suite: "KPITestSuite", fx: Fixture) -> None:
    stages = ("closed_won", "closed_lost", "prospecting")
    await suite.create_opportunities(fx, [
        {"stage": stages[i % 3], "deal_value": 50000 + (i * 7919) % 500000}
        for i in range(PERFORMANCE_RECORDS)
    ])


# ---------------------------------------------------------------------------
# Evaluations: (rpc data, rpc time in ms) -> (passed, details)
# ---------------------------------------------------------------------------

def _eval_win_rate(data, _ms):
    expected = 50.0
    return _close(data["win_rate"], expected), {
        "expected": expected,
        "actual": data["win_rate"],
        "totalOpportunities": data.get("total_opportunities"),
        "wonOpportunities": data.get("won_opportunities"),
    }


def _eval_revenue_growth(data, _ms):
    current, previous, growth = 250000.0, 200000.0, 25.0
    passed = (_close(data["growth_percentage"], growth)
              and _close(data["current_period_revenue"], current, MONEY_TOLERANCE)
              and _close(data["previous_period_revenue"], previous, MONEY_TOLERANCE))
    return passed, {
        "expectedCurrentRevenue": current,
        "actualCurrentRevenue": data["current_period_revenue"],
        "expectedPreviousRevenue": previous,
        "actualPreviousRevenue": data["previous_period_revenue"],
        "expectedGrowthPercentage": growth,
        "actualGrowthPercentage": data["growth_percentage"],
    }


def _eval_deal_size(data, _ms):
    expected = sum(DEAL_SIZES) / len(DEAL_SIZES)
    return _close(data["avg_deal_size"], expected, MONEY_TOLERANCE), {
        "expectedAvgDealSize": expected,
        "actualAvgDealSize": data["avg_deal_size"],
        "totalDeals": data.get("total_deals"),
        "totalRevenue": data.get("total_revenue"),
    }


def _eval_sales_cycle(data, _ms):
    expected = sum(CYCLE_LENGTHS) / len(CYCLE_LENGTHS)
    return _close(data["avg_cycle_length"], expected), {
        "expectedAvgCycleLength": expected,
        "actualAvgCycleLength": data["avg_cycle_length"],
        "totalDeals": data.get("total_deals"),
        "totalDays": data.get("total_days"),
    }


def _eval_lead_conversion(data, _ms):
    expected = 50.0
    return _close(data["conversion_rate"], expected), {
        "expectedConversionRate": expected,
        "actualConversionRate": data["conversion_rate"],
        "totalLeads": data.get("total_leads"),
        "qualifiedOpportunities": data.get("qualified_opportunities"),
    }


def _eval_cac(data, _ms):
    passed = (data.get("cac") or 0) > 0 and (data.get("new_customers") or 0) > 0
    return passed, {
        "cac": data.get("cac"),
        "newCustomers": data.get("new_customers"),
        "totalCost": data.get("total_cost"),
    }


def _eval_quota_attainment(data, _ms):
    expected = 110.0
    return _close(data["attainment_percentage"], expected), {
        "expectedAttainmentPercentage": expected,
        "actualAttainmentPercentage": data["attainment_percentage"],
        "quotaTarget": data.get("quota_target"),
        "actualAchievement": data.get("actual_achievement"),
    }


def _eval_clv(data, _ms):
    passed = (data.get("clv") or 0) > 0 and (data.get("avg_purchase_value") or 0) > 0
    return passed, {
        "clv": data.get("clv"),
        "avgPurchaseValue": data.get("avg_purchase_value"),
        "purchaseFrequency": data.get("purchase_frequency"),
        "customerLifespanMonths": data.get("customer_lifespan_months"),
    }


def _eval_pipeline_coverage(data, _ms):
    expected = 1.5
    return _close(data["coverage_ratio"], expected), {
        "expectedCoverageRatio": expected,
        "actualCoverageRatio": data["coverage_ratio"],
        "totalPipelineValue": data.get("total_pipeline_value"),
        "salesQuota": data.get("sales_quota"),
    }


def _eval_activities(data, _ms):
    expected = 5 / PERIOD_DAYS
    return _close(data["activities_per_day"], expected), {
        "expectedActivitiesPerDay": expected,
        "actualActivitiesPerDay": data["activities_per_day"],
        "totalActivities": data.get("total_activities"),
        "calls": data.get("calls"),
        "emails": data.get("emails"),
        "meetings": data.get("meetings"),
    }


def _eval_consistency(data, _ms):
    win_rate = data.get("win_rate") or {}
    activities = data.get("activities_per_rep") or {}
    inconsistencies = []
    if win_rate.get("total_opportunities") != 2:
        inconsistencies.append("Win rate total opportunities mismatch")
    if win_rate.get("won_opportunities") != 1:
        inconsistencies.append("Win rate won opportunities mismatch")
    if activities.get("total_activities") != 2:
        inconsistencies.append("Activities total count mismatch")
    return not inconsistencies, {"inconsistencies": inconsistencies, "kpiData": data}


def _eval_performance(_data, calc_ms):
    return calc_ms < PERFORMANCE_THRESHOLD_MS, {
        "calculationTime": round(calc_ms),
        "recordCount": PERFORMANCE_RECORDS,
        "performanceThreshold": PERFORMANCE_THRESHOLD_MS,
    }


CHECKS: tuple[KPICheck, ...] = (
    KPICheck("win_rate", "Win Rate Calculation", "calculate_win_rate",
             _seed_win_rate, _eval_win_rate,
             ["Review win rate calculation logic", "Check opportunity stage mapping"]),
    KPICheck("revenue_growth", "Revenue Growth Calculation", "calculate_revenue_growth",
             _seed_revenue_growth, _eval_revenue_growth,
             ["Review revenue growth calculation logic", "Check period date filtering"]),
    KPICheck("avg_deal_size", "Average Deal Size Calculation", "calculate_avg_deal_size",
             _seed_deal_size, _eval_deal_size,
             ["Review average deal size calculation", "Check deal value aggregation"]),
    KPICheck("sales_cycle", "Sales Cycle Length Calculation", "calculate_sales_cycle_length",
             _seed_sales_cycle, _eval_sales_cycle,
             ["Review sales cycle calculation logic", "Check date difference calculations"]),
    KPICheck("lead_conversion", "Lead Conversion Rate Calculation", "calculate_lead_conversion_rate",
             _seed_lead_conversion, _eval_lead_conversion,
             ["Review lead conversion calculation", "Check lead-to-opportunity mapping"]),
    KPICheck("cac", "Customer Acquisition Cost Calculation", "calculate_cac",
             _seed_two_won_deals, _eval_cac,
             ["Review CAC calculation logic", "Check cost tracking implementation"]),
    KPICheck("quota_attainment", "Quota Attainment Calculation", "calculate_quota_attainment",
             _seed_quota_attainment, _eval_quota_attainment,
             ["Review quota attainment calculation", "Check quota plan integration"]),
    KPICheck("clv", "Customer Lifetime Value Calculation", "calculate_clv",
             _seed_two_won_deals, _eval_clv,
             ["Review CLV calculation logic", "Check customer lifespan calculations"]),
    KPICheck("pipeline_coverage", "Pipeline Coverage Calculation", "calculate_pipeline_coverage",
             _seed_pipeline_coverage, _eval_pipeline_coverage,
             ["Review pipeline coverage calculation", "Check pipeline stage filtering"]),
    KPICheck("activities_per_rep", "Activities per Rep Calculation", "calculate_activities_per_rep",
             _seed_activities, _eval_activities,
             ["Review activities per rep calculation", "Check activity type counting"]),
    KPICheck("data_consistency", "Data Consistency", "calculate_all_kpis",
             _seed_consistency, _eval_consistency,
             ["Fix data consistency issues", "Review data synchronization logic"]),
    KPICheck("performance", "Performance Optimization", "calculate_all_kpis",
             _seed_performance, _eval_performance,
             ["Optimize database queries", "Add indexes for better performance", "Consider data pagination"]),
)


class KPITestSuite:
    """Runs the KPI checks against a live Supabase project (service key required)."""

    __test__ = False

    def __init__(
        self,
        supabase,
        clock: Callable[[], float] = time.perf_counter,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.supabase = supabase
        self._clock = clock
        self.now = now
        self.checks = {check.key: check for check in CHECKS}

    def today(self):
        return self.now().date()

    def list_tests(self) -> list[dict]:
        return [{"key": c.key, "name": c.test_name, "rpc": c.rpc} for c in CHECKS]

    async def run_all_tests(self) -> TestResults:
        started = self._clock()
        logger.info("Starting KPI test suite")

        results = []
        for check in CHECKS:
            result = await self._run_check(check)
            results.append(result)
            logger.info(f"{result.test_name}: {'PASSED' if result.passed else 'FAILED'}")

        elapsed = self._elapsed_ms(started)
        passed = sum(1 for r in results if r.passed)
        return TestResults(
            total=len(results),
            passed=passed,
            failed=len(results) - passed,
            execution_time_ms=elapsed,
            results=results,
            summary=f"{passed}/{len(results)} tests passed in {elapsed}ms",
        )

    async def run_test(self, key: str) -> TestResult:
        check = self.checks.get(key)
        if not check:
            raise NotFoundError(f"Unknown KPI test: {key}", details={"available": list(self.checks)})
        return await self._run_check(check)

    async def _run_check(self, check: KPICheck) -> TestResult:
        started = self._clock()
        fixture = None
        try:
            fixture = await self._create_fixture()
            await check.seed(self, fixture)

            rpc_started = self._clock()
            data = await self._call_kpi(check.rpc, fixture)
            rpc_ms = (self._clock() - rpc_started) * 1000
            if data is None:
                raise ValueError(f"{check.rpc} returned no data")

            passed, details = check.evaluate(data, rpc_ms)
            return TestResult(
                test_name=check.test_name,
                passed=passed,
                execution_time_ms=self._elapsed_ms(started),
                details=details,
                recommendations=[] if passed else list(check.recommendations),
            )
        except Exception as e:
            logger.error(f"KPI test {check.test_name} failed: {e}")
            return TestResult(
                test_name=check.test_name,
                passed=False,
                execution_time_ms=self._elapsed_ms(started),
                error=str(e) or e.__class__.__name__,
            )
        finally:
            if fixture:
                await self.cleanup(fixture.organization_id)

    async def _call_kpi(self, rpc: str, fx: Fixture) -> Any:
        today = self.today()
        try:
            result = await db_call(lambda: self.supabase.rpc(rpc, {
                "p_organization_id": fx.organization_id,
                "p_user_id": fx.user_id,
                "p_territory_id": None,
                "p_period_start": (today - timedelta(days=PERIOD_DAYS)).isoformat(),
                "p_period_end": today.isoformat(),
            }).execute())
        except Exception as e:
            raise RuntimeError(f"{rpc} failed: {e}") from e
        return result.data

    def _elapsed_ms(self, started: float) -> int:
        return int(round((self._clock() - started) * 1000))

    # ── Fixture rows ────────────────────────────────────────────────

    async def _create_fixture(self) -> Fixture:
        tag = uuid.uuid4().hex[:8]
        org = first_row(await db_call(lambda: self.supabase.table("organizations").insert({
            "name": f"Test Org {tag}",
            "industry": "technology",
            "size": "medium",
        }).execute()))
        if not org:
            raise RuntimeError("Failed to create test organization")

        fixture = Fixture(organization_id=org["id"], user_id="")
        try:
            user = first_row(await db_call(lambda: self.supabase.table("users").insert({
                "email": f"testuser{tag}@example.com",
                "full_name": "Test User",
                "role": "sales_rep",
                "organization_id": org["id"],
            }).execute()))
            if not user:
                raise RuntimeError("Failed to create test user")
        except Exception:
            await self.cleanup(org["id"])
            raise
        fixture.user_id = user["id"]
        return fixture

    async def create_opportunities(self, fx: Fixture, opportunities: list[dict]) -> None:
        now = self.now()
        rows = [{
            "name": f"Test Opportunity {i + 1}",
            "stage": opp.get("stage", "prospecting"),
            "deal_value": opp.get("deal_value", 100000),
            "close_date": opp.get("close_date", now.date().isoformat()),
            "created_at": opp.get("created_at", now.isoformat()),
            "organization_id": fx.organization_id,
            "assigned_to": fx.user_id,
            "created_by": fx.user_id,
        } for i, opp in enumerate(opportunities)]
        await db_call(lambda: self.supabase.table("opportunities").insert(rows).execute())

    async def create_activities(self, fx: Fixture, activity_types: list[str]) -> None:
        rows = [{
            "type": activity_type,
            "subject": f"Test {activity_type}",
            "description": "Test activity",
            "status": "completed",
            "organization_id": fx.organization_id,
            "assigned_to": fx.user_id,
            "created_by": fx.user_id,
        } for activity_type in activity_types]
        await db_call(lambda: self.supabase.table("activities").insert(rows).execute())

    async def create_leads(self, fx: Fixture, statuses: list[str]) -> None:
        rows = [{
            "first_name": "Test",
            "last_name": f"Lead {i + 1}",
            "email": f"testlead{i + 1}.{fx.organization_id[:8]}@example.com",
            "status": status,
            "organization_id": fx.organization_id,
            "created_by": fx.user_id,
        } for i, status in enumerate(statuses)]
        await db_call(lambda: self.supabase.table("leads").insert(rows).execute())

    async def create_quota_plan(self, fx: Fixture, target_amount: float) -> None:
        today = self.today()
        await db_call(lambda: self.supabase.table("quota_plans").insert({
            "name": "Test Quota",
            "target_amount": target_amount,
            "period_start": (today - timedelta(days=PERIOD_DAYS)).isoformat(),
            "period_end": today.isoformat(),
            "organization_id": fx.organization_id,
            "assigned_user_id": fx.user_id,
            "created_by": fx.user_id,
        }).execute())

    async def cleanup(self, organization_id: str) -> None:
        """Delete every row tagged with the test organization, then the organization."""
        for table in CLEANUP_TABLES:
            try:
                await db_call(lambda: self.supabase.table(table).delete().eq(
                    "organization_id", organization_id
                ).execute())
            except Exception as e:
                logger.warning(f"KPI cleanup of {table} for {organization_id} failed: {e}")
        try:
            await db_call(lambda: self.supabase.table("organizations").delete().eq(
                "id", organization_id
            ).execute())
        except Exception as e:
            logger.warning(f"KPI cleanup of organization {organization_id} failed: {e}")
