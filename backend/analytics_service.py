"""
Enterprise Analytics
====================
Dashboards, KPI metric listings, real-time metrics, revenue forecast and the
executive report for one organization.

forecast          monthly closed-won revenue over the last 12 months, extrapolated
                  with the insight engine's linear trend; scenarios x1.15 / x1 / x0.85
executive report  closed opportunities of the period vs the period before it

Opportunities are read with the columns stage, deal_value, close_date,
created_at; won / lost are the stages closed_won / closed_lost.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Optional

from errors import NotFoundError, ValidationFailedError
from insights.engine import calculate_trend, detect_outliers
from supabase_client import db_call, first_row

logger = logging.getLogger(__name__)

# Period preset -> days
PERIOD_DAYS: dict[str, int] = {
    "7d": 7,
    "30d": 30,
    "90d": 90,
    "365d": 365,
    "month": 30,
    "quarter": 90,
    "year": 365,
}

HISTORY_MONTHS = 12
SCENARIO_FACTORS = {"optimistic": 1.15, "expected": 1.0, "pessimistic": 0.85}
WON_STAGE = "closed_won"
LOST_STAGE = "closed_lost"


def period_days(period: str) -> int:
    try:
        return PERIOD_DAYS[period]
    except KeyError:
        raise ValidationFailedError(
            f"Unknown period: {period}", details={"allowed": sorted(PERIOD_DAYS)}
        )


def _parse_date(value: Any) -> Optional[date]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def _month_key(d: date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def _last_months(today: date, count: int) -> list[str]:
    """Month keys oldest first, ending with the month of `today`."""
    keys = []
    year, month = today.year, today.month
    for _ in range(count):
        keys.append(f"{year:04d}-{month:02d}")
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return list(reversed(keys))


def summarize_opportunities(rows: list[dict]) -> dict:
    """Totals over closed opportunities."""
    won = [r for r in rows if r.get("stage") == WON_STAGE]
    lost = [r for r in rows if r.get("stage") == LOST_STAGE]
    revenue = sum(float(r.get("deal_value") or 0) for r in won)
    closed = len(won) + len(lost)
    return {
        "total_revenue": revenue,
        "total_deals": len(won),
        "lost_deals": len(lost),
        "win_rate": (len(won) / closed * 100) if closed else 0.0,
        "avg_deal_size": (revenue / len(won)) if won else 0.0,
    }


class EnterpriseAnalyticsService:
    def __init__(self, supabase, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.supabase = supabase
        self._clock = clock

    # ── Dashboards ──────────────────────────────────────────────────

    async def create_dashboard(self, dashboard: dict, organization_id: str, user_id: str) -> dict:
        try:
            result = await db_call(lambda: self.supabase.table("analytics_dashboards").insert({
                "dashboard_name": dashboard["dashboard_name"],
                "dashboard_type": dashboard.get("dashboard_type", "custom"),
                "config": dashboard.get("config") or {},
                "kpis": dashboard.get("kpis") or [],
                "filters": dashboard.get("filters") or {},
                "refresh_frequency_minutes": dashboard.get("refresh_frequency_minutes", 15),
                "is_public": dashboard.get("is_public", False),
                "access_level": dashboard.get("access_level", "organization"),
                "organization_id": organization_id,
                "created_by": user_id,
            }).execute())
        except Exception as e:
            logger.error(f"Error creating analytics dashboard: {e}")
            raise
        row = first_row(result)
        if not row:
            raise NotFoundError("Dashboard was not created")
        return row

    async def get_dashboards(self, organization_id: str) -> list[dict]:
        try:
            result = await db_call(lambda: self.supabase.table("analytics_dashboards").select("*").eq(
                "organization_id", organization_id
            ).order("created_at", desc=True).execute())
        except Exception as e:
            logger.error(f"Error fetching analytics dashboards: {e}")
            raise
        return result.data or []

    # ── KPIs ────────────────────────────────────────────────────────

    async def calculate_kpis(self, organization_id: str) -> list[dict]:
        try:
            result = await db_call(lambda: self.supabase.table("kpi_metrics").select("*").eq(
                "organization_id", organization_id
            ).eq("is_active", True).order("name").execute())
        except Exception as e:
            logger.error(f"Error calculating KPIs: {e}")
            raise
        return result.data or []

    async def get_kpi_templates(self, organization_id: str) -> list[dict]:
        try:
            result = await db_call(lambda: self.supabase.table("kpi_templates").select("*").eq(
                "organization_id", organization_id
            ).eq("is_active", True).execute())
        except Exception as e:
            logger.error(f"Error fetching KPI templates: {e}")
            raise
        return result.data or []

    async def get_real_time_metrics(self, organization_id: str) -> list[dict]:
        since = (self._clock() - timedelta(hours=24)).isoformat()
        try:
            result = await db_call(lambda: self.supabase.table("real_time_metrics").select("*").eq(
                "organization_id", organization_id
            ).gte("timestamp", since).order("timestamp", desc=True).execute())
        except Exception as e:
            logger.error(f"Error fetching real-time metrics: {e}")
            raise
        return result.data or []

    # ── Forecast ────────────────────────────────────────────────────

    async def generate_forecast(self, organization_id: str, period: str) -> dict:
        horizon_months = max(1, round(period_days(period) / 30))
        today = self._clock().date()
        months = _last_months(today, HISTORY_MONTHS)
        rows = await self._closed_opportunities(organization_id, since=date.fromisoformat(months[0] + "-01"))

        revenue_by_month = {key: 0.0 for key in months}
        won_by_month = {key: 0 for key in months}
        for row in rows:
            closed_on = _parse_date(row.get("close_date"))
            if row.get("stage") != WON_STAGE or not closed_on:
                continue
            key = _month_key(closed_on)
            if key in revenue_by_month:
                revenue_by_month[key] += float(row.get("deal_value") or 0)
                won_by_month[key] += 1

        series = [revenue_by_month[key] for key in months]
        trend = calculate_trend(series)
        last = series[-1]
        projected = [max(0.0, last + trend.avg_change * i) for i in range(1, horizon_months + 1)]
        revenue = sum(projected)

        summary = summarize_opportunities(rows)
        deals_per_month = sum(won_by_month.values()) / len(months)

        return {
            "period": period,
            "horizon_months": horizon_months,
            "predictions": {
                "revenue": revenue,
                "deals": round(deals_per_month * horizon_months, 1),
                "conversion_rate": summary["win_rate"] / 100,
                "confidence": max(0.5, round(0.9 - 0.1 * horizon_months, 10)),
            },
            "scenarios": {name: revenue * factor for name, factor in SCENARIO_FACTORS.items()},
            "trend": {"direction": trend.direction, "avg_monthly_change": trend.avg_change},
            "monthly_revenue": [{"month": key, "revenue": revenue_by_month[key]} for key in months],
            "factors": ["Historical closed-won revenue", "Monthly revenue trend", "Win rate"],
        }

    # ── Executive report ────────────────────────────────────────────

    async def generate_executive_report(self, organization_id: str, period: str) -> dict:
        days = period_days(period)
        today = self._clock().date()
        current_start = today - timedelta(days=days)
        previous_start = current_start - timedelta(days=days)

        rows = await self._closed_opportunities(organization_id, since=previous_start)
        current_rows, previous_rows = [], []
        for row in rows:
            closed_on = _parse_date(row.get("close_date"))
            if not closed_on:
                continue
            if closed_on >= current_start:
                current_rows.append(row)
            elif closed_on >= previous_start:
                previous_rows.append(row)

        current = summarize_opportunities(current_rows)
        previous = summarize_opportunities(previous_rows)
        growth = None
        if previous["total_revenue"]:
            growth = (current["total_revenue"] - previous["total_revenue"]) / previous["total_revenue"] * 100

        won_values = [float(r.get("deal_value") or 0) for r in current_rows if r.get("stage") == WON_STAGE]
        outliers = detect_outliers(won_values)

        insights, recommendations = [], []
        if growth is None:
            insights.append("No closed-won revenue in the previous period to compare against")
        elif growth >= 0:
            insights.append(f"Revenue grew {growth:.1f}% over the previous period")
        else:
            insights.append(f"Revenue declined {abs(growth):.1f}% over the previous period")
            recommendations.append("Review pipeline health and late-stage deal risk")

        win_rate_change = current["win_rate"] - previous["win_rate"]
        if current["total_deals"] or current["lost_deals"]:
            direction = "improved" if win_rate_change >= 0 else "dropped"
            insights.append(f"Win rate {direction} to {current['win_rate']:.1f}% "
                            f"({win_rate_change:+.1f} pp)")
            if win_rate_change < 0:
                recommendations.append("Tighten lead qualification before opportunities enter the pipeline")
        if outliers:
            insights.append(f"{len(outliers)} unusually large or small won deal(s) in the period")
            recommendations.append("Check that outlier deal values are recorded correctly")
        if not recommendations:
            recommendations.append("Maintain current sales cadence and keep pipeline coverage above quota")

        return {
            "period": period,
            "period_start": current_start.isoformat(),
            "period_end": today.isoformat(),
            "summary": {
                "total_revenue": current["total_revenue"],
                "total_deals": current["total_deals"],
                "win_rate": current["win_rate"],
                "avg_deal_size": current["avg_deal_size"],
                "growth_rate": growth,
            },
            "previous_period": previous,
            "insights": insights,
            "recommendations": recommendations,
        }

    async def _closed_opportunities(self, organization_id: str, since: date) -> list[dict]:
        try:
            result = await db_call(lambda: self.supabase.table("opportunities").select(
                "stage, deal_value, close_date, created_at"
            ).eq("organization_id", organization_id).in_(
                "stage", [WON_STAGE, LOST_STAGE]
            ).gte("close_date", since.isoformat()).execute())
        except Exception as e:
            logger.error(f"Error loading opportunities for org {organization_id}: {e}")
            raise
        return result.data or []
