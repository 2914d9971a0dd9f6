"""
Tests for enterprise analytics: dashboards, KPI listings, the revenue forecast
and the executive report. The service clock is pinned to 2024-06-15 12:00 UTC.
"""
from datetime import datetime, timezone

import pytest

from analytics_service import EnterpriseAnalyticsService, period_days, summarize_opportunities
from errors import NotFoundError, ValidationFailedError

ORG = "org-1"
NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


def _opp(stage, value, close_date):
    return {"stage": stage, "deal_value": value, "close_date": close_date, "created_at": "2024-01-01"}


@pytest.fixture
def service(supabase):
    return EnterpriseAnalyticsService(supabase, clock=lambda: NOW)


def test_period_days():
    assert period_days("quarter") == 90
    assert period_days("7d") == 7
    with pytest.raises(ValidationFailedError) as exc:
        period_days("fortnight")
    assert "quarter" in exc.value.details["allowed"]


def test_summarize_opportunities():
    summary = summarize_opportunities([
        _opp("closed_won", 1000, "2024-06-01"),
        _opp("closed_won", 3000, "2024-06-02"),
        _opp("closed_lost", 500, "2024-06-03"),
        _opp("negotiation", 9000, None),
    ])
    assert summary["total_revenue"] == 4000
    assert summary["total_deals"] == 2
    assert summary["lost_deals"] == 1
    assert summary["win_rate"] == pytest.approx(200 / 3)
    assert summary["avg_deal_size"] == 2000


def test_summarize_nothing_closed():
    summary = summarize_opportunities([])
    assert summary["win_rate"] == 0
    assert summary["avg_deal_size"] == 0


class TestDashboards:
    @pytest.mark.asyncio
    async def test_create_dashboard_defaults(self, service, supabase):
        supabase.respond("analytics_dashboards", [{"id": "dash-1", "dashboard_name": "Pipeline"}], op="insert")

        dashboard = await service.create_dashboard({"dashboard_name": "Pipeline"}, ORG, "u-1")

        assert dashboard["id"] == "dash-1"
        payload = supabase.calls_to("analytics_dashboards", "insert")[0].payload
        assert payload["dashboard_type"] == "custom"
        assert payload["refresh_frequency_minutes"] == 15
        assert payload["access_level"] == "organization"
        assert payload["organization_id"] == ORG
        assert payload["created_by"] == "u-1"

    @pytest.mark.asyncio
    async def test_create_dashboard_without_row(self, service, supabase):
        supabase.respond("analytics_dashboards", [], op="insert")
        with pytest.raises(NotFoundError):
            await service.create_dashboard({"dashboard_name": "Pipeline"}, ORG, "u-1")

    @pytest.mark.asyncio
    async def test_list_dashboards(self, service, supabase):
        supabase.respond("analytics_dashboards", [{"id": "dash-1"}, {"id": "dash-2"}])
        dashboards = await service.get_dashboards(ORG)

        assert len(dashboards) == 2
        assert supabase.calls_to("analytics_dashboards")[0].has_filter("organization_id", ORG)


class TestMetrics:
    @pytest.mark.asyncio
    async def test_active_kpis_only(self, service, supabase):
        supabase.respond("kpi_metrics", [{"id": "k-1", "name": "Win rate"}])
        kpis = await service.calculate_kpis(ORG)

        assert kpis == [{"id": "k-1", "name": "Win rate"}]
        assert supabase.calls_to("kpi_metrics")[0].has_filter("is_active", True)

    @pytest.mark.asyncio
    async def test_real_time_metrics_last_24_hours(self, service, supabase):
        await service.get_real_time_metrics(ORG)
        query = supabase.calls_to("real_time_metrics")[0]
        assert query.filter_value("timestamp", op="gte") == "2024-06-14T12:00:00+00:00"
        assert query.orders == [("timestamp", True)]

    @pytest.mark.asyncio
    async def test_errors_propagate(self, service, supabase):
        supabase.respond("kpi_templates", error=RuntimeError("db down"))
        with pytest.raises(RuntimeError):
            await service.get_kpi_templates(ORG)


class TestForecast:
    @pytest.mark.asyncio
    async def test_quarter_forecast_from_monthly_revenue(self, service, supabase):
        supabase.respond("opportunities", [
            _opp("closed_won", 1000, "2024-05-10"),
            _opp("closed_won", 2000, "2024-06-01"),
            _opp("closed_lost", 500, "2024-06-02"),
        ])

        forecast = await service.generate_forecast(ORG, "quarter")

        query = supabase.calls_to("opportunities")[0]
        assert query.filter_value("close_date", op="gte") == "2023-07-01"
        assert query.filter_value("stage", op="in") == ["closed_won", "closed_lost"]

        assert forecast["horizon_months"] == 3
        months = forecast["monthly_revenue"]
        assert len(months) == 12
        assert months[0] == {"month": "2023-07", "revenue": 0.0}
        assert months[-2:] == [{"month": "2024-05", "revenue": 1000.0},
                               {"month": "2024-06", "revenue": 2000.0}]

        slope = 2000 / 11
        expected = sum(2000 + slope * i for i in (1, 2, 3))
        predictions = forecast["predictions"]
        assert predictions["revenue"] == pytest.approx(expected)
        assert predictions["deals"] == 0.5
        assert predictions["conversion_rate"] == pytest.approx(2 / 3)
        assert predictions["confidence"] == pytest.approx(0.6)
        assert forecast["scenarios"]["optimistic"] == pytest.approx(expected * 1.15)
        assert forecast["scenarios"]["pessimistic"] == pytest.approx(expected * 0.85)
        assert forecast["trend"]["direction"] == "increasing"

    @pytest.mark.asyncio
    async def test_forecast_without_history(self, service, supabase):
        forecast = await service.generate_forecast(ORG, "month")

        assert forecast["horizon_months"] == 1
        assert forecast["predictions"]["revenue"] == 0
        assert forecast["trend"]["direction"] == "stable"

    @pytest.mark.asyncio
    async def test_unknown_period_rejected_before_query(self, service, supabase):
        with pytest.raises(ValidationFailedError):
            await service.generate_forecast(ORG, "decade")
        assert supabase.calls == []


class TestExecutiveReport:
    @pytest.mark.asyncio
    async def test_compares_with_previous_period(self, service, supabase):
        supabase.respond("opportunities", [
            _opp("closed_won", 3000, "2024-06-01"),
            _opp("closed_won", 1000, "2024-05-20"),
            _opp("closed_lost", 0, "2024-06-05"),
            _opp("closed_won", 2000, "2024-05-01"),
            _opp("closed_lost", 0, "2024-04-20"),
            _opp("closed_lost", 0, "2024-04-25"),
        ])

        report = await service.generate_executive_report(ORG, "month")

        assert report["period_start"] == "2024-05-16"
        assert report["period_end"] == "2024-06-15"
        assert supabase.calls_to("opportunities")[0].filter_value("close_date", op="gte") == "2024-04-16"

        summary = report["summary"]
        assert summary["total_revenue"] == 4000
        assert summary["total_deals"] == 2
        assert summary["growth_rate"] == pytest.approx(100)
        assert report["previous_period"]["total_revenue"] == 2000
        assert report["insights"][0] == "Revenue grew 100.0% over the previous period"
        assert report["insights"][1] == "Win rate improved to 66.7% (+33.3 pp)"
        assert report["recommendations"] == [
            "Maintain current sales cadence and keep pipeline coverage above quota"
        ]

    @pytest.mark.asyncio
    async def test_decline_adds_recommendations(self, service, supabase):
        supabase.respond("opportunities", [
            _opp("closed_won", 500, "2024-06-01"),
            _opp("closed_lost", 0, "2024-06-02"),
            _opp("closed_won", 2000, "2024-05-01"),
        ])

        report = await service.generate_executive_report(ORG, "month")

        assert report["summary"]["growth_rate"] == pytest.approx(-75)
        assert report["insights"][0] == "Revenue declined 75.0% over the previous period"
        assert "Review pipeline health and late-stage deal risk" in report["recommendations"]
        assert "Tighten lead qualification before opportunities enter the pipeline" in report["recommendations"]

    @pytest.mark.asyncio
    async def test_no_previous_revenue(self, service, supabase):
        supabase.respond("opportunities", [_opp("closed_won", 500, "2024-06-01")])

        report = await service.generate_executive_report(ORG, "month")

        assert report["summary"]["growth_rate"] is None
        assert report["insights"][0] == "No closed-won revenue in the previous period to compare against"

    @pytest.mark.asyncio
    async def test_rows_without_close_date_are_ignored(self, service, supabase):
        supabase.respond("opportunities", [_opp("closed_won", 500, None)])
        report = await service.generate_executive_report(ORG, "7d")
        assert report["summary"]["total_deals"] == 0
