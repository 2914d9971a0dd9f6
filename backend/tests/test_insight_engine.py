"""
Tests for the insight engine: insight rules, trend forecasts, smart alerts,
model registry and cache behaviour.
"""
import pytest

from errors import NotFoundError, ValidationFailedError
from insights.cache import TTLCache
from insights.engine import (
    DEFAULT_TRX_MODEL_ID,
    InsightEngine,
    calculate_trend,
    detect_outliers,
    serialize,
)
from insights.models import AlertTrigger

ORG = "org-1"
OTHER_ORG = "org-2"


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _series(trx=None, **metrics):
    """Build data points from parallel value lists."""
    columns = {"trx": trx or [], **metrics}
    length = max(len(v) for v in columns.values())
    points = []
    for i in range(length):
        point = {}
        for name, values in columns.items():
            if i < len(values):
                point[name] = values[i]
        points.append(point)
    return points


@pytest.fixture
def engine():
    return InsightEngine()


def _by_category(insights, category, type_=None):
    return [i for i in insights if i.category == category and (type_ is None or i.type == type_)]


# ── Trend & outliers ─────────────────────────────────────────────────

class TestTrend:
    def test_fewer_than_two_values_is_stable(self):
        trend = calculate_trend([5])
        assert trend.direction == "stable"
        assert trend.avg_change == 0

    def test_average_first_difference(self):
        assert calculate_trend([0, 4]).avg_change == 4
        assert calculate_trend([0, 4]).direction == "increasing"
        assert calculate_trend([4, 0]).direction == "decreasing"

    def test_change_within_band_is_stable(self):
        trend = calculate_trend([1, 2, 3])
        assert trend.avg_change == 1
        assert trend.direction == "stable"


class TestOutliers:
    def test_flat_series_has_no_outliers(self):
        assert detect_outliers([5, 5, 5, 5]) == []

    def test_empty_series(self):
        assert detect_outliers([]) == []

    def test_spike_is_flagged(self):
        values = [10] * 9 + [100]
        outliers = detect_outliers(values)
        assert len(outliers) == 1
        assert outliers[0].index == 9
        assert outliers[0].expected == pytest.approx(19)
        assert outliers[0].deviation == pytest.approx(3.0)

    def test_threshold_is_respected(self):
        values = [10] * 9 + [100]
        assert detect_outliers(values, threshold=3.5) == []


# ── Insight rules ────────────────────────────────────────────────────

class TestPerformanceInsights:
    @pytest.mark.asyncio
    async def test_sharp_decline_is_high_severity_immediate_alert(self, engine):
        insights = await engine.generate_insights(_series([100, 70]), {"organization_id": ORG})
        assert len(insights) == 1
        insight = insights[0]
        assert insight.type == "alert"
        assert insight.severity == "high"
        assert insight.priority == 1
        assert insight.urgency == "immediate"
        assert insight.data["change_percent"] == pytest.approx(-30)

    @pytest.mark.asyncio
    async def test_moderate_decline_is_medium(self, engine):
        insights = await engine.generate_insights(_series([100, 84]), {"organization_id": ORG})
        assert len(insights) == 1
        assert insights[0].severity == "medium"
        assert insights[0].priority == 2
        assert insights[0].urgency == "soon"

    @pytest.mark.asyncio
    async def test_small_change_produces_nothing(self, engine):
        assert await engine.generate_insights(_series([100, 110]), {"organization_id": ORG}) == []

    @pytest.mark.asyncio
    async def test_rise_is_an_opportunity(self, engine):
        data = _series([100, 100, 120], calls=[10, 10, 10])
        insights = await engine.generate_insights(data, {"organization_id": ORG})
        performance = _by_category(insights, "performance", "opportunity")
        assert len(performance) == 1
        assert performance[0].severity == "high"
        assert performance[0].urgency == "soon"

    @pytest.mark.asyncio
    async def test_largest_drop_wins_over_recent_change(self, engine):
        data = _series([100, 80, 82], calls=[10, 10, 10])
        insights = await engine.generate_insights(data, {"organization_id": ORG})
        alerts = _by_category(insights, "performance", "alert")
        assert len(alerts) == 1
        assert alerts[0].data["change_percent"] == pytest.approx(-20)


class TestOtherRules:
    @pytest.mark.asyncio
    async def test_anomaly_needs_ten_points(self, engine):
        data = _series([10] * 9 + [100], calls=[10] * 10)
        insights = await engine.generate_insights(data, {"organization_id": ORG})
        anomalies = [i for i in insights if i.title == "TRX Anomaly Detected"]
        assert len(anomalies) == 1
        assert anomalies[0].urgency == "monitor"
        assert anomalies[0].confidence == 0.78

        short = _series([10] * 8 + [100], calls=[10] * 9)
        insights = await engine.generate_insights(short, {"organization_id": "org-short"})
        assert not [i for i in insights if "Anomaly" in i.title]

    @pytest.mark.asyncio
    async def test_low_market_share_needs_more_than_five_points(self, engine):
        six = [{"market_share": 10, "calls": 10} for _ in range(6)]
        insights = await engine.generate_insights(six, {"organization_id": ORG})
        assert len(_by_category(insights, "market")) == 1

        five = [{"market_share": 10, "calls": 10} for _ in range(5)]
        insights = await engine.generate_insights(five, {"organization_id": "org-five"})
        assert _by_category(insights, "market") == []

    @pytest.mark.asyncio
    async def test_market_share_at_benchmark_band_is_ignored(self, engine):
        data = [{"market_share": 12, "calls": 10} for _ in range(6)]
        insights = await engine.generate_insights(data, {"organization_id": ORG})
        assert _by_category(insights, "market") == []

    @pytest.mark.asyncio
    async def test_low_call_frequency(self, engine):
        data = [{"calls": 5}, {"calls": 7}, {"calls": 9}]
        insights = await engine.generate_insights(data, {"organization_id": ORG})
        territory = _by_category(insights, "territory")
        assert len(territory) == 1
        assert territory[0].data["current_value"] == pytest.approx(7)

    @pytest.mark.asyncio
    async def test_predictive_insight_from_default_model(self, engine):
        data = _series([100, 110, 120], calls=[10, 10, 10])
        insights = await engine.generate_insights(data, {"organization_id": ORG})
        assert len(insights) == 1
        forecast = insights[0]
        assert forecast.type == "prediction"
        assert forecast.title == "TRx Forecast: +8.3%"
        assert forecast.confidence == pytest.approx(0.8)
        assert forecast.data["expected_value"] == pytest.approx(130)

    @pytest.mark.asyncio
    async def test_results_sorted_by_priority_then_confidence(self, engine):
        data = _series([10] * 9 + [100], market_share=[5] * 10)
        insights = await engine.generate_insights(data, {"organization_id": ORG})
        keys = [(i.priority, -i.confidence) for i in insights]
        assert len(insights) >= 3
        assert keys == sorted(keys)


class TestInsightCaching:
    @pytest.mark.asyncio
    async def test_repeat_call_is_served_from_cache(self, engine):
        data = _series([100, 70])
        first = await engine.generate_insights(data, {"organization_id": ORG, "timeframe": "7d"})
        second = await engine.generate_insights(data, {"organization_id": ORG, "timeframe": "7d"})
        assert first is second

        other = await engine.generate_insights(data, {"organization_id": ORG, "timeframe": "90d"})
        assert other is not first

    @pytest.mark.asyncio
    async def test_failure_returns_empty_and_is_not_cached(self, engine):
        data = [{"trx": "not a number"}, {"trx": 5}]
        assert await engine.generate_insights(data, {"organization_id": ORG}) == []
        assert len(engine.cache) == 0

    @pytest.mark.asyncio
    async def test_sweep_cache_drops_expired_insights(self):
        clock = FakeClock()
        engine = InsightEngine(cache=TTLCache(capacity=8, default_ttl=60, clock=clock))
        await engine.generate_insights(_series([100, 70]), {"organization_id": ORG})
        assert len(engine.cache) == 1

        clock.now += 599
        assert engine.sweep_cache() == 0
        clock.now += 2
        assert engine.sweep_cache() == 1


# ── Predictions ──────────────────────────────────────────────────────

class TestPredictions:
    @pytest.mark.asyncio
    async def test_linear_forecast_five_periods(self, engine):
        model = engine.get_model(DEFAULT_TRX_MODEL_ID)
        predictions = await engine.generate_predictions(model, _series([100, 110, 120]))

        assert [p.predicted_value for p in predictions] == pytest.approx([130, 140, 150, 160, 170])
        assert [p.confidence_interval["confidence_level"] for p in predictions] == \
            pytest.approx([0.8, 0.7, 0.6, 0.5, 0.5])
        first = predictions[0]
        assert first.period == "1_weeks_ahead"
        assert first.confidence_interval["lower"] == pytest.approx(104)
        assert first.confidence_interval["upper"] == pytest.approx(156)
        scenarios = {s.name: s for s in first.scenarios}
        assert scenarios["optimistic"].predicted_value == pytest.approx(149.5)
        assert scenarios["pessimistic"].predicted_value == pytest.approx(110.5)
        assert sum(s.probability for s in first.scenarios) == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_forecast_never_negative(self, engine):
        model = engine.get_model(DEFAULT_TRX_MODEL_ID)
        predictions = await engine.generate_predictions(model, _series([30, 20, 10]))
        assert all(p.predicted_value == 0 for p in predictions)

    @pytest.mark.asyncio
    async def test_too_few_points(self, engine):
        model = engine.get_model(DEFAULT_TRX_MODEL_ID)
        assert await engine.generate_predictions(model, _series([1, 2])) == []

    @pytest.mark.asyncio
    async def test_cache_key_includes_values(self, engine):
        model = engine.get_model(DEFAULT_TRX_MODEL_ID)
        first = await engine.generate_predictions(model, _series([100, 110, 120]))
        again = await engine.generate_predictions(model, _series([100, 110, 120]))
        different = await engine.generate_predictions(model, _series([100, 90, 80]))
        assert again is first
        assert different[0].predicted_value == pytest.approx(70)


# ── Smart alerts ─────────────────────────────────────────────────────

class TestSmartAlerts:
    @pytest.mark.asyncio
    async def test_create_and_list_scoped_to_organization(self, engine):
        alert = await engine.create_alert(ORG, "TRx drop", AlertTrigger("trx", "less_than", 100))
        assert alert.status == "active"
        assert [a.id for a in engine.list_alerts(ORG)] == [alert.id]
        assert engine.list_alerts(OTHER_ORG) == []
        assert engine.get_alert(OTHER_ORG, alert.id) is None

    @pytest.mark.asyncio
    async def test_unknown_condition_rejected(self, engine):
        with pytest.raises(ValidationFailedError):
            await engine.create_alert(ORG, "bad", AlertTrigger("trx", "between", 1))

    @pytest.mark.asyncio
    async def test_update_alert(self, engine):
        alert = await engine.create_alert(ORG, "TRx drop", AlertTrigger("trx", "less_than", 100))
        updated = await engine.update_alert(ORG, alert.id, {
            "name": "TRx floor",
            "trigger": {"metric": "trx", "condition": "greater_than", "threshold": 5},
        })
        assert updated.name == "TRx floor"
        assert updated.trigger.condition == "greater_than"
        assert engine.get_alert(ORG, alert.id).name == "TRx floor"

    @pytest.mark.asyncio
    async def test_update_unknown_or_foreign_alert(self, engine):
        alert = await engine.create_alert(ORG, "TRx drop", AlertTrigger("trx", "less_than", 100))
        with pytest.raises(NotFoundError):
            await engine.update_alert(ORG, "alert_missing", {"name": "x"})
        with pytest.raises(NotFoundError):
            await engine.update_alert(OTHER_ORG, alert.id, {"name": "x"})

    @pytest.mark.asyncio
    async def test_trigger_records_history(self, engine):
        alert = await engine.create_alert(ORG, "High TRx", AlertTrigger("trx", "greater_than", 100))

        assert await engine.trigger_alert(ORG, alert.id, {"value": 50}) is False
        assert engine.get_alert(ORG, alert.id).status == "active"

        assert await engine.trigger_alert(ORG, alert.id, {"value": 150}) is True
        fired = engine.get_alert(ORG, alert.id)
        assert fired.status == "triggered"
        assert len(fired.history) == 1
        assert fired.history[0]["value"] == 150
        assert fired.history[0]["threshold"] == 100

    @pytest.mark.asyncio
    async def test_equals_uses_tolerance(self, engine):
        alert = await engine.create_alert(ORG, "Exact", AlertTrigger("trx", "equals", 100))
        assert await engine.trigger_alert(ORG, alert.id, {"value": 100.005}) is True
        other = await engine.create_alert(ORG, "Exact 2", AlertTrigger("trx", "equals", 100))
        assert await engine.trigger_alert(ORG, other.id, {"value": 100.02}) is False

    @pytest.mark.asyncio
    async def test_trigger_unknown_alert(self, engine):
        with pytest.raises(NotFoundError):
            await engine.trigger_alert(ORG, "alert_missing", {"value": 1})

    @pytest.mark.asyncio
    async def test_serialize_alert(self, engine):
        alert = await engine.create_alert(ORG, "High TRx", AlertTrigger("trx", "greater_than", 100))
        data = serialize(alert)
        assert data["trigger"] == {"metric": "trx", "condition": "greater_than", "threshold": 100, "timeframe": None}


# ── Models ───────────────────────────────────────────────────────────

class TestModels:
    def test_default_model_registered(self, engine):
        models = engine.list_models()
        assert [m.id for m in models] == [DEFAULT_TRX_MODEL_ID]
        assert models[0].status == "active"

    @pytest.mark.asyncio
    async def test_train_and_deploy(self, engine):
        model = await engine.train_model({"target_metric": "nrx", "features": ["calls", "samples"]})
        assert model.status == "trained"
        assert model.id.startswith("model_nrx")

        deployed = await engine.deploy_model(model.id)
        assert deployed.status == "active"
        assert len(engine.list_models()) == 2

    @pytest.mark.asyncio
    async def test_train_rejects_unknown_metric(self, engine):
        with pytest.raises(ValidationFailedError):
            await engine.train_model({"target_metric": "revenue"})

    @pytest.mark.asyncio
    async def test_evaluate_perfect_linear_series(self, engine):
        evaluation = await engine.evaluate_model(DEFAULT_TRX_MODEL_ID, _series([10, 20, 30, 40]))
        assert evaluation.performance_metrics["mape"] == pytest.approx(0)
        assert evaluation.performance_metrics["rmse"] == pytest.approx(0)
        assert evaluation.performance_metrics["accuracy"] == pytest.approx(1)
        assert evaluation.validation_results["predictions"] == pytest.approx([30, 40])

    @pytest.mark.asyncio
    async def test_evaluate_measures_residuals(self, engine):
        evaluation = await engine.evaluate_model(DEFAULT_TRX_MODEL_ID, _series([10, 20, 20]))
        assert evaluation.validation_results["residuals"] == pytest.approx([-10])
        assert evaluation.performance_metrics["mape"] == pytest.approx(0.5)
        assert evaluation.performance_metrics["rmse"] == pytest.approx(10)
        assert evaluation.performance_metrics["accuracy"] == pytest.approx(0.5)
        importance = evaluation.feature_importance
        assert sum(f["importance"] for f in importance) == pytest.approx(1)

    @pytest.mark.asyncio
    async def test_evaluate_needs_three_points(self, engine):
        with pytest.raises(ValidationFailedError):
            await engine.evaluate_model(DEFAULT_TRX_MODEL_ID, _series([1, 2]))

    @pytest.mark.asyncio
    async def test_unknown_model(self, engine):
        with pytest.raises(NotFoundError):
            await engine.deploy_model("model_missing")
        with pytest.raises(NotFoundError):
            await engine.evaluate_model("model_missing", _series([1, 2, 3]))
