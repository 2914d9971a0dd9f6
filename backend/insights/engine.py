"""
Insight Engine
==============
Rule-based insights, trend forecasts and smart alerts over prescription
(TRx / NRx), market-share and call-activity series.

generate_insights() rules
-------------------------
  performance   TRx change >= 15% (largest single-period drop, else the latest
                change); >= 20% is high severity, > 25% is immediate
  anomaly       z-score > 2.5 in trx / nrx / market_share with >= 10 points
  predictive    next-period forecast of the first model targeting trx
  opportunity   market share average below 80% of the 15% benchmark (> 5 points);
                average calls <= 7 (>= 3 points)

One engine is built at startup and shared by every request, so the cache,
alerts and models are guarded for concurrent use. Alerts are scoped to the
organization that created them.
"""

from __future__ import annotations

import logging
import math
import statistics
import threading
import uuid
from dataclasses import asdict, is_dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from errors import NotFoundError, ValidationFailedError
from insights.cache import TTLCache
from insights.models import (
    AlertTrigger,
    Insight,
    ModelEvaluation,
    Outlier,
    Prediction,
    PredictiveModel,
    Recommendation,
    Scenario,
    SmartAlert,
    Trend,
)

logger = logging.getLogger(__name__)

SIGNIFICANT_CHANGE_PCT = 15.0
HIGH_SEVERITY_PCT = 20.0
IMMEDIATE_URGENCY_PCT = 25.0
ANOMALY_MIN_POINTS = 10
OUTLIER_Z_THRESHOLD = 2.5
MARKET_SHARE_BENCHMARK = 15.0
MARKET_SHARE_MIN_POINTS = 5
LOW_CALL_FREQUENCY = 7.0
CALLS_MIN_POINTS = 3
TREND_STABLE_BAND = 1.0

INSIGHTS_TTL = 600
PREDICTIONS_TTL = 300
FORECAST_PERIODS = 5
MIN_PREDICTION_POINTS = 3

DEFAULT_TRX_MODEL_ID = "trx_model_default"
SERIES_METRICS = ("trx", "nrx", "market_share")
ALERT_CONDITIONS = ("greater_than", "less_than", "equals")
EQUALS_TOLERANCE = 0.01


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def serialize(obj: Any) -> Any:
    """dataclasses.asdict for records and lists of records."""
    if isinstance(obj, list):
        return [serialize(item) for item in obj]
    if is_dataclass(obj):
        return asdict(obj)
    return obj


def _series(data: list[dict], metric: str) -> list[float]:
    """Values of `metric` in order, skipping points that do not carry it."""
    return [float(point[metric]) for point in data if point.get(metric) is not None]


def calculate_trend(values: list[float]) -> Trend:
    if len(values) < 2:
        return Trend(direction="stable", avg_change=0.0)
    avg_change = (values[-1] - values[0]) / (len(values) - 1)
    if avg_change > TREND_STABLE_BAND:
        direction = "increasing"
    elif avg_change < -TREND_STABLE_BAND:
        direction = "decreasing"
    else:
        direction = "stable"
    return Trend(direction=direction, avg_change=avg_change)


def detect_outliers(values: list[float], threshold: float = OUTLIER_Z_THRESHOLD) -> list[Outlier]:
    """Population z-score outliers. A flat series has none."""
    if not values:
        return []
    mean = statistics.fmean(values)
    std_dev = statistics.pstdev(values, mu=mean)
    if std_dev == 0:
        return []
    outliers = []
    for index, value in enumerate(values):
        deviation = abs(value - mean) / std_dev
        if deviation > threshold:
            outliers.append(Outlier(index=index, value=value, expected=mean,
                                    deviation=deviation, threshold=threshold))
    return outliers


def _performance_recommendations(change_pct: float, metric: str) -> list[Recommendation]:
    if change_pct > SIGNIFICANT_CHANGE_PCT:
        return [Recommendation(
            id=_new_id("rec"),
            type="strategy",
            title=f"Capitalize on {metric} Growth",
            description=f"Strong {metric} performance indicates effective strategies. Scale successful initiatives.",
            expected_impact={"metric": metric, "estimated_change": change_pct * 0.5,
                             "timeframe": "3_months", "confidence": 0.8},
            effort="medium",
            timeline="short_term",
            success_metrics=[f"{metric}_growth_sustained", "roi_improved"],
            implementation_steps=["Analyze success factors", "Scale effective tactics",
                                  "Allocate additional resources", "Monitor performance"],
        )]
    if change_pct < -SIGNIFICANT_CHANGE_PCT:
        return [Recommendation(
            id=_new_id("rec"),
            type="action",
            title=f"Address {metric} Decline",
            description=f"Immediate action required to reverse negative {metric} trend.",
            expected_impact={"metric": metric, "estimated_change": abs(change_pct) * 0.7,
                             "timeframe": "2_months", "confidence": 0.75},
            effort="high",
            timeline="immediate",
            success_metrics=[f"{metric}_recovery", "trend_reversal"],
            implementation_steps=["Conduct root cause analysis", "Implement corrective measures",
                                  "Increase monitoring frequency", "Adjust strategies"],
        )]
    return []


def _metadata(algorithm: str, sources: list[str], data_points: int) -> dict:
    return {
        "algorithm": algorithm,
        "data_source": sources,
        "generated_at": _now().isoformat(),
        "data_points": data_points,
        "version": "1.0",
    }


def _navigate(action_id: str, label: str, target: str, parameters: dict) -> dict:
    return {
        "primary_action": {
            "id": action_id,
            "type": "navigate",
            "label": label,
            "target": {"type": "dashboard", "value": target, "parameters": parameters},
        },
        "dismissible": True,
        "acknowledged": False,
    }


class InsightEngine:
    """Shared analysis service. Construct once and pass it where it is needed."""

    def __init__(self, cache: Optional[TTLCache] = None):
        self.cache = cache or TTLCache()
        self._lock = threading.RLock()
        self._alerts: dict[str, SmartAlert] = {}
        self._models: dict[str, PredictiveModel] = {}
        self._register_default_models()

    # ── Insights ────────────────────────────────────────────────────

    async def generate_insights(self, data: list[dict], context: dict) -> list[Insight]:
        organization_id = context.get("organization_id")
        timeframe = context.get("timeframe", "30d")
        cache_key = f"insights:{organization_id}:{timeframe}:{len(data)}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            insights: list[Insight] = []
            insights.extend(self._analyze_performance(data, timeframe))
            insights.extend(self._detect_anomalies(data, timeframe))
            insights.extend(await self._predictive_insights(data))
            insights.extend(self._identify_opportunities(data, timeframe))
            insights.sort(key=lambda i: (i.priority, -i.confidence))
        except Exception as e:
            logger.error(f"Error generating insights for org {organization_id}: {e}")
            return []

        self.cache.set(cache_key, insights, ttl=INSIGHTS_TTL)
        logger.info(f"Generated {len(insights)} insights for org {organization_id} ({timeframe})")
        return insights

    def _analyze_performance(self, data: list[dict], timeframe: str) -> list[Insight]:
        trx = _series(data, "trx")
        if len(trx) < 2:
            return []

        trend = calculate_trend(trx)
        max_drop = 0.0
        for prev, curr in zip(trx, trx[1:]):
            if prev > 0:
                pct = (curr - prev) / prev * 100
                if pct < max_drop:
                    max_drop = pct

        current, previous = trx[-1], trx[-2]
        recent_change = (current - previous) / previous * 100 if previous > 0 else 0.0

        if abs(recent_change) < SIGNIFICANT_CHANGE_PCT and abs(max_drop) < SIGNIFICANT_CHANGE_PCT:
            return []
        change = max_drop if abs(max_drop) >= SIGNIFICANT_CHANGE_PCT else recent_change
        rising = change > 0
        high = abs(change) >= HIGH_SEVERITY_PCT

        return [Insight(
            id=_new_id("trx_performance"),
            type="opportunity" if rising else "alert",
            category="performance",
            severity="high" if high else "medium",
            priority=1 if high else 2,
            title=f"TRx {'Surge' if rising else 'Decline'} Detected",
            description=(f"Total prescriptions have {'increased' if rising else 'decreased'} "
                         f"by {abs(change):.1f}% in the latest period."),
            summary=f"TRx performance shows {trend.direction} trend with {change:.1f}% change",
            confidence=0.85,
            impact="positive" if rising else "negative",
            urgency="immediate" if abs(change) > IMMEDIATE_URGENCY_PCT else "soon",
            data={"metric": "TRx", "current_value": current, "expected_value": previous,
                  "change_percent": change, "trend": trend.direction, "timeframe": timeframe},
            recommendations=_performance_recommendations(change, "TRx"),
            metadata=_metadata("trend_analysis_v1", ["prescription_data"], len(data)),
            actions=_navigate("view_trx_detail", "View TRx Details", "/pharmaceutical-bi",
                              {"metric": "trx", "period": timeframe}),
        )]

    def _detect_anomalies(self, data: list[dict], timeframe: str) -> list[Insight]:
        insights = []
        for metric in SERIES_METRICS:
            values = _series(data, metric)
            if len(values) < ANOMALY_MIN_POINTS:
                continue
            outliers = detect_outliers(values)
            if not outliers:
                continue
            latest = outliers[-1]
            insights.append(Insight(
                id=_new_id(f"anomaly_{metric}"),
                type="alert",
                category="performance",
                severity="medium",
                priority=2,
                title=f"{metric.upper()} Anomaly Detected",
                description=(f"Unusual {metric} value detected: {latest.value:g} "
                             f"({latest.deviation:.1f} standard deviations from normal)"),
                summary=f"Statistical anomaly in {metric} performance",
                confidence=0.78,
                impact="neutral",
                urgency="monitor",
                data={"metric": metric, "current_value": latest.value, "expected_value": latest.expected,
                      "threshold": latest.threshold, "trend": "volatile", "timeframe": timeframe},
                recommendations=[Recommendation(
                    id=_new_id("anomaly_rec"),
                    type="investigation",
                    title="Investigate Data Quality",
                    description="Verify data sources and check for data collection issues",
                    expected_impact={"metric": "data_quality", "estimated_change": 0.15,
                                     "timeframe": "immediate", "confidence": 0.8},
                    effort="low",
                    timeline="immediate",
                    success_metrics=["data_validation_complete", "anomaly_resolved"],
                    implementation_steps=["Review data collection processes", "Validate data sources",
                                          "Check for system errors", "Confirm with field teams"],
                )],
                metadata=_metadata("statistical_outlier_detection_v1",
                                   ["prescription_data", "market_data"], len(data)),
                actions=_navigate("investigate_anomaly", "Investigate", "/phase-26-analytics",
                                  {"view": "anomalies", "metric": metric}),
            ))
        return insights

    async def _predictive_insights(self, data: list[dict]) -> list[Insight]:
        model = self._find_model("trx")
        if not model or not data:
            return []
        predictions = await self.generate_predictions(model, data)
        if not predictions:
            return []

        current = float(data[-1].get("trx") or 0)
        if current == 0:
            return []
        upcoming = predictions[0]
        change = (upcoming.predicted_value - current) / current * 100
        rising = change > 0

        return [Insight(
            id=_new_id("forecast_trx"),
            type="prediction",
            category="performance",
            severity="low",
            priority=3,
            title=f"TRx Forecast: {'+' if rising else ''}{change:.1f}%",
            description=(f"Model predicts TRx will {'increase' if rising else 'decrease'} "
                         f"by {abs(change):.1f}% in the next period"),
            summary=f"Predictive model forecasts {'growth' if rising else 'decline'} in TRx performance",
            confidence=upcoming.confidence_interval["confidence_level"],
            impact="positive" if rising else "negative",
            urgency="planned",
            data={"metric": "TRx_forecast", "current_value": current,
                  "expected_value": upcoming.predicted_value,
                  "trend": "increasing" if rising else "decreasing", "timeframe": "next_period"},
            recommendations=[Recommendation(
                id=_new_id("forecast_rec"),
                type="tactical",
                title=f"Prepare for TRx {'Growth' if rising else 'Decline'}",
                description="Proactive planning based on the forecast for TRx performance.",
                expected_impact={"metric": "preparedness", "estimated_change": 0.8,
                                 "timeframe": "next_period", "confidence": 0.85},
                success_metrics=["forecast_accuracy", "response_readiness"],
                implementation_steps=["Review forecast assumptions", "Prepare contingency plans",
                                      "Adjust resource allocation", "Monitor leading indicators"],
            )],
            metadata=_metadata(model.type, ["prescription_data", "market_data"], len(data)),
            actions=_navigate("view_forecast", "View Forecast Details", "/phase-26-analytics",
                              {"view": "trends", "forecast": "true"}),
        )]

    def _identify_opportunities(self, data: list[dict], timeframe: str) -> list[Insight]:
        insights = []

        shares = _series(data, "market_share")
        if len(shares) > MARKET_SHARE_MIN_POINTS:
            avg_share = statistics.fmean(shares)
            if avg_share < MARKET_SHARE_BENCHMARK * 0.8:
                insights.append(Insight(
                    id=_new_id("opportunity_market_share"),
                    type="opportunity",
                    category="market",
                    severity="medium",
                    priority=2,
                    title="Market Share Growth Opportunity",
                    description=(f"Current market share ({avg_share:.1f}%) is below industry benchmark "
                                 f"({MARKET_SHARE_BENCHMARK:g}%). Significant growth potential identified."),
                    summary="Market share below benchmark - growth opportunity available",
                    confidence=0.82,
                    impact="positive",
                    urgency="soon",
                    data={"metric": "market_share", "current_value": avg_share,
                          "expected_value": MARKET_SHARE_BENCHMARK, "trend": "stable", "timeframe": timeframe},
                    recommendations=[Recommendation(
                        id=_new_id("market_share_rec"),
                        type="strategy",
                        title="Market Share Growth Strategy",
                        description="Implement targeted growth initiatives to capture additional market share",
                        expected_impact={"metric": "market_share",
                                         "estimated_change": MARKET_SHARE_BENCHMARK - avg_share,
                                         "timeframe": "6_months", "confidence": 0.75},
                        effort="high",
                        timeline="medium_term",
                        success_metrics=["market_share_increase", "new_customer_acquisition"],
                        implementation_steps=["Analyze competitor positioning", "Identify underserved segments",
                                              "Develop targeted campaigns", "Increase sales force effectiveness"],
                    )],
                    metadata=_metadata("opportunity_analysis_v1", ["market_data", "competitive_data"], len(data)),
                    actions=_navigate("analyze_opportunity", "Analyze Opportunity", "/phase-26-analytics",
                                      {"view": "comparisons", "metric": "market_share"}),
                ))

        if len(data) >= CALLS_MIN_POINTS:
            avg_calls = sum(float(point.get("calls") or 0) for point in data) / len(data)
            if avg_calls <= LOW_CALL_FREQUENCY:
                insights.append(Insight(
                    id=_new_id("opportunity_engagement"),
                    type="opportunity",
                    category="territory",
                    severity="low",
                    priority=3,
                    title="Territory Engagement Opportunity",
                    description=(f"Average call frequency is {avg_calls:.1f}. "
                                 "Targeted engagement could improve outcomes."),
                    summary="Potential to improve HCP engagement through optimized call planning",
                    confidence=0.7,
                    impact="positive",
                    urgency="planned",
                    data={"metric": "call_frequency", "current_value": avg_calls,
                          "expected_value": LOW_CALL_FREQUENCY + 1, "trend": "stable", "timeframe": timeframe},
                    recommendations=[Recommendation(
                        id=_new_id("engagement_rec"),
                        type="tactical",
                        title="Optimize Call Planning",
                        description="Increase visit frequency for high-potential HCPs",
                        expected_impact={"metric": "trx", "estimated_change": 5,
                                         "timeframe": "1_month", "confidence": 0.6},
                        success_metrics=["increased_calls", "hcp_engagement"],
                        implementation_steps=["Identify high-potential HCPs", "Adjust routes", "Monitor response"],
                    )],
                    metadata=_metadata("engagement_opportunity_v1", ["field_activity"], len(data)),
                    actions=_navigate("view_call_plan", "View Call Plan", "/pharmaceutical-bi",
                                      {"view": "call-planning"}),
                ))

        return insights

    # ── Predictions ─────────────────────────────────────────────────

    async def generate_predictions(self, model: PredictiveModel, data: list[dict]) -> list[Prediction]:
        values = [float(point.get(model.target_metric) or 0) for point in data]
        if len(values) < MIN_PREDICTION_POINTS:
            return []

        cache_key = f"predictions:{model.id}:{len(values)}:{hash(tuple(values))}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        trend = calculate_trend(values)
        last = values[-1]
        now = _now()
        predictions = []
        for i in range(1, FORECAST_PERIODS + 1):
            value = max(0.0, last + trend.avg_change * i)
            confidence = max(0.5, round(0.9 - 0.1 * i, 10))
            predictions.append(Prediction(
                id=_new_id(f"pred_{model.id}_{i}"),
                model_id=model.id,
                metric=model.target_metric,
                period=f"{i}_weeks_ahead",
                prediction_date=now.isoformat(),
                target_date=(now + timedelta(weeks=i)).isoformat(),
                predicted_value=value,
                confidence_interval={"lower": value * 0.8, "upper": value * 1.2,
                                     "confidence_level": confidence},
                contributing_factors=[
                    {"factor": "historical_trend", "impact": 0.6, "importance": 0.8},
                    {"factor": "seasonal_pattern", "impact": 0.2, "importance": 0.5},
                    {"factor": "market_conditions", "impact": 0.2, "importance": 0.6},
                ],
                scenarios=[
                    Scenario("optimistic", "Best case scenario", 0.2, value * 1.15),
                    Scenario("expected", "Most likely scenario", 0.6, value),
                    Scenario("pessimistic", "Worst case scenario", 0.2, value * 0.85),
                ],
            ))

        self.cache.set(cache_key, predictions, ttl=PREDICTIONS_TTL)
        return predictions

    # ── Smart alerts ────────────────────────────────────────────────

    async def create_alert(
        self,
        organization_id: str,
        name: str,
        trigger: AlertTrigger,
        description: str = "",
        actions: Optional[dict] = None,
        created_by: Optional[str] = None,
    ) -> SmartAlert:
        if trigger.condition not in ALERT_CONDITIONS:
            raise ValidationFailedError(f"Unknown alert condition: {trigger.condition}")
        timestamp = _now().isoformat()
        alert = SmartAlert(
            id=_new_id("alert"),
            organization_id=organization_id,
            name=name,
            trigger=trigger,
            description=description,
            actions=actions or {},
            created_by=created_by,
            created_at=timestamp,
            updated_at=timestamp,
        )
        with self._lock:
            self._alerts[alert.id] = alert
        return alert

    async def update_alert(self, organization_id: str, alert_id: str, updates: dict) -> SmartAlert:
        allowed = {"name", "description", "status", "actions", "trigger"}
        changes = {k: v for k, v in updates.items() if k in allowed and v is not None}
        if isinstance(changes.get("trigger"), dict):
            changes["trigger"] = AlertTrigger(**changes["trigger"])
        if "trigger" in changes and changes["trigger"].condition not in ALERT_CONDITIONS:
            raise ValidationFailedError(f"Unknown alert condition: {changes['trigger'].condition}")

        with self._lock:
            existing = self.get_alert(organization_id, alert_id)
            if not existing:
                raise NotFoundError(f"Alert {alert_id} not found")
            updated = replace(existing, **changes, updated_at=_now().isoformat())
            self._alerts[alert_id] = updated
        return updated

    def get_alert(self, organization_id: str, alert_id: str) -> Optional[SmartAlert]:
        with self._lock:
            alert = self._alerts.get(alert_id)
        if alert and alert.organization_id == organization_id:
            return alert
        return None

    def list_alerts(self, organization_id: str) -> list[SmartAlert]:
        with self._lock:
            return [a for a in self._alerts.values() if a.organization_id == organization_id]

    async def trigger_alert(self, organization_id: str, alert_id: str, data: dict) -> bool:
        """Evaluate an alert against an observed value; True when it fired."""
        with self._lock:
            alert = self.get_alert(organization_id, alert_id)
            if not alert:
                raise NotFoundError(f"Alert {alert_id} not found")
            if not self._condition_met(alert.trigger, float(data["value"])):
                return False
            alert.status = "triggered"
            alert.history.append({
                "triggered_at": _now().isoformat(),
                "value": data["value"],
                "threshold": data.get("threshold", alert.trigger.threshold),
            })
            alert.updated_at = _now().isoformat()

        logger.info(f"Alert '{alert.name}' ({alert.id}) triggered with value {data['value']}")
        return True

    @staticmethod
    def _condition_met(trigger: AlertTrigger, value: float) -> bool:
        if trigger.condition == "greater_than":
            return value > trigger.threshold
        if trigger.condition == "less_than":
            return value < trigger.threshold
        if trigger.condition == "equals":
            return abs(value - trigger.threshold) < EQUALS_TOLERANCE
        return False

    # ── Models ──────────────────────────────────────────────────────

    async def train_model(self, config: dict) -> PredictiveModel:
        """Register a trend model descriptor for a target metric."""
        target = config.get("target_metric")
        if target not in SERIES_METRICS:
            raise ValidationFailedError(f"Unsupported target metric: {target}")
        model = PredictiveModel(
            id=_new_id(f"model_{target}"),
            name=f"{target} Prediction Model",
            type=config.get("model_type", "time_series"),
            target_metric=target,
            features=list(config.get("features") or []),
            training_data={"timespan": config.get("training_period"), "last_updated": _now().isoformat()},
            status="trained",
            last_trained=_now().isoformat(),
        )
        with self._lock:
            self._models[model.id] = model
        logger.info(f"Model {model.id} registered for {target}")
        return model

    async def evaluate_model(self, model_id: str, test_data: list[dict]) -> ModelEvaluation:
        """Walk-forward evaluation: forecast each point from the points before it."""
        model = self.get_model(model_id)
        values = [float(point.get(model.target_metric) or 0) for point in test_data]
        if len(values) < MIN_PREDICTION_POINTS:
            raise ValidationFailedError(
                f"At least {MIN_PREDICTION_POINTS} data points are required to evaluate a model"
            )

        predictions, actuals = [], []
        for i in range(2, len(values)):
            history = values[:i]
            predictions.append(max(0.0, history[-1] + calculate_trend(history).avg_change))
            actuals.append(values[i])
        residuals = [a - p for a, p in zip(actuals, predictions)]

        pct_errors = [abs(r) / abs(a) for r, a in zip(residuals, actuals) if a != 0]
        mape = statistics.fmean(pct_errors) if pct_errors else 0.0
        rmse = math.sqrt(statistics.fmean([r * r for r in residuals]))
        performance = {"mape": mape, "rmse": rmse, "accuracy": max(0.0, 1.0 - mape)}

        with self._lock:
            model.performance = performance

        share = 1.0 / len(model.features) if model.features else 0.0
        return ModelEvaluation(
            model_id=model_id,
            performance_metrics=performance,
            feature_importance=[{"feature": f, "importance": share} for f in model.features],
            validation_results={"predictions": predictions, "actuals": actuals, "residuals": residuals},
        )

    async def deploy_model(self, model_id: str) -> PredictiveModel:
        model = self.get_model(model_id)
        with self._lock:
            model.status = "active"
        logger.info(f"Model {model_id} deployed")
        return model

    def list_models(self) -> list[PredictiveModel]:
        with self._lock:
            return list(self._models.values())

    def get_model(self, model_id: str) -> PredictiveModel:
        with self._lock:
            model = self._models.get(model_id)
        if not model:
            raise NotFoundError(f"Model {model_id} not found")
        return model

    def _find_model(self, target_metric: str) -> Optional[PredictiveModel]:
        with self._lock:
            for model in self._models.values():
                if model.target_metric == target_metric:
                    return model
        return None

    def _register_default_models(self) -> None:
        self._models[DEFAULT_TRX_MODEL_ID] = PredictiveModel(
            id=DEFAULT_TRX_MODEL_ID,
            name="TRx Forecasting Model",
            type="time_series",
            target_metric="trx",
            features=["historical_trx", "seasonality", "market_trends"],
            status="active",
            last_trained=_now().isoformat(),
        )

    # ── Cache maintenance ───────────────────────────────────────────

    def sweep_cache(self) -> int:
        removed = self.cache.sweep()
        if removed:
            logger.debug(f"Insight cache sweep removed {removed} expired entries")
        return removed


def build_engine(capacity: int, ttl_seconds: float) -> InsightEngine:
    return InsightEngine(cache=TTLCache(capacity=capacity, default_ttl=ttl_seconds))

