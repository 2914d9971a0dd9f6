"""
Records produced by the insight engine.

Plain dataclasses; the API layer serialises them with dataclasses.asdict().
Input series are lists of dicts with optional keys: date, trx, nrx,
market_share, calls.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class Trend:
    direction: str          # 'increasing' | 'decreasing' | 'stable'
    avg_change: float       # mean first difference of the series


@dataclass
class Outlier:
    index: int
    value: float
    expected: float         # series mean
    deviation: float        # |value - mean| / std-dev
    threshold: float


@dataclass
class Recommendation:
    id: str
    type: str               # 'strategy' | 'action' | 'tactical' | 'investigation'
    title: str
    description: str
    expected_impact: dict = field(default_factory=dict)
    effort: str = "medium"
    timeline: str = "short_term"
    success_metrics: list[str] = field(default_factory=list)
    implementation_steps: list[str] = field(default_factory=list)


@dataclass
class Insight:
    id: str
    type: str               # 'alert' | 'opportunity' | 'prediction'
    category: str           # 'performance' | 'market' | 'territory'
    severity: str           # 'low' | 'medium' | 'high'
    priority: int           # 1 = most urgent
    title: str
    description: str
    summary: str
    confidence: float
    impact: str             # 'positive' | 'negative' | 'neutral'
    urgency: str            # 'immediate' | 'soon' | 'monitor' | 'planned'
    data: dict = field(default_factory=dict)
    recommendations: list[Recommendation] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)
    actions: dict = field(default_factory=dict)


@dataclass
class Scenario:
    name: str
    description: str
    probability: float
    predicted_value: float


@dataclass
class Prediction:
    id: str
    model_id: str
    metric: str
    period: str             # '<i>_weeks_ahead'
    prediction_date: str
    target_date: str
    predicted_value: float
    confidence_interval: dict = field(default_factory=dict)
    contributing_factors: list[dict] = field(default_factory=list)
    scenarios: list[Scenario] = field(default_factory=list)


@dataclass
class PredictiveModel:
    id: str
    name: str
    type: str               # 'time_series' | 'regression' | ...
    target_metric: str      # 'trx' | 'nrx' | 'market_share'
    purpose: str = "forecasting"
    features: list[str] = field(default_factory=list)
    performance: dict = field(default_factory=dict)
    training_data: dict = field(default_factory=dict)
    status: str = "training"
    last_trained: Optional[str] = None


@dataclass
class ModelEvaluation:
    model_id: str
    performance_metrics: dict
    feature_importance: list[dict]
    validation_results: dict


@dataclass
class AlertTrigger:
    metric: str
    condition: str          # 'greater_than' | 'less_than' | 'equals'
    threshold: float
    timeframe: Optional[str] = None


@dataclass
class SmartAlert:
    id: str
    organization_id: str
    name: str
    trigger: AlertTrigger
    description: str = ""
    status: str = "active"  # 'active' | 'triggered' | 'paused'
    actions: dict[str, Any] = field(default_factory=dict)
    history: list[dict] = field(default_factory=list)
    created_by: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
