# Insight engine package
# InsightEngine is built once at startup (see server.py) and shared by reference.

from .cache import TTLCache  # noqa: F401
from .engine import InsightEngine, build_engine, calculate_trend, detect_outliers  # noqa: F401
