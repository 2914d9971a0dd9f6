# KPI verification package
# KPITestSuite seeds known data, calls the KPI stored procedures and checks the aggregates.

from .harness import CHECKS, KPITestSuite, TestResult, TestResults  # noqa: F401
