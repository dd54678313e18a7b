"""Health validation for saanify-ops."""

from .health import STATUS_THRESHOLDS, HealthCheck, HealthChecker, HealthReport, compute_score, status_for_score

__all__ = ["STATUS_THRESHOLDS", "HealthCheck", "HealthChecker", "HealthReport", "compute_score", "status_for_score"]
