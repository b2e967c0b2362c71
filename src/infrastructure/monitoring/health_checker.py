"""
Health Checker Module

This module aggregates the health of the stateful chat components:
- Admission controller (queue utilisation, rejection rate)
- Circuit breakers (one per upstream operation class)
- Conversation affinity cache
- Chat orchestrator (active requests)

Author: Senior Solution Architect
Date: 2025-12-05
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from src.core.config.settings import get_settings
from src.core.logging.logger import get_logger

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    """Health status enumeration."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class HealthChecker:
    """
    Health checker for all chat components.

    STAGE-H: Health check orchestration

    Usage:
        checker = HealthChecker(admission, breakers, conversations, orchestrator)

        status = checker.check_health()

        report = checker.detailed_health_report()
    """

    def __init__(self, admission=None, breaker_manager=None, conversations=None, orchestrator=None):
        self.settings = get_settings()
        self._admission = admission
        self._breakers = breaker_manager
        self._conversations = conversations
        self._orchestrator = orchestrator

        logger.info("Health checker initialized", stage="H.0")

    def _component_statuses(self) -> dict[str, dict[str, Any]]:
        components: dict[str, dict[str, Any]] = {}

        if self._admission is not None:
            components["admission"] = self._admission.get_health_status()
        else:
            components["admission"] = {"status": "not_configured"}

        if self._breakers is not None:
            components["circuit_breakers"] = self._breakers.get_health_status()
        else:
            components["circuit_breakers"] = {"status": "not_configured"}

        if self._conversations is not None:
            components["conversations"] = {"status": HealthStatus.HEALTHY.value, **self._conversations.get_stats()}
        else:
            components["conversations"] = {"status": "not_configured"}

        if self._orchestrator is not None:
            components["orchestrator"] = {"status": HealthStatus.HEALTHY.value, **self._orchestrator.get_stats()}
        else:
            components["orchestrator"] = {"status": "not_configured"}

        return components

    @staticmethod
    def _overall(components: dict[str, dict[str, Any]]) -> HealthStatus:
        statuses = {c.get("status") for c in components.values()}
        if HealthStatus.UNHEALTHY.value in statuses:
            return HealthStatus.UNHEALTHY
        if HealthStatus.DEGRADED.value in statuses:
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY

    def check_health(self) -> dict[str, Any]:
        """
        Quick health check.

        STAGE-H.1: Quick health status
        """
        components = self._component_statuses()
        return {
            "status": self._overall(components).value,
            "timestamp": _utc_now(),
            "version": self.settings.app.APP_VERSION,
            "components": {name: c.get("status") for name, c in components.items()},
        }

    def detailed_health_report(self) -> dict[str, Any]:
        """
        Detailed health report for all components.

        STAGE-H.2: Detailed health report
        """
        components = self._component_statuses()
        overall = self._overall(components)
        issues = [name for name, c in components.items() if c.get("status") in ("degraded", "unhealthy")]

        if issues:
            logger.warning("Health issues detected", stage="H.2", issues=issues)

        return {
            "status": overall.value,
            "timestamp": _utc_now(),
            "version": self.settings.app.APP_VERSION,
            "environment": self.settings.app.ENVIRONMENT,
            "components": components,
            "issues": issues,
        }
