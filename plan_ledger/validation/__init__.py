"""Plan health check package."""

from plan_ledger.validation.validator import PlanHealthChecker

__all__ = ["PlanHealthChecker"]
