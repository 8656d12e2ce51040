"""Monitoring and observability package."""
from .health import HealthCheck
from .logging import payment_context, setup_logging
from .metrics import metrics

__all__ = ["metrics", "payment_context", "setup_logging", "HealthCheck"]
