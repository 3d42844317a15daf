"""Monitoring utilities."""

from paperpilot.monitoring.logging import configure_logging
from paperpilot.monitoring.metrics import Metrics

__all__ = ["configure_logging", "Metrics"]
