"""
Infrastructure module - logging and operational alerts.
"""

from .logging_config import setup_logging, DailyRotatingFileHandler

from .alerts import (
    Alert,
    AlertSink,
    LoggingAlertSink,
    WebhookAlertSink,
    CompositeAlertSink,
    build_alert_sink,
)

__all__ = [
    # logging
    "setup_logging",
    "DailyRotatingFileHandler",
    # alerts
    "Alert",
    "AlertSink",
    "LoggingAlertSink",
    "WebhookAlertSink",
    "CompositeAlertSink",
    "build_alert_sink",
]
