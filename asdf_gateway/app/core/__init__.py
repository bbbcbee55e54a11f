"""Core utilities for the gateway application."""

from asdf_gateway.app.core.audit import AuditSink, log_audit
from asdf_gateway.app.core.clock import Clock, ManualClock, SystemClock, system_clock
from asdf_gateway.app.core.config import Settings, settings
from asdf_gateway.app.core.logging import get_log_context, get_logger, setup_logging
from asdf_gateway.app.core.periodic import PeriodicTask

__all__ = [
    "AuditSink",
    "log_audit",
    "Clock",
    "ManualClock",
    "SystemClock",
    "system_clock",
    "Settings",
    "settings",
    "get_log_context",
    "get_logger",
    "setup_logging",
    "PeriodicTask",
]
