"""Audit sink used for state transitions, bans and unbans.

The resilience layer only needs a callable accepting ``(event_name, payload)``;
storage and format of the audit trail belong to whoever provides the sink.
"""

from typing import Any, Callable, Dict

from asdf_gateway.app.core.logging import AUDIT_LOGGER, get_logger

AuditSink = Callable[[str, Dict[str, Any]], None]

audit_logger = get_logger(AUDIT_LOGGER)


def log_audit(event_name: str, payload: Dict[str, Any]) -> None:
    """Default audit sink: write the event to the audit logger."""
    audit_logger.info(
        f"audit: {event_name}",
        extra={"audit_event": event_name, "payload": payload},
    )
