from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional, Protocol

from identitycore.logging import get_logger
from identitycore.service.stores import AuditStore
from identitycore.storage.models import AuditEvent

logger = get_logger(__name__)


class AuditEventType(str, Enum):
    LOGIN = "login"
    TOKEN_REFRESH = "token_refresh"
    TOKEN_EXPIRED = "token_expired"
    LOGOUT = "logout"
    PASSWORD_CHANGE = "password_change"
    PASSWORD_RESET = "password_reset"


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class StoreAuditSink:
    """Persists events through the backing store."""

    def __init__(self, store: AuditStore) -> None:
        self.store = store

    def record(self, event: AuditEvent) -> None:
        self.store.record_audit_event(event)


class LoggingAuditSink:
    """Writes events to the structured log."""

    def __init__(self, name: str = "identitycore.audit") -> None:
        self.logger = get_logger(name)

    def record(self, event: AuditEvent) -> None:
        self.logger.info(
            "auth_event",
            event_type=event.event_type,
            success=event.success,
            account_id=event.account_id,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            error_message=event.error_message,
        )


class AuditRecorder:
    """Fans events out to sinks. Sink failures are logged and never raised."""

    def __init__(self, sinks: Optional[Iterable[AuditSink]] = None) -> None:
        self.sinks = list(sinks or [])

    def record(
        self,
        event_type: AuditEventType,
        *,
        success: bool,
        account_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        event = AuditEvent(
            event_type=event_type.value,
            success=success,
            account_id=account_id,
            ip_address=ip_address,
            user_agent=user_agent,
            error_message=error,
        )
        for sink in self.sinks:
            try:
                sink.record(event)
            except Exception as exc:
                logger.warning(
                    "audit_record_failed",
                    event_type=event.event_type,
                    account_id=account_id,
                    sink=type(sink).__name__,
                    error=str(exc),
                )
