"""Security audit trail.

The auth core reports outcomes to an ``AuditSink`` and never waits on it.
``AuditTrail`` wraps a sink so that a failing sink is logged and otherwise
ignored; the caller's auth decision is already made by then.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol

from clinauth.logging import get_correlation_id, get_logger

logger = get_logger(__name__)

# Actions
USER_REGISTER = "user_register"
USER_LOGIN_SUCCESS = "user_login_success"
USER_LOGIN_FAILED = "user_login_failed"
USER_LOGOUT = "user_logout"
ALL_SESSIONS_LOGOUT = "all_sessions_logout"
TOKEN_REFRESH = "token_refresh"
TOKEN_REFRESH_FAILED = "token_refresh_failed"
REFRESH_TOKEN_REUSE = "refresh_token_reuse"
PASSWORD_CHANGE = "password_change"
ACCESS_GRANTED = "access_granted"
ACCESS_DENIED = "access_denied"
ENDPOINT_ACCESS_DENIED = "endpoint_access_denied"

# Outcomes
SUCCESS = "success"
FAILURE = "failure"
DENIED = "denied"


class AuditSink(Protocol):
    def record(
        self,
        user_id: Optional[str],
        action: str,
        resource: str,
        outcome: str,
        metadata: Mapping[str, Any],
    ) -> None: ...


class StructlogAuditSink:
    """Writes audit events to a dedicated structlog logger."""

    def __init__(self, name: str = "clinauth.audit") -> None:
        self._logger = get_logger(name)

    def record(
        self,
        user_id: Optional[str],
        action: str,
        resource: str,
        outcome: str,
        metadata: Mapping[str, Any],
    ) -> None:
        self._logger.info(
            "audit_event",
            audit_action=action,
            audit_resource=resource,
            outcome=outcome,
            user_id=user_id,
            **dict(metadata),
        )


class MemoryAuditSink:
    """Keeps events in a list; used by tests and the in-memory runtime."""

    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []

    def record(
        self,
        user_id: Optional[str],
        action: str,
        resource: str,
        outcome: str,
        metadata: Mapping[str, Any],
    ) -> None:
        self.events.append(
            {
                "user_id": user_id,
                "action": action,
                "resource": resource,
                "outcome": outcome,
                "metadata": dict(metadata),
            }
        )

    def actions(self) -> List[str]:
        return [event["action"] for event in self.events]


class AuditTrail:
    def __init__(
        self,
        sink: AuditSink,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.sink = sink
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def record(
        self,
        user_id: Optional[str],
        action: str,
        resource: str,
        outcome: str,
        **metadata: Any,
    ) -> None:
        metadata.setdefault("timestamp", self._clock().isoformat())
        request_id = get_correlation_id()
        if request_id:
            metadata.setdefault("request_id", request_id)
        try:
            self.sink.record(user_id, action, resource, outcome, metadata)
        except Exception as exc:
            logger.error(
                "audit_sink_failed",
                audit_action=action,
                outcome=outcome,
                error=str(exc),
                error_type=type(exc).__name__,
            )
