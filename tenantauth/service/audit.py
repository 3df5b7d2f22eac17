from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from tenantauth.logging import get_logger


@dataclass
class AuditEvent:
    event: str
    tenant_id: Optional[str]
    outcome: str
    user_id: Optional[str] = None
    reason: Optional[str] = None
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["at"] = self.at.isoformat()
        return data


class AuditSink(Protocol):
    def emit(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """Writes audit events to the structured log stream."""

    def __init__(self) -> None:
        self.logger = get_logger("tenantauth.audit")

    def emit(self, event: AuditEvent) -> None:
        log = self.logger.info if event.outcome == "success" else self.logger.warning
        log(
            "auth_audit",
            audit_event=event.event,
            tenant_id=event.tenant_id,
            user_id=event.user_id,
            outcome=event.outcome,
            reason=event.reason,
        )


class MemoryAuditSink:
    """Collects events in a list; used by tests."""

    def __init__(self) -> None:
        self.events: List[AuditEvent] = []

    def emit(self, event: AuditEvent) -> None:
        self.events.append(event)

    def named(self, name: str) -> List[AuditEvent]:
        return [e for e in self.events if e.event == name]
