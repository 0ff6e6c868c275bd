"""
Audit Trail - append-only record of privileged channel actions

Force-disconnecting another village's number crosses a tenant boundary, so
who did it, to whom, and whether it worked is always recorded.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from govconnect.core.logging import get_logger

logger = get_logger(__name__)


class AuditActionType(str, enum.Enum):
    """Privileged actions recorded in the audit trail"""
    FORCE_DISCONNECT = "force_disconnect"
    SESSION_DELETED = "session_deleted"
    TAKEOVER_STARTED = "takeover_started"
    TAKEOVER_ENDED = "takeover_ended"


class AuditOutcome(str, enum.Enum):
    ATTEMPTED = "attempted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class AuditRecord:
    action: AuditActionType
    tenant_id: str
    outcome: AuditOutcome
    actor: Optional[str] = None
    # Tenant or conversation the action was applied to
    target: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AuditTrail:
    """In-memory audit trail; every record is logged as it is written."""

    def __init__(self) -> None:
        self._records: list[AuditRecord] = []

    @property
    def records(self) -> tuple[AuditRecord, ...]:
        return tuple(self._records)

    def record(
        self,
        action: AuditActionType,
        tenant_id: str,
        outcome: AuditOutcome,
        *,
        actor: Optional[str] = None,
        target: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> AuditRecord:
        entry = AuditRecord(
            action=action,
            tenant_id=tenant_id,
            outcome=outcome,
            actor=actor,
            target=target,
            details=dict(details or {}),
        )
        self._records.append(entry)

        log = logger.warning if action == AuditActionType.FORCE_DISCONNECT else logger.info
        log(
            f"Audit: {action.value} {outcome.value}",
            extra_data={
                "action": action.value,
                "outcome": outcome.value,
                "tenant_id": tenant_id,
                "actor": actor,
                "target": target,
                "details": entry.details,
            },
        )
        return entry

    def for_tenant(self, tenant_id: str) -> list[AuditRecord]:
        """Records where the tenant acted or was acted upon"""
        return [r for r in self._records if tenant_id in (r.tenant_id, r.target)]
