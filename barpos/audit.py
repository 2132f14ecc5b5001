import logging
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from barpos import notifications
from barpos.config import settings
from barpos.models import AuditLog
from barpos.realtime import Outbox
from barpos.utils import iso, now

logger = logging.getLogger(__name__)

ROUTING_FAILED = "routing_failed"
DEDUCTION_FAILED = "deduction_failed"
DEDUCTION_SKIPPED = "deduction_skipped"
REVERSAL_FAILED = "reversal_failed"
ORDER_COMPLETION_FAILED = "order_completion_failed"


def record(
    db: Session,
    action: str,
    entity_type: str,
    entity_id: Optional[int],
    message: str,
    *,
    severity: str = "info",
    details: Optional[dict] = None,
    performed_by: Optional[int] = None,
) -> AuditLog:
    row = AuditLog(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        severity=severity,
        message=message,
        details=details,
        performed_by=performed_by,
        created_at=now(),
    )
    db.add(row)
    return row


def record_failure(
    db: Session,
    action: str,
    entity_type: str,
    entity_id: Optional[int],
    message: str,
    *,
    details: Optional[dict] = None,
    outbox: Optional[Outbox] = None,
) -> AuditLog:
    """Record a soft failure for manual reconciliation and escalate repeated ones."""
    logger.warning("%s on %s %s: %s", action, entity_type, entity_id, message)
    row = record(db, action, entity_type, entity_id, message, severity="error", details=details)
    db.flush()
    _escalate_if_repeated(db, action, outbox)
    return row


def recent_failure_count(db: Session, action: str) -> int:
    since = now() - timedelta(minutes=settings.failure_alert_window_minutes)
    return db.scalar(
        select(func.count(AuditLog.id)).where(
            AuditLog.action == action,
            AuditLog.severity == "error",
            AuditLog.created_at >= since,
        )
    )


def _escalate_if_repeated(db: Session, action: str, outbox: Optional[Outbox]) -> None:
    threshold = settings.failure_alert_threshold
    if threshold <= 0:
        return
    count = recent_failure_count(db, action)
    if count < threshold or count % threshold:
        return
    logger.error(
        "%s failures reached %s in the last %s minutes",
        action,
        count,
        settings.failure_alert_window_minutes,
    )
    notifications.notify(
        db,
        notifications.SYSTEM_ALERT,
        "Reconciliation needed",
        f"{count} {action.replace('_', ' ')} events in the last "
        f"{settings.failure_alert_window_minutes} minutes",
        role="manager",
        priority="urgent",
        data={"action": action, "count": count},
        outbox=outbox,
    )


def audit_to_dict(row: AuditLog) -> dict[str, Any]:
    return {
        "audit_log_id": row.id,
        "action": row.action,
        "entity_type": row.entity_type,
        "entity_id": row.entity_id,
        "severity": row.severity,
        "message": row.message,
        "details": row.details,
        "performed_by": row.performed_by,
        "created_at": iso(row.created_at),
    }
