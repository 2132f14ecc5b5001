"""Table coordinator.

Table status and session status are separate state machines. This module keeps
the table's ``current_session_id`` pointer in step with the open session and
moves the table through available -> reserved -> occupied -> cleaning.
"""
import logging
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from barpos.errors import ConflictError, NotFoundError, ValidationError
from barpos.models import DiningTable, OrderSession, TableStatus
from barpos.realtime import Outbox
from barpos.utils import iso, now

logger = logging.getLogger(__name__)


def get_table(db: Session, table_id: int) -> DiningTable:
    table = db.get(DiningTable, table_id)
    if table is None:
        raise NotFoundError("table not found")
    return table


def ensure_can_seat(table: DiningTable) -> None:
    if not table.is_active:
        raise ValidationError(f"Table {table.table_number} is not active")
    if table.status == TableStatus.CLEANING.value:
        raise ValidationError(f"Table {table.table_number} is being cleaned")
    if table.current_session_id is not None:
        raise ConflictError(f"Table {table.table_number} already has an open session")


def occupy(table: DiningTable, session: OrderSession, outbox: Optional[Outbox] = None) -> None:
    table.status = TableStatus.OCCUPIED.value
    table.current_session_id = session.id
    table.updated_at = now()
    if outbox is not None:
        outbox.table(table, "table_occupied")


def release(table: DiningTable, session: OrderSession, outbox: Optional[Outbox] = None) -> None:
    """Detach ``session`` from its table and send the table to cleaning."""
    if table.current_session_id not in (None, session.id):
        logger.warning(
            "table %s points at session %s, not %s; pointer left alone",
            table.id,
            table.current_session_id,
            session.id,
        )
        return
    table.current_session_id = None
    table.status = TableStatus.CLEANING.value
    table.updated_at = now()
    if outbox is not None:
        outbox.table(table, "table_released")


def _transition(db: Session, table_id: int, allowed: tuple[str, ...], target: TableStatus, event_type: str) -> DiningTable:
    table = get_table(db, table_id)
    if not table.is_active:
        raise ValidationError(f"Table {table.table_number} is not active")
    if table.status not in allowed:
        raise ValidationError(f"Table {table.table_number} is {table.status}, cannot become {target.value}")
    table.status = target.value
    table.updated_at = now()
    outbox = Outbox()
    outbox.table(table, event_type)
    db.commit()
    outbox.send()
    return table


def reserve(db: Session, table_id: int) -> DiningTable:
    return _transition(db, table_id, (TableStatus.AVAILABLE.value,), TableStatus.RESERVED, "table_reserved")


def cancel_reservation(db: Session, table_id: int) -> DiningTable:
    return _transition(db, table_id, (TableStatus.RESERVED.value,), TableStatus.AVAILABLE, "table_available")


def mark_cleaned(db: Session, table_id: int) -> DiningTable:
    return _transition(db, table_id, (TableStatus.CLEANING.value,), TableStatus.AVAILABLE, "table_available")


def list_tables(db: Session, status: Optional[TableStatus] = None, area: Optional[str] = None) -> list[DiningTable]:
    query = db.query(DiningTable).filter(DiningTable.is_active.is_(True))
    if status is not None:
        query = query.filter(DiningTable.status == status.value)
    if area:
        query = query.filter(DiningTable.area == area)
    return query.order_by(DiningTable.table_number).all()


def availability_summary(db: Session) -> dict[str, int]:
    counts = dict(
        db.query(DiningTable.status, func.count(DiningTable.id))
        .filter(DiningTable.is_active.is_(True))
        .group_by(DiningTable.status)
        .all()
    )
    summary = {status.value: counts.get(status.value, 0) for status in TableStatus}
    summary["total"] = sum(summary.values())
    return summary


def table_to_dict(table: DiningTable) -> dict[str, Any]:
    return {
        "table_id": table.id,
        "table_number": table.table_number,
        "capacity": table.capacity,
        "area": table.area,
        "status": table.status,
        "current_session_id": table.current_session_id,
        "notes": table.notes,
        "updated_at": iso(table.updated_at),
    }
