"""Hook towards the notification component.

Rows written here are delivered by whatever consumes the ``notification`` table
or the ``notifications`` realtime channel. A failure never propagates to the
operation that triggered it.
"""
import logging
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from barpos.errors import NotFoundError
from barpos.models import Notification, Order, PrepTicket
from barpos.realtime import Outbox
from barpos.utils import iso, now

logger = logging.getLogger(__name__)

ORDER_CREATED = "order_created"
ORDER_COMPLETED = "order_completed"
ORDER_VOIDED = "order_voided"
TICKET_READY = "ticket_ready"
SYSTEM_ALERT = "system_alert"


def notify(
    db: Session,
    notification_type: str,
    title: str,
    message: str,
    *,
    role: Optional[str] = None,
    user_id: Optional[int] = None,
    priority: str = "normal",
    reference_id: Optional[int] = None,
    reference_table: Optional[str] = None,
    data: Optional[dict] = None,
    outbox: Optional[Outbox] = None,
) -> Optional[Notification]:
    row = Notification(
        type=notification_type,
        title=title,
        message=message,
        priority=priority,
        role=role,
        user_id=user_id,
        reference_id=reference_id,
        reference_table=reference_table,
        data=data,
        created_at=now(),
    )
    try:
        with db.begin_nested():
            db.add(row)
    except SQLAlchemyError as exc:
        logger.warning("notification %s (%s) was not recorded: %s", notification_type, reference_id, exc)
        return None
    if outbox is not None:
        outbox.notification(row)
    return row


def order_created(db: Session, order: Order, outbox: Optional[Outbox] = None) -> None:
    notify(
        db,
        ORDER_CREATED,
        "New Order",
        f"Order {order.order_number} created - Total: {order.total_amount:.2f}",
        role="cashier",
        reference_id=order.id,
        reference_table="pos_order",
        data={"order_number": order.order_number, "total_amount": float(order.total_amount)},
        outbox=outbox,
    )


def order_completed(db: Session, order: Order, outbox: Optional[Outbox] = None) -> None:
    notify(
        db,
        ORDER_COMPLETED,
        "Order Completed",
        f"Order {order.order_number} completed - {order.total_amount:.2f}",
        role="cashier",
        reference_id=order.id,
        reference_table="pos_order",
        data={"order_number": order.order_number, "total_amount": float(order.total_amount)},
        outbox=outbox,
    )


def order_voided(db: Session, order: Order, outbox: Optional[Outbox] = None) -> None:
    notify(
        db,
        ORDER_VOIDED,
        "Order Voided",
        f"Order {order.order_number} voided: {order.voided_reason}",
        role="manager",
        priority="high",
        reference_id=order.id,
        reference_table="pos_order",
        outbox=outbox,
    )


def ticket_ready(db: Session, ticket: PrepTicket, outbox: Optional[Outbox] = None) -> None:
    notify(
        db,
        TICKET_READY,
        "Ready for pickup",
        f"{ticket.quantity}x {ticket.product_name} is ready at the {ticket.destination}",
        role="waiter",
        priority="high",
        reference_id=ticket.id,
        reference_table="prep_ticket",
        data={"order_id": ticket.order_id, "destination": ticket.destination},
        outbox=outbox,
    )


def list_notifications(
    db: Session,
    role: Optional[str] = None,
    user_id: Optional[int] = None,
    unread_only: bool = False,
):
    query = db.query(Notification)
    if role is not None:
        query = query.filter(Notification.role == role)
    if user_id is not None:
        query = query.filter(Notification.user_id == user_id)
    if unread_only:
        query = query.filter(Notification.is_read.is_(False))
    return query


def mark_read(db: Session, notification_id: int) -> Notification:
    row = db.get(Notification, notification_id)
    if row is None:
        raise NotFoundError("notification not found")
    if not row.is_read:
        row.is_read = True
        row.read_at = now()
        db.commit()
    return row


def notification_to_dict(row: Notification) -> dict[str, Any]:
    return {
        "notification_id": row.id,
        "type": row.type,
        "title": row.title,
        "message": row.message,
        "priority": row.priority,
        "role": row.role,
        "user_id": row.user_id,
        "reference_id": row.reference_id,
        "reference_table": row.reference_table,
        "data": row.data,
        "is_read": row.is_read,
        "read_at": iso(row.read_at),
        "created_at": iso(row.created_at),
    }
