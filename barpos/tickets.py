import logging
from typing import Any, Optional

from sqlalchemy import case
from sqlalchemy.orm import Query, Session

from barpos import notifications
from barpos.errors import NotFoundError, ValidationError
from barpos.models import Destination, Order, OrderStatus, PrepTicket, TicketStatus
from barpos.realtime import Outbox
from barpos.utils import iso, minutes_between, now

logger = logging.getLogger(__name__)

NEXT_STATUS = {
    TicketStatus.PENDING: TicketStatus.PREPARING,
    TicketStatus.PREPARING: TicketStatus.READY,
    TicketStatus.READY: TicketStatus.SERVED,
}

ACTIVE_STATUSES = (TicketStatus.PENDING, TicketStatus.PREPARING, TicketStatus.READY)

# Order statuses in which ticket progress drives the order status.
KITCHEN_PHASE = (
    OrderStatus.CONFIRMED.value,
    OrderStatus.PREPARING.value,
    OrderStatus.READY.value,
    OrderStatus.SERVED.value,
)


def get_ticket(db: Session, ticket_id: int) -> PrepTicket:
    ticket = db.get(PrepTicket, ticket_id)
    if ticket is None:
        raise NotFoundError("prep ticket not found")
    return ticket


def derive_order_status(order: Order) -> Optional[str]:
    if order.status not in KITCHEN_PHASE or not order.tickets:
        return None
    statuses = {ticket.status for ticket in order.tickets}
    if statuses == {TicketStatus.SERVED.value}:
        return OrderStatus.SERVED.value
    if statuses <= {TicketStatus.READY.value, TicketStatus.SERVED.value}:
        return OrderStatus.READY.value
    if statuses != {TicketStatus.PENDING.value}:
        return OrderStatus.PREPARING.value
    return OrderStatus.CONFIRMED.value


def advance_ticket(
    db: Session,
    ticket_id: int,
    status: TicketStatus,
    performed_by: Optional[int] = None,
    notes: Optional[str] = None,
) -> PrepTicket:
    ticket = get_ticket(db, ticket_id)
    current = TicketStatus(ticket.status)
    if NEXT_STATUS.get(current) is not status:
        raise ValidationError(f"Cannot mark ticket as {status.value}. Current status is {current.value}")
    order = ticket.order
    if order.status == OrderStatus.VOIDED.value:
        raise ValidationError(f"Order {order.order_number} was voided")

    outbox = Outbox()
    stamp = now()
    ticket.status = status.value
    if status is TicketStatus.PREPARING:
        ticket.started_at = stamp
        ticket.prepared_by = performed_by
    elif status is TicketStatus.READY:
        ticket.ready_at = stamp
        if notes:
            ticket.special_instructions = f"{ticket.special_instructions} | {notes}" if ticket.special_instructions else notes
    else:
        ticket.served_at = stamp
    outbox.ticket(ticket, "ticket_updated")

    db.flush()
    db.expire(order, ["tickets"])
    derived = derive_order_status(order)
    if derived is not None and derived != order.status:
        logger.info("order %s moves %s -> %s from ticket progress", order.id, order.status, derived)
        order.status = derived
        outbox.order(order, "order_updated")
    if status is TicketStatus.READY:
        notifications.ticket_ready(db, ticket, outbox)
    db.commit()
    outbox.send()
    return ticket


def mark_urgent(db: Session, order_id: int) -> list[PrepTicket]:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFoundError("order not found")
    outbox = Outbox()
    for ticket in order.tickets:
        if ticket.status != TicketStatus.SERVED.value and not ticket.is_urgent:
            ticket.is_urgent = True
            outbox.ticket(ticket, "ticket_updated")
    db.commit()
    outbox.send()
    return list(order.tickets)


def ticket_feed(
    db: Session,
    destination: Optional[Destination] = None,
    statuses: Optional[list[TicketStatus]] = None,
    order_id: Optional[int] = None,
) -> Query:
    """Query behind the kitchen and bar displays, urgent first then oldest first."""
    query = db.query(PrepTicket).join(Order, PrepTicket.order_id == Order.id)
    query = query.filter(Order.status != OrderStatus.VOIDED.value)
    if destination is not None and destination is not Destination.BOTH:
        query = query.filter(PrepTicket.destination.in_([destination.value, Destination.BOTH.value]))
    elif destination is Destination.BOTH:
        query = query.filter(PrepTicket.destination == Destination.BOTH.value)
    wanted = statuses or list(ACTIVE_STATUSES)
    query = query.filter(PrepTicket.status.in_([status.value for status in wanted]))
    if order_id is not None:
        query = query.filter(PrepTicket.order_id == order_id)
    return query.order_by(
        case((PrepTicket.is_urgent.is_(True), 0), else_=1),
        PrepTicket.sent_at,
        PrepTicket.id,
    )


def ticket_to_dict(ticket: PrepTicket) -> dict[str, Any]:
    return {
        "prep_ticket_id": ticket.id,
        "order_id": ticket.order_id,
        "order_item_id": ticket.order_item_id,
        "product_id": ticket.product_id,
        "product_name": ticket.product_name,
        "package_id": ticket.package_id,
        "package_name": ticket.package_name,
        "quantity": ticket.quantity,
        "destination": ticket.destination,
        "status": ticket.status,
        "special_instructions": ticket.special_instructions,
        "is_urgent": ticket.is_urgent,
        "prepared_by": ticket.prepared_by,
        "sent_at": iso(ticket.sent_at),
        "started_at": iso(ticket.started_at),
        "ready_at": iso(ticket.ready_at),
        "served_at": iso(ticket.served_at),
        "timings": {
            "waiting_minutes": minutes_between(ticket.sent_at, ticket.started_at or now()),
            "preparing_minutes": minutes_between(ticket.started_at, ticket.ready_at),
            "total_minutes": minutes_between(ticket.sent_at, ticket.served_at),
        },
    }
