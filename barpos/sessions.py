"""Session aggregate: a running tab of orders for one table.

``open -> closed`` is the payment flow and ``open -> abandoned`` the
administrative exit; both are terminal. Closing a tab never fails because of a
bookkeeping problem on one of its orders: payment has been accepted at that
point, so per-order failures are audited and the close goes on.
"""
import logging
from collections import Counter
from typing import Any, Optional

from sqlalchemy import Select, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session

from barpos import audit, notifications, orders, receipts, stock, tables
from barpos.config import settings
from barpos.errors import ConflictError, NotFoundError, ValidationError
from barpos.models import Customer, Order, OrderSession, OrderStatus, SessionStatus
from barpos.pricing import change_due, session_totals
from barpos.realtime import Outbox
from barpos.schemas import OrderCreate, PaymentDetails
from barpos.utils import iso, minutes_between, money, now

logger = logging.getLogger(__name__)

SETTLED = (OrderStatus.COMPLETED.value, OrderStatus.VOIDED.value)


def get_session(db: Session, session_id: int) -> OrderSession:
    session = db.get(OrderSession, session_id)
    if session is None:
        raise NotFoundError("session not found")
    return session


def session_lock(session_id: int, shared: bool = False) -> Select:
    """SELECT of one session row with a row lock.

    ``shared`` takes FOR KEY SHARE: it waits for a close holding FOR UPDATE but
    not for other terminals updating the running totals on the same row.
    """
    return (
        select(OrderSession)
        .where(OrderSession.id == session_id)
        .with_for_update(read=shared, key_share=shared)
        .execution_options(populate_existing=True)
    )


def _locked_session(db: Session, session_id: int, shared: bool = False) -> Optional[OrderSession]:
    return db.execute(session_lock(session_id, shared)).scalar_one_or_none()


def _open_session_id(db: Session, table_id: int) -> Optional[int]:
    return db.scalar(
        select(OrderSession.id).where(
            OrderSession.table_id == table_id,
            OrderSession.status == SessionStatus.OPEN.value,
        )
    )


def active_session_for_table(db: Session, table_id: int) -> Optional[OrderSession]:
    tables.get_table(db, table_id)
    session_id = _open_session_id(db, table_id)
    return db.get(OrderSession, session_id) if session_id is not None else None


def list_sessions(db: Session, status: Optional[SessionStatus] = SessionStatus.OPEN) -> Query:
    query = db.query(OrderSession)
    if status is not None:
        query = query.filter(OrderSession.status == status.value)
    return query


def open_session(
    db: Session,
    table_id: int,
    customer_id: Optional[int] = None,
    opened_by: Optional[int] = None,
    notes: Optional[str] = None,
) -> tuple[OrderSession, list[str]]:
    warnings: list[str] = []
    table = tables.get_table(db, table_id)
    tables.ensure_can_seat(table)
    if _open_session_id(db, table.id) is not None:
        raise ConflictError(f"Table {table.table_number} already has an open session")
    if customer_id is not None and db.get(Customer, customer_id) is None:
        warnings.append(f"customer {customer_id} not found; session opened without customer")
        logger.warning("session for table %s references unknown customer %s; cleared", table.id, customer_id)
        customer_id = None

    session = None
    for _ in range(orders.NUMBER_ATTEMPTS):
        candidate = OrderSession(
            session_number=orders.next_number(db, OrderSession.session_number, settings.session_number_prefix, 3),
            table_id=table.id,
            customer_id=customer_id,
            status=SessionStatus.OPEN.value,
            notes=notes,
            opened_at=now(),
            opened_by=opened_by,
        )
        try:
            with db.begin_nested():
                db.add(candidate)
        except IntegrityError:
            if _open_session_id(db, table.id) is not None:
                raise ConflictError(f"Table {table.table_number} already has an open session")
            logger.info("session number %s taken, retrying", candidate.session_number)
            continue
        session = candidate
        break
    if session is None:
        raise ConflictError("Could not allocate a session number, please retry")

    outbox = Outbox()
    tables.occupy(table, session, outbox)
    audit.record(
        db,
        "session_opened",
        "session",
        session.id,
        f"Tab {session.session_number} opened on table {table.table_number}",
        details={"table_id": table.id, "customer_id": customer_id},
        performed_by=opened_by,
    )
    outbox.session(session, "session_opened")
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        outbox.discard()
        raise ConflictError(f"Table {table.table_number} already has an open session")
    outbox.send()
    logger.info("opened session %s on table %s", session.session_number, table.table_number)
    return session, warnings


def add_order_to_session(db: Session, session_id: int, payload: OrderCreate) -> tuple[Order, list[str]]:
    # Key-share lock: waits for a close in flight and then sees its outcome.
    session = _locked_session(db, session_id, shared=True)
    if session is None or session.status != SessionStatus.OPEN.value:
        raise NotFoundError("open session not found")
    outbox = Outbox()
    order, warnings = orders.build_order(db, payload, session=session, outbox=outbox)
    orders.refresh_session_totals(db, session.id, outbox)
    db.commit()
    outbox.send()
    return order, warnings


def change_table(
    db: Session, session_id: int, table_id: int, performed_by: Optional[int] = None
) -> OrderSession:
    """Move an open tab to another table; the old table goes to cleaning."""
    session = _locked_session(db, session_id)
    if session is None:
        raise NotFoundError("session not found")
    if session.status != SessionStatus.OPEN.value:
        raise ValidationError(f"Session {session.session_number} is not open ({session.status})")
    old_table = session.table
    if table_id == old_table.id:
        raise ValidationError(f"Session {session.session_number} is already on table {old_table.table_number}")
    target = tables.get_table(db, table_id)
    tables.ensure_can_seat(target)
    if _open_session_id(db, target.id) is not None:
        raise ConflictError(f"Table {target.table_number} already has an open session")

    session_orders = _session_orders(db, session.id)
    outbox = Outbox()
    tables.release(old_table, session, outbox)
    session.table = target
    session.table_id = target.id
    tables.occupy(target, session, outbox)
    for order in session_orders:
        order.table_id = target.id
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        outbox.discard()
        raise ConflictError(f"Table {target.table_number} already has an open session")
    audit.record(
        db,
        "session_table_changed",
        "session",
        session.id,
        f"Tab {session.session_number} moved from table {old_table.table_number} to {target.table_number}",
        details={"from_table_id": old_table.id, "to_table_id": target.id},
        performed_by=performed_by,
    )
    outbox.session(session, "session_table_changed")
    db.commit()
    outbox.send()
    logger.info(
        "moved session %s from table %s to %s", session.session_number, old_table.table_number, target.table_number
    )
    return session


def _session_orders(db: Session, session_id: int) -> list[Order]:
    return db.query(Order).filter(Order.session_id == session_id).order_by(Order.id).all()


def preview_bill(db: Session, session_id: int) -> dict[str, Any]:
    """Read-only bill: totals are computed from the orders, nothing is written."""
    session = get_session(db, session_id)
    session_orders = _session_orders(db, session.id)
    billed = [order for order in session_orders if order.status != OrderStatus.VOIDED.value]
    totals = session_totals(billed)
    item_status = Counter()
    for order in billed:
        item_status[order.status] += len(order.items)
    return {
        "session": {
            "session_id": session.id,
            "session_number": session.session_number,
            "status": session.status,
            "opened_at": iso(session.opened_at),
            "duration_minutes": minutes_between(session.opened_at, session.closed_at or now()),
            "table": tables.table_to_dict(session.table),
            "customer": session.customer.full_name if session.customer is not None else None,
        },
        "orders": [
            {
                "order_id": order.id,
                "order_number": order.order_number,
                "status": order.status,
                "created_at": iso(order.created_at),
                "items": [orders.item_to_dict(item) for item in order.items],
                "subtotal": float(order.subtotal),
                "discount_amount": float(order.discount_amount),
                "tax_amount": float(order.tax_amount),
                "total_amount": float(order.total_amount),
            }
            for order in billed
        ],
        "voided_orders": [order.order_number for order in session_orders if order.status == OrderStatus.VOIDED.value],
        "totals": totals.as_dict(),
        "item_status": dict(item_status),
    }


def _settle_order(
    db: Session,
    order: Order,
    payment: PaymentDetails,
    change: Any,
    outbox: Outbox,
) -> Optional[stock.DeductionReport]:
    try:
        with db.begin_nested():
            orders.mark_completed(db, order, payment, change, settle=True)
    except Exception as exc:
        audit.record_failure(
            db,
            audit.ORDER_COMPLETION_FAILED,
            "order",
            order.id,
            f"Order {order.order_number} could not be completed on close: {exc}",
            details={"session_id": order.session_id, "error": str(exc)},
            outbox=outbox,
        )
        return None
    report = stock.deduct_for_order(db, order, payment.closed_by, outbox)
    notifications.order_completed(db, order, outbox)
    outbox.order(order, "order_completed")
    return report


def close_session(db: Session, session_id: int, payment: PaymentDetails) -> dict[str, Any]:
    session = _locked_session(db, session_id)
    if session is None:
        raise NotFoundError("session not found")
    if session.status != SessionStatus.OPEN.value:
        raise ValidationError(f"Session {session.session_number} is not open ({session.status})")

    outbox = Outbox()
    orders.refresh_session_totals(db, session.id)
    total = money(session.total_amount)
    if payment.amount_tendered is not None and money(payment.amount_tendered) < total:
        raise ValidationError(
            f"Payment amount is less than total: tendered {money(payment.amount_tendered)}, due {total}"
        )
    change = change_due(total, payment.amount_tendered)

    session_orders = _session_orders(db, session.id)
    reports = []
    for order in session_orders:
        if order.status in SETTLED:
            continue
        report = _settle_order(db, order, payment, change, outbox)
        if report is not None:
            reports.append(report)

    session.status = SessionStatus.CLOSED.value
    session.closed_at = now()
    session.closed_by = payment.closed_by
    tables.release(session.table, session, outbox)
    failures = [
        {"order_id": report.order_id, **failure} for report in reports for failure in report.failed
    ]
    audit.record(
        db,
        "session_closed",
        "session",
        session.id,
        f"Tab {session.session_number} closed, {payment.payment_method.value} {total}",
        severity="warning" if failures else "info",
        details={
            "payment_method": payment.payment_method.value,
            "amount_tendered": float(payment.amount_tendered) if payment.amount_tendered is not None else None,
            "change": float(change) if change is not None else None,
            "reference_number": payment.reference_number,
            "deductions": [report.as_dict() for report in reports],
        },
        performed_by=payment.closed_by,
    )
    outbox.session(session, "session_closed")
    db.commit()
    outbox.send()
    if failures:
        logger.warning("session %s closed with %s stock failures", session.session_number, len(failures))
    logger.info("closed session %s total %s", session.session_number, total)

    receipt = receipts.session_receipt(
        session,
        session_orders,
        payment.payment_method.value,
        payment.amount_tendered,
        change,
        payment.reference_number,
    )
    receipts.publish_receipt(receipt)
    return {
        "session": session,
        "receipt": receipt,
        "deductions": [report.as_dict() for report in reports],
        "failures": failures,
    }


def abandon_session(
    db: Session, session_id: int, reason: Optional[str] = None, performed_by: Optional[int] = None
) -> OrderSession:
    """Customer left without paying; orders stay as they are and no stock is deducted."""
    session = _locked_session(db, session_id)
    if session is None:
        raise NotFoundError("session not found")
    if session.status != SessionStatus.OPEN.value:
        raise ValidationError("Can only abandon open sessions")
    outbox = Outbox()
    session.status = SessionStatus.ABANDONED.value
    session.closed_at = now()
    session.closed_by = performed_by
    tables.release(session.table, session, outbox)
    audit.record(
        db,
        "session_abandoned",
        "session",
        session.id,
        f"Tab {session.session_number} abandoned" + (f": {reason}" if reason else ""),
        severity="warning",
        details={"total_amount": float(session.total_amount), "reason": reason},
        performed_by=performed_by,
    )
    outbox.session(session, "session_abandoned")
    db.commit()
    outbox.send()
    return session


def session_to_dict(session: OrderSession, include_orders: bool = False) -> dict[str, Any]:
    data = {
        "session_id": session.id,
        "session_number": session.session_number,
        "table_id": session.table_id,
        "table_number": session.table.table_number if session.table is not None else None,
        "customer_id": session.customer_id,
        "status": session.status,
        "subtotal": float(session.subtotal),
        "discount_amount": float(session.discount_amount),
        "tax_amount": float(session.tax_amount),
        "total_amount": float(session.total_amount),
        "notes": session.notes,
        "opened_at": iso(session.opened_at),
        "opened_by": session.opened_by,
        "closed_at": iso(session.closed_at),
        "closed_by": session.closed_by,
    }
    if include_orders:
        data["orders"] = [orders.order_to_dict(order) for order in session.orders]
    return data
