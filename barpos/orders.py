"""Order aggregate: line items, totals, confirmation and the order state machine."""
import logging
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from barpos import audit, notifications, receipts, routing, stock
from barpos.config import settings
from barpos.errors import ConflictError, NotFoundError, ValidationError
from barpos.models import (
    Customer,
    DiningTable,
    Order,
    OrderItem,
    OrderSession,
    OrderStatus,
    Package,
    PrepTicket,
    Product,
    SessionStatus,
    TicketStatus,
)
from barpos.pricing import change_due, line_total, order_totals, session_totals
from barpos.realtime import Outbox
from barpos.schemas import OrderCreate, OrderItemInput, PaymentDetails
from barpos.tickets import ticket_to_dict
from barpos.utils import iso, money, now

logger = logging.getLogger(__name__)

TRANSITIONS = {
    OrderStatus.DRAFT: {OrderStatus.CONFIRMED, OrderStatus.VOIDED},
    OrderStatus.CONFIRMED: {OrderStatus.PREPARING, OrderStatus.COMPLETED, OrderStatus.VOIDED},
    OrderStatus.PREPARING: {OrderStatus.READY, OrderStatus.COMPLETED, OrderStatus.VOIDED},
    OrderStatus.READY: {OrderStatus.SERVED, OrderStatus.COMPLETED, OrderStatus.VOIDED},
    OrderStatus.SERVED: {OrderStatus.COMPLETED, OrderStatus.VOIDED},
    OrderStatus.COMPLETED: {OrderStatus.VOIDED},
    OrderStatus.VOIDED: set(),
}

EDITABLE = (OrderStatus.DRAFT.value, OrderStatus.CONFIRMED.value)

NUMBER_ATTEMPTS = 3


def ensure_transition(order: Order, target: OrderStatus) -> None:
    current = OrderStatus(order.status)
    if target not in TRANSITIONS[current]:
        raise ValidationError(f"Cannot move order {order.order_number} from {current.value} to {target.value}")


def next_number(db: Session, column, prefix: str, width: int, when: Optional[datetime] = None) -> str:
    """Next ``PREFIX-YYYYMMDD-NNN`` number for the day; uniqueness is enforced by the column."""
    stem = f"{prefix}-{(when or now()):%Y%m%d}-"
    latest = db.scalars(select(column).where(column.like(f"{stem}%"))).all()
    counter = 0
    for number in latest:
        suffix = number[len(stem):]
        if suffix.isdigit():
            counter = max(counter, int(suffix))
    return f"{stem}{counter + 1:0{width}d}"


def get_order(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise NotFoundError("order not found")
    return order


def _stock_lines(items: Iterable[Any]) -> list[tuple[Optional[int], Optional[int], int]]:
    return [(item.product_id, item.package_id, item.quantity) for item in items]


def _check_item_shapes(inputs: list[OrderItemInput]) -> None:
    violations = []
    if not inputs:
        violations.append("at least one item is required")
    for position, item in enumerate(inputs, start=1):
        if (item.product_id is None) == (item.package_id is None):
            violations.append(f"item {position}: exactly one of product_id or package_id is required")
    if violations:
        raise ValidationError.from_violations("Invalid order payload", violations)


def _build_items(db: Session, inputs: list[OrderItemInput]) -> list[OrderItem]:
    """Resolve catalog references; unknown products or packages block the operation."""
    _check_item_shapes(inputs)
    missing: list[str] = []
    inactive: list[str] = []
    items: list[OrderItem] = []
    for item in inputs:
        if item.product_id is not None:
            source = db.get(Product, item.product_id)
            label = f"product {item.product_id}"
        else:
            source = db.get(Package, item.package_id)
            label = f"package {item.package_id}"
        if source is None:
            missing.append(label)
            continue
        if not source.is_active:
            inactive.append(f"{source.name} is not available")
            continue
        default_price = source.base_price if isinstance(source, Product) else source.price
        unit_price = item.unit_price if item.unit_price is not None else default_price
        items.append(
            OrderItem(
                product_id=item.product_id,
                package_id=item.package_id,
                item_name=source.name,
                quantity=item.quantity,
                unit_price=money(unit_price),
                discount_amount=money(item.discount_amount),
                total=line_total(item.quantity, unit_price, item.discount_amount, item.is_complimentary),
                is_complimentary=item.is_complimentary,
                notes=item.notes,
            )
        )
    if missing:
        raise NotFoundError("Unknown references: " + ", ".join(missing), missing)
    if inactive:
        raise ValidationError.from_violations("Invalid order payload", inactive)
    return items


def _resolve_optional_refs(
    db: Session, customer_id: Optional[int], table_id: Optional[int], warnings: list[str]
) -> tuple[Optional[int], Optional[int]]:
    if customer_id is not None and db.get(Customer, customer_id) is None:
        warnings.append(f"customer {customer_id} not found; order saved without customer")
        logger.warning("order references unknown customer %s; cleared", customer_id)
        customer_id = None
    if table_id is not None:
        table = db.get(DiningTable, table_id)
        if table is None or not table.is_active:
            warnings.append(f"table {table_id} not found; order saved without table")
            logger.warning("order references unknown table %s; cleared", table_id)
            table_id = None
    return customer_id, table_id


def recalculate(order: Order, strict: bool = False) -> None:
    """Refresh line and order totals. A stored discount is clamped unless ``strict``."""
    for item in order.items:
        item.total = line_total(item.quantity, item.unit_price, item.discount_amount, item.is_complimentary)
    totals = order_totals(order.items, order.discount_type, order.discount_value, settings.tax_rate, strict)
    order.subtotal = totals.subtotal
    order.discount_amount = totals.discount_amount
    order.tax_amount = totals.tax_amount
    order.total_amount = totals.total_amount


def refresh_session_totals(db: Session, session_id: Optional[int], outbox: Optional[Outbox] = None) -> None:
    """Recompute a session's totals from a full re-read of its orders.

    Never incremental, so interleaved writes from several terminals converge.
    """
    if session_id is None:
        return
    db.flush()
    session = db.get(OrderSession, session_id)
    if session is None:
        return
    rows = db.execute(
        select(
            Order.status,
            Order.subtotal,
            Order.discount_amount,
            Order.tax_amount,
            Order.total_amount,
        ).where(Order.session_id == session_id)
    ).all()
    totals = session_totals(rows)
    session.subtotal = totals.subtotal
    session.discount_amount = totals.discount_amount
    session.tax_amount = totals.tax_amount
    session.total_amount = totals.total_amount
    db.flush()
    if outbox is not None:
        outbox.session(session, "session_totals_updated")


def _confirm(db: Session, order: Order, items: Iterable[OrderItem], outbox: Optional[Outbox]) -> list[PrepTicket]:
    order.status = OrderStatus.CONFIRMED.value
    order.confirmed_at = now()
    db.flush()
    return routing.route_items(db, order, list(items), outbox)


def build_order(
    db: Session,
    payload: OrderCreate,
    *,
    session: Optional[OrderSession] = None,
    outbox: Optional[Outbox] = None,
) -> tuple[Order, list[str]]:
    """Create an order inside the current transaction without committing.

    When ``payload.confirm`` is set the stock check runs before anything is
    written, then the order is confirmed and routed.
    """
    warnings: list[str] = []
    items = _build_items(db, payload.items)
    if session is not None:
        customer_id, table_id = session.customer_id, session.table_id
    else:
        customer_id, table_id = _resolve_optional_refs(db, payload.customer_id, payload.table_id, warnings)

    if payload.confirm:
        check = stock.ensure_stock(db, _stock_lines(items))
        warnings.extend(check.warning_messages)

    order = None
    for _ in range(NUMBER_ATTEMPTS):
        candidate = Order(
            order_number=next_number(db, Order.order_number, settings.order_number_prefix, 4),
            session_id=session.id if session is not None else None,
            table_id=table_id,
            customer_id=customer_id,
            cashier_id=payload.cashier_id,
            status=OrderStatus.DRAFT.value,
            discount_type=payload.discount_type.value if payload.discount_type else None,
            discount_value=payload.discount_value,
            notes=payload.notes,
            created_at=now(),
        )
        candidate.items = list(items)
        recalculate(candidate, strict=True)
        try:
            with db.begin_nested():
                db.add(candidate)
        except IntegrityError:
            logger.info("order number %s taken, retrying", candidate.order_number)
            items = [_copy_item(item) for item in items]
            continue
        order = candidate
        break
    if order is None:
        raise ConflictError("Could not allocate an order number, please retry")

    if payload.confirm:
        _confirm(db, order, order.items, outbox)
    audit.record(
        db,
        "order_created",
        "order",
        order.id,
        f"Order {order.order_number} created ({order.status})",
        details={"session_id": order.session_id, "total_amount": float(order.total_amount), "warnings": warnings},
        performed_by=payload.cashier_id,
    )
    notifications.order_created(db, order, outbox)
    if outbox is not None:
        outbox.order(order, "order_created")
    return order, warnings


def _copy_item(item: OrderItem) -> OrderItem:
    return OrderItem(
        product_id=item.product_id,
        package_id=item.package_id,
        item_name=item.item_name,
        quantity=item.quantity,
        unit_price=item.unit_price,
        discount_amount=item.discount_amount,
        total=item.total,
        is_complimentary=item.is_complimentary,
        notes=item.notes,
    )


def _commit(db: Session, outbox: Outbox) -> None:
    db.commit()
    outbox.send()


def _mutated(db: Session, order: Order, outbox: Outbox, event_type: str = "order_updated") -> None:
    outbox.order(order, event_type)
    refresh_session_totals(db, order.session_id, outbox)


def _ensure_session_open(db: Session, order: Order) -> None:
    if order.session_id is None:
        return
    session = db.get(OrderSession, order.session_id)
    if session is not None and session.status != SessionStatus.OPEN.value:
        raise ValidationError(f"Session {session.session_number} is {session.status}")


def create_order(db: Session, payload: OrderCreate) -> tuple[Order, list[str]]:
    outbox = Outbox()
    order, warnings = build_order(db, payload, outbox=outbox)
    _commit(db, outbox)
    return order, warnings


def confirm_order(db: Session, order_id: int, performed_by: Optional[int] = None) -> tuple[Order, list[str]]:
    order = get_order(db, order_id)
    ensure_transition(order, OrderStatus.CONFIRMED)
    _ensure_session_open(db, order)
    check = stock.ensure_stock(db, _stock_lines(order.items))
    outbox = Outbox()
    _confirm(db, order, order.items, outbox)
    audit.record(db, "order_confirmed", "order", order.id, f"Order {order.order_number} confirmed", performed_by=performed_by)
    _mutated(db, order, outbox)
    _commit(db, outbox)
    return order, check.warning_messages


def add_items(db: Session, order_id: int, inputs: list[OrderItemInput]) -> tuple[Order, list[str]]:
    order = get_order(db, order_id)
    if order.status not in EDITABLE:
        raise ValidationError(f"Cannot add items to an order in {order.status} status")
    _ensure_session_open(db, order)
    new_items = _build_items(db, inputs)
    warnings: list[str] = []
    if order.status == OrderStatus.CONFIRMED.value:
        warnings = stock.ensure_stock(db, _stock_lines(new_items)).warning_messages
    outbox = Outbox()
    order.items.extend(new_items)
    recalculate(order)
    db.flush()
    if order.status == OrderStatus.CONFIRMED.value:
        routing.route_items(db, order, new_items, outbox)
    _mutated(db, order, outbox)
    _commit(db, outbox)
    return order, warnings


def reduce_item_quantity(
    db: Session,
    order_id: int,
    item_id: int,
    new_quantity: int,
    reason: Optional[str] = None,
    performed_by: Optional[int] = None,
) -> Order:
    order = get_order(db, order_id)
    if order.status not in EDITABLE:
        raise ValidationError(
            f"Cannot modify order in {order.status} status. Only draft or confirmed orders can be modified."
        )
    _ensure_session_open(db, order)
    item = next((candidate for candidate in order.items if candidate.id == item_id), None)
    if item is None:
        raise NotFoundError("order item not found")
    if new_quantity <= 0:
        raise ValidationError("New quantity must be greater than 0")
    if new_quantity >= item.quantity:
        raise ValidationError(
            f"New quantity ({new_quantity}) must be less than current quantity ({item.quantity})"
        )

    outbox = Outbox()
    old_quantity = item.quantity
    item.quantity = new_quantity
    recalculate(order)
    for ticket in order.tickets:
        if ticket.order_item_id != item.id:
            continue
        ratio = ticket.quantity // old_quantity if old_quantity else 1
        ticket.quantity = new_quantity * max(ratio, 1)
        note = f"MODIFIED: qty {old_quantity} -> {new_quantity}"
        ticket.special_instructions = f"{ticket.special_instructions} | {note}" if ticket.special_instructions else note
        if ticket.status != TicketStatus.PENDING.value:
            logger.warning("ticket %s already %s while order %s was reduced", ticket.id, ticket.status, order.id)
        outbox.ticket(ticket, "ticket_modified")
    audit.record(
        db,
        "order_item_reduced",
        "order",
        order.id,
        f"{item.item_name} reduced from {old_quantity} to {new_quantity}",
        details={"order_item_id": item.id, "reason": reason or "Customer request"},
        performed_by=performed_by,
    )
    _mutated(db, order, outbox)
    _commit(db, outbox)
    return order


def apply_discount(db: Session, order_id: int, discount_type: str, value: Any) -> Order:
    order = get_order(db, order_id)
    if order.status in (OrderStatus.COMPLETED.value, OrderStatus.VOIDED.value):
        raise ValidationError(f"Cannot discount an order in {order.status} status")
    _ensure_session_open(db, order)
    order.discount_type = discount_type
    order.discount_value = value
    recalculate(order, strict=True)
    outbox = Outbox()
    audit.record(
        db,
        "discount_applied",
        "order",
        order.id,
        f"{discount_type} discount of {value} applied",
        details={"discount_amount": float(order.discount_amount)},
    )
    _mutated(db, order, outbox)
    _commit(db, outbox)
    return order


def update_status(db: Session, order_id: int, status: OrderStatus) -> Order:
    """Manual moves through the kitchen phase; payment and voids have their own operations."""
    if status is OrderStatus.CONFIRMED:
        return confirm_order(db, order_id)[0]
    if status in (OrderStatus.COMPLETED, OrderStatus.VOIDED):
        raise ValidationError(f"Use the {'complete' if status is OrderStatus.COMPLETED else 'void'} operation")
    order = get_order(db, order_id)
    ensure_transition(order, status)
    order.status = status.value
    outbox = Outbox()
    outbox.order(order, "order_updated")
    _commit(db, outbox)
    return order


def mark_completed(
    db: Session,
    order: Order,
    payment: PaymentDetails,
    change: Any = None,
    *,
    settle: bool = False,
) -> None:
    """Record payment on ``order``.

    ``settle`` is used when a tab is paid: everything billed on it is completed,
    drafts included.
    """
    if not (settle and order.status == OrderStatus.DRAFT.value):
        ensure_transition(order, OrderStatus.COMPLETED)
    order.status = OrderStatus.COMPLETED.value
    order.completed_at = now()
    order.payment_method = payment.payment_method.value
    order.amount_tendered = payment.amount_tendered
    order.change_amount = change
    order.payment_reference = payment.reference_number
    db.flush()


def complete_order(db: Session, order_id: int, payment: PaymentDetails) -> tuple[Order, stock.DeductionReport, dict]:
    """Take payment for a walk-up order; stock is deducted once money is accepted."""
    order = get_order(db, order_id)
    if order.session_id is not None:
        session = db.get(OrderSession, order.session_id)
        if session is not None and session.status == SessionStatus.OPEN.value:
            raise ValidationError(f"Order belongs to open session {session.session_number}; close the session instead")
    if payment.amount_tendered is not None and money(payment.amount_tendered) < money(order.total_amount):
        raise ValidationError("Payment amount is less than total")
    outbox = Outbox()
    mark_completed(db, order, payment, change_due(order.total_amount, payment.amount_tendered))
    report = stock.deduct_for_order(db, order, payment.closed_by, outbox)
    audit.record(
        db,
        "order_completed",
        "order",
        order.id,
        f"Order {order.order_number} completed",
        details=report.as_dict(),
        performed_by=payment.closed_by,
    )
    notifications.order_completed(db, order, outbox)
    outbox.order(order, "order_completed")
    _commit(db, outbox)
    receipt = receipts.order_receipt(order)
    receipts.publish_receipt(receipt)
    return order, report, receipt


def void_order(db: Session, order_id: int, reason: str, voided_by: Optional[int] = None) -> Order:
    if not reason or not reason.strip():
        raise ValidationError("A void reason is required")
    order = get_order(db, order_id)
    ensure_transition(order, OrderStatus.VOIDED)
    was_completed = order.status == OrderStatus.COMPLETED.value
    outbox = Outbox()
    order.status = OrderStatus.VOIDED.value
    order.voided_at = now()
    order.voided_by = voided_by
    order.voided_reason = reason.strip()
    db.flush()
    returned = []
    if was_completed:
        returned = stock.reverse_for_order(db, order, voided_by, f"void_return: {order.voided_reason}", outbox)
    for ticket in order.tickets:
        outbox.ticket(ticket, "ticket_voided")
    audit.record(
        db,
        "order_voided",
        "order",
        order.id,
        f"Order {order.order_number} voided: {order.voided_reason}",
        severity="warning",
        details={"was_completed": was_completed, "returned_products": [m.product_id for m in returned]},
        performed_by=voided_by,
    )
    notifications.order_voided(db, order, outbox)
    _mutated(db, order, outbox, "order_voided")
    _commit(db, outbox)
    return order


def item_to_dict(item: OrderItem) -> dict[str, Any]:
    return {
        "order_item_id": item.id,
        "product_id": item.product_id,
        "package_id": item.package_id,
        "item_name": item.item_name,
        "quantity": item.quantity,
        "unit_price": float(item.unit_price),
        "discount_amount": float(item.discount_amount),
        "total": float(item.total),
        "is_complimentary": item.is_complimentary,
        "notes": item.notes,
    }


def order_to_dict(order: Order, include_tickets: bool = False) -> dict[str, Any]:
    data = {
        "order_id": order.id,
        "order_number": order.order_number,
        "session_id": order.session_id,
        "table_id": order.table_id,
        "customer_id": order.customer_id,
        "cashier_id": order.cashier_id,
        "status": order.status,
        "items": [item_to_dict(item) for item in order.items],
        "subtotal": float(order.subtotal),
        "discount_type": order.discount_type,
        "discount_amount": float(order.discount_amount),
        "tax_amount": float(order.tax_amount),
        "total_amount": float(order.total_amount),
        "payment_method": order.payment_method,
        "notes": order.notes,
        "created_at": iso(order.created_at),
        "confirmed_at": iso(order.confirmed_at),
        "completed_at": iso(order.completed_at),
        "voided_at": iso(order.voided_at),
        "voided_reason": order.voided_reason,
    }
    if include_tickets:
        data["tickets"] = [ticket_to_dict(ticket) for ticket in order.tickets]
    return data
