from __future__ import annotations

import asyncio
import contextlib
import logging
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from barpos import audit, notifications, orders, realtime, sessions, stock, tables, tickets
from barpos.config import settings
from barpos.db import SessionLocal
from barpos.errors import NotFoundError, PosError
from barpos.models import (
    AuditLog,
    Destination,
    MovementType,
    Notification,
    OrderSession,
    OrderStatus,
    SessionStatus,
    StockMovement,
    TableStatus,
    TicketStatus,
)
from barpos.schemas import DiscountType, OrderCreate, OrderItemInput, PaymentDetails, StockLine

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Bar POS")


def _meta(request_id: Optional[str] = None, warnings: Optional[list[str]] = None) -> dict:
    return {
        "request_id": request_id or f"req_{uuid4().hex}",
        "warnings": warnings or [],
    }


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _paginate_by_id(query, model, limit: int, cursor: Optional[int]) -> tuple[list[Any], Optional[int]]:
    if cursor is not None:
        query = query.filter(model.id > cursor)
    rows = query.order_by(model.id).limit(limit + 1).all()
    next_cursor = None
    if len(rows) > limit:
        next_cursor = rows[limit - 1].id
        rows = rows[:limit]
    return rows, next_cursor


def _list_meta(limit: int, cursor: Optional[int], next_cursor: Optional[int]) -> dict:
    meta = _meta()
    if next_cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(next_cursor)}
    elif cursor is not None:
        meta["page"] = {"limit": limit, "cursor": str(cursor)}
    else:
        meta["page"] = {"limit": limit, "cursor": None}
    return meta


@app.exception_handler(PosError)
async def pos_error_handler(request: Request, exc: PosError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "errors": exc.violations})


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    logger.warning("%s %s hit a uniqueness constraint: %s", request.method, request.url.path, exc.orig)
    return JSONResponse(
        status_code=409,
        content={"detail": "conflicting concurrent update, please retry", "errors": []},
    )


@app.get("/", tags=["root"])
def read_root() -> dict:
    return {"status": "ok"}


@app.get("/health", tags=["health"])
def health_check() -> dict:
    return {"status": "healthy"}


class SessionOpen(BaseModel):
    model_config = {"json_schema_extra": {"example": {'table_id': 1, 'customer_id': None, 'opened_by': 7}}}
    table_id: int
    customer_id: Optional[int] = None
    opened_by: Optional[int] = None
    notes: Optional[str] = None


class SessionAbandon(BaseModel):
    model_config = {"json_schema_extra": {"example": {'reason': 'walk-out', 'performed_by': 3}}}
    reason: Optional[str] = None
    performed_by: Optional[int] = None


class SessionTableChange(BaseModel):
    model_config = {"json_schema_extra": {"example": {'table_id': 4, 'performed_by': 3}}}
    table_id: int
    performed_by: Optional[int] = None


@app.post("/api/v1/sessions", tags=["Sessions"])
def open_session(payload: SessionOpen, db: Session = Depends(get_db)) -> dict:
    session, warnings = sessions.open_session(
        db, payload.table_id, payload.customer_id, payload.opened_by, payload.notes
    )
    return {"data": sessions.session_to_dict(session), "meta": _meta(warnings=warnings)}


@app.get("/api/v1/sessions", tags=["Sessions"])
def list_sessions(
    status: Optional[SessionStatus] = Query(default=SessionStatus.OPEN),
    table_id: Optional[int] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = sessions.list_sessions(db, status)
    if table_id is not None:
        query = query.filter(OrderSession.table_id == table_id)
    rows, next_cursor = _paginate_by_id(query, OrderSession, limit, cursor)
    data = [sessions.session_to_dict(row) for row in rows]
    return {"data": data, "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/sessions/{session_id}", tags=["Sessions"])
def get_session(session_id: int, db: Session = Depends(get_db)) -> dict:
    session = sessions.get_session(db, session_id)
    return {"data": sessions.session_to_dict(session, include_orders=True), "meta": _meta()}


@app.get("/api/v1/tables/{table_id}/session", tags=["Sessions"])
def get_table_session(table_id: int, db: Session = Depends(get_db)) -> dict:
    session = sessions.active_session_for_table(db, table_id)
    if session is None:
        raise NotFoundError("no open session for table")
    return {"data": sessions.session_to_dict(session, include_orders=True), "meta": _meta()}


@app.post("/api/v1/sessions/{session_id}/orders", tags=["Sessions"])
def add_order_to_session(session_id: int, payload: OrderCreate, db: Session = Depends(get_db)) -> dict:
    order, warnings = sessions.add_order_to_session(db, session_id, payload)
    return {"data": orders.order_to_dict(order, include_tickets=True), "meta": _meta(warnings=warnings)}


@app.get("/api/v1/sessions/{session_id}/bill", tags=["Sessions"])
def preview_bill(session_id: int, db: Session = Depends(get_db)) -> dict:
    return {"data": sessions.preview_bill(db, session_id), "meta": _meta()}


@app.post("/api/v1/sessions/{session_id}/close", tags=["Sessions"])
def close_session(session_id: int, payload: PaymentDetails, db: Session = Depends(get_db)) -> dict:
    result = sessions.close_session(db, session_id, payload)
    warnings = [
        f"stock deduction failed for product {failure['product_id']} on order {failure['order_id']}"
        for failure in result["failures"]
    ]
    return {
        "data": {
            "session": sessions.session_to_dict(result["session"]),
            "receipt": result["receipt"],
            "deductions": result["deductions"],
        },
        "meta": _meta(warnings=warnings),
    }


@app.post("/api/v1/sessions/{session_id}/abandon", tags=["Sessions"])
def abandon_session(session_id: int, payload: SessionAbandon, db: Session = Depends(get_db)) -> dict:
    session = sessions.abandon_session(db, session_id, payload.reason, payload.performed_by)
    return {"data": sessions.session_to_dict(session), "meta": _meta()}


@app.post("/api/v1/sessions/{session_id}/change-table", tags=["Sessions"])
def change_session_table(session_id: int, payload: SessionTableChange, db: Session = Depends(get_db)) -> dict:
    session = sessions.change_table(db, session_id, payload.table_id, payload.performed_by)
    return {"data": sessions.session_to_dict(session), "meta": _meta()}


class OrderItemsAdd(BaseModel):
    model_config = {"json_schema_extra": {"example": {'items': [{'product_id': 2, 'quantity': 1}]}}}
    items: list[OrderItemInput]


class ItemQuantityUpdate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'quantity': 1, 'reason': 'customer changed mind', 'performed_by': 7}}}
    quantity: int
    reason: Optional[str] = None
    performed_by: Optional[int] = None


class DiscountApply(BaseModel):
    model_config = {"json_schema_extra": {"example": {'discount_type': 'percentage', 'value': 10}}}
    discount_type: DiscountType
    value: Decimal = Field(ge=0)


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class OrderVoid(BaseModel):
    model_config = {"json_schema_extra": {"example": {'reason': 'wrong table', 'voided_by': 3}}}
    reason: str
    voided_by: Optional[int] = None


def _order_response(order, warnings: Optional[list[str]] = None) -> dict:
    return {"data": orders.order_to_dict(order, include_tickets=True), "meta": _meta(warnings=warnings)}


@app.post("/api/v1/orders", tags=["Orders"])
def create_order(payload: OrderCreate, db: Session = Depends(get_db)) -> dict:
    order, warnings = orders.create_order(db, payload)
    return _order_response(order, warnings)


@app.get("/api/v1/orders/{order_id}", tags=["Orders"])
def get_order(order_id: int, db: Session = Depends(get_db)) -> dict:
    return _order_response(orders.get_order(db, order_id))


@app.post("/api/v1/orders/{order_id}/confirm", tags=["Orders"])
def confirm_order(order_id: int, db: Session = Depends(get_db)) -> dict:
    order, warnings = orders.confirm_order(db, order_id)
    return _order_response(order, warnings)


@app.post("/api/v1/orders/{order_id}/items", tags=["Orders"])
def add_order_items(order_id: int, payload: OrderItemsAdd, db: Session = Depends(get_db)) -> dict:
    order, warnings = orders.add_items(db, order_id, payload.items)
    return _order_response(order, warnings)


@app.patch("/api/v1/orders/{order_id}/items/{item_id}", tags=["Orders"])
def reduce_order_item(order_id: int, item_id: int, payload: ItemQuantityUpdate, db: Session = Depends(get_db)) -> dict:
    order = orders.reduce_item_quantity(db, order_id, item_id, payload.quantity, payload.reason, payload.performed_by)
    return _order_response(order)


@app.post("/api/v1/orders/{order_id}/discount", tags=["Orders"])
def apply_order_discount(order_id: int, payload: DiscountApply, db: Session = Depends(get_db)) -> dict:
    order = orders.apply_discount(db, order_id, payload.discount_type.value, payload.value)
    return _order_response(order)


@app.patch("/api/v1/orders/{order_id}/status", tags=["Orders"])
def update_order_status(order_id: int, payload: OrderStatusUpdate, db: Session = Depends(get_db)) -> dict:
    return _order_response(orders.update_status(db, order_id, payload.status))


@app.post("/api/v1/orders/{order_id}/complete", tags=["Orders"])
def complete_order(order_id: int, payload: PaymentDetails, db: Session = Depends(get_db)) -> dict:
    order, report, receipt = orders.complete_order(db, order_id, payload)
    warnings = [f"stock deduction failed for product {failure['product_id']}" for failure in report.failed]
    return {
        "data": {
            "order": orders.order_to_dict(order),
            "deductions": report.as_dict(),
            "receipt": receipt,
        },
        "meta": _meta(warnings=warnings),
    }


@app.post("/api/v1/orders/{order_id}/void", tags=["Orders"])
def void_order(order_id: int, payload: OrderVoid, db: Session = Depends(get_db)) -> dict:
    return _order_response(orders.void_order(db, order_id, payload.reason, payload.voided_by))


@app.post("/api/v1/orders/{order_id}/urgent", tags=["Orders"])
def mark_order_urgent(order_id: int, db: Session = Depends(get_db)) -> dict:
    rows = tickets.mark_urgent(db, order_id)
    return {"data": [tickets.ticket_to_dict(row) for row in rows], "meta": _meta()}


class TicketStatusUpdate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'status': 'preparing', 'performed_by': 12}}}
    status: TicketStatus
    performed_by: Optional[int] = None
    notes: Optional[str] = None


@app.get("/api/v1/prep-tickets", tags=["Prep Tickets"])
def list_prep_tickets(
    destination: Optional[Destination] = Query(default=None),
    status: Optional[list[TicketStatus]] = Query(default=None),
    order_id: Optional[int] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> dict:
    rows = tickets.ticket_feed(db, destination, status, order_id).limit(limit).all()
    return {"data": [tickets.ticket_to_dict(row) for row in rows], "meta": _meta()}


@app.patch("/api/v1/prep-tickets/{ticket_id}/status", tags=["Prep Tickets"])
def update_prep_ticket(ticket_id: int, payload: TicketStatusUpdate, db: Session = Depends(get_db)) -> dict:
    ticket = tickets.advance_ticket(db, ticket_id, payload.status, payload.performed_by, payload.notes)
    return {"data": tickets.ticket_to_dict(ticket), "meta": _meta()}


class StockValidate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'items': [{'product_id': 1, 'quantity': 5}]}}}
    items: list[StockLine]


class StockAdjustment(BaseModel):
    model_config = {"json_schema_extra": {"example": {'quantity_delta': 24, 'reason': 'delivery', 'performed_by': 3}}}
    quantity_delta: int
    reason: str
    performed_by: Optional[int] = None


@app.post("/api/v1/stock/validate", tags=["Stock"])
def validate_stock(payload: StockValidate, db: Session = Depends(get_db)) -> dict:
    check = stock.validate_stock(db, [(line.product_id, line.package_id, line.quantity) for line in payload.items])
    return {"data": check.as_dict(), "meta": _meta(warnings=check.warning_messages)}


@app.post("/api/v1/products/{product_id}/stock-adjustments", tags=["Stock"])
def adjust_product_stock(product_id: int, payload: StockAdjustment, db: Session = Depends(get_db)) -> dict:
    movement = stock.adjust_stock(db, product_id, payload.quantity_delta, payload.reason, payload.performed_by)
    return {"data": stock.movement_to_dict(movement), "meta": _meta()}


@app.get("/api/v1/products/available", tags=["Stock"])
def list_available_products(
    category_id: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    return {"data": stock.available_products(db, category_id), "meta": _meta()}


@app.get("/api/v1/products/low-stock", tags=["Stock"])
def list_low_stock_products(db: Session = Depends(get_db)) -> dict:
    return {"data": stock.low_stock_products(db), "meta": _meta()}


@app.get("/api/v1/stock-movements", tags=["Stock"])
def list_stock_movements(
    product_id: Optional[int] = Query(default=None),
    order_id: Optional[int] = Query(default=None),
    movement_type: Optional[MovementType] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(StockMovement)
    if product_id is not None:
        query = query.filter(StockMovement.product_id == product_id)
    if order_id is not None:
        query = query.filter(StockMovement.reference_order_id == order_id)
    if movement_type is not None:
        query = query.filter(StockMovement.movement_type == movement_type.value)
    rows, next_cursor = _paginate_by_id(query, StockMovement, limit, cursor)
    data = [stock.movement_to_dict(row) for row in rows]
    return {"data": data, "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/tables", tags=["Tables"])
def list_tables(
    status: Optional[TableStatus] = Query(default=None),
    area: Optional[str] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    return {"data": [tables.table_to_dict(row) for row in tables.list_tables(db, status, area)], "meta": _meta()}


@app.get("/api/v1/tables/summary", tags=["Tables"])
def table_summary(db: Session = Depends(get_db)) -> dict:
    return {"data": tables.availability_summary(db), "meta": _meta()}


@app.post("/api/v1/tables/{table_id}/reserve", tags=["Tables"])
def reserve_table(table_id: int, db: Session = Depends(get_db)) -> dict:
    return {"data": tables.table_to_dict(tables.reserve(db, table_id)), "meta": _meta()}


@app.post("/api/v1/tables/{table_id}/cancel-reservation", tags=["Tables"])
def cancel_table_reservation(table_id: int, db: Session = Depends(get_db)) -> dict:
    return {"data": tables.table_to_dict(tables.cancel_reservation(db, table_id)), "meta": _meta()}


@app.post("/api/v1/tables/{table_id}/clean", tags=["Tables"])
def clean_table(table_id: int, db: Session = Depends(get_db)) -> dict:
    return {"data": tables.table_to_dict(tables.mark_cleaned(db, table_id)), "meta": _meta()}


@app.get("/api/v1/audit-logs", tags=["Audit"])
def list_audit_logs(
    action: Optional[str] = Query(default=None),
    entity_type: Optional[str] = Query(default=None),
    entity_id: Optional[int] = Query(default=None),
    severity: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = db.query(AuditLog)
    if action is not None:
        query = query.filter(AuditLog.action == action)
    if entity_type is not None:
        query = query.filter(AuditLog.entity_type == entity_type)
    if entity_id is not None:
        query = query.filter(AuditLog.entity_id == entity_id)
    if severity is not None:
        query = query.filter(AuditLog.severity == severity)
    rows, next_cursor = _paginate_by_id(query, AuditLog, limit, cursor)
    data = [audit.audit_to_dict(row) for row in rows]
    return {"data": data, "meta": _list_meta(limit, cursor, next_cursor)}


@app.get("/api/v1/notifications", tags=["Notifications"])
def list_notifications(
    role: Optional[str] = Query(default=None),
    user_id: Optional[int] = Query(default=None),
    unread_only: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=500),
    cursor: Optional[int] = Query(default=None),
    db: Session = Depends(get_db),
) -> dict:
    query = notifications.list_notifications(db, role, user_id, unread_only)
    rows, next_cursor = _paginate_by_id(query, Notification, limit, cursor)
    data = [notifications.notification_to_dict(row) for row in rows]
    return {"data": data, "meta": _list_meta(limit, cursor, next_cursor)}


@app.post("/api/v1/notifications/{notification_id}/read", tags=["Notifications"])
def read_notification(notification_id: int, db: Session = Depends(get_db)) -> dict:
    row = notifications.mark_read(db, notification_id)
    return {"data": notifications.notification_to_dict(row), "meta": _meta()}


def _offer(queue: asyncio.Queue, event: dict) -> None:
    try:
        queue.put_nowait(event)
    except asyncio.QueueFull:
        logger.debug("display queue full, dropped %s event", event.get("type"))


async def _forward_events(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        event = await queue.get()
        await websocket.send_json(event)


@app.websocket("/ws/{channel}")
async def realtime_channel(websocket: WebSocket, channel: str) -> None:
    """Streams refresh signals for one channel; displays re-fetch over HTTP on each event.

    A display that falls behind loses events past ``ws_queue_size``; the next one
    still triggers a full re-fetch.
    """
    await websocket.accept()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue(maxsize=settings.ws_queue_size)

    def enqueue(_channel: str, event: dict) -> None:
        loop.call_soon_threadsafe(_offer, queue, event)

    unsubscribe = realtime.bus.subscribe(channel, enqueue)
    sender = None
    try:
        await websocket.send_json({"type": "subscribed", "channel": channel})
        sender = asyncio.create_task(_forward_events(websocket, queue))
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("display left channel %s", channel)
    finally:
        unsubscribe()
        if sender is not None:
            sender.cancel()
            # A send to a closed socket ends the task with one of these.
            with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
                await sender
