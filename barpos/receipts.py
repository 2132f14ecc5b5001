"""Hands finalized totals to receipt consumers; no document is rendered here."""
import logging
from typing import Any, Callable, Optional

from barpos.models import Order, OrderSession, OrderStatus
from barpos.utils import iso

logger = logging.getLogger(__name__)

ReceiptListener = Callable[[dict], None]

_listeners: list[ReceiptListener] = []


def register_receipt_listener(listener: ReceiptListener) -> ReceiptListener:
    _listeners.append(listener)
    return listener


def unregister_receipt_listener(listener: ReceiptListener) -> None:
    if listener in _listeners:
        _listeners.remove(listener)


def publish_receipt(receipt: dict) -> None:
    for listener in list(_listeners):
        try:
            listener(receipt)
        except Exception:
            logger.warning("receipt listener %r failed", listener, exc_info=True)


def _order_lines(order: Order) -> list[dict[str, Any]]:
    return [
        {
            "item_name": item.item_name,
            "quantity": item.quantity,
            "unit_price": float(item.unit_price),
            "discount_amount": float(item.discount_amount),
            "total": float(item.total),
            "is_complimentary": item.is_complimentary,
        }
        for item in order.items
    ]


def _payment(method: Optional[str], tendered: Any, change: Any, reference: Optional[str]) -> dict:
    return {
        "method": method,
        "amount_tendered": float(tendered) if tendered is not None else None,
        "change": float(change) if change is not None else None,
        "reference_number": reference,
    }


def session_receipt(
    session: OrderSession,
    orders: list[Order],
    payment_method: str,
    amount_tendered: Any = None,
    change: Any = None,
    reference_number: Optional[str] = None,
) -> dict:
    billed = [order for order in orders if order.status != OrderStatus.VOIDED.value]
    return {
        "kind": "session",
        "session_id": session.id,
        "session_number": session.session_number,
        "table": session.table.table_number if session.table is not None else None,
        "customer": session.customer.full_name if session.customer is not None else None,
        "orders": [
            {
                "order_number": order.order_number,
                "items": _order_lines(order),
                "total": float(order.total_amount),
            }
            for order in billed
        ],
        "totals": {
            "subtotal": float(session.subtotal),
            "discount": float(session.discount_amount),
            "tax": float(session.tax_amount),
            "total": float(session.total_amount),
        },
        "payment": _payment(payment_method, amount_tendered, change, reference_number),
        "closed_at": iso(session.closed_at),
    }


def order_receipt(order: Order) -> dict:
    return {
        "kind": "order",
        "order_id": order.id,
        "order_number": order.order_number,
        "items": _order_lines(order),
        "totals": {
            "subtotal": float(order.subtotal),
            "discount": float(order.discount_amount),
            "tax": float(order.tax_amount),
            "total": float(order.total_amount),
        },
        "payment": _payment(
            order.payment_method, order.amount_tendered, order.change_amount, order.payment_reference
        ),
        "closed_at": iso(order.completed_at),
    }
