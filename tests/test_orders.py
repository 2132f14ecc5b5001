import re
from decimal import Decimal

import pytest

from barpos import orders, receipts, tickets
from barpos.config import settings
from barpos.errors import NotFoundError, ValidationError
from barpos.models import (
    Destination,
    Notification,
    Order,
    OrderStatus,
    PrepTicket,
    Product,
    StockMovement,
    TicketStatus,
)
from barpos.pricing import discount_for, line_total
from barpos.schemas import OrderCreate, OrderItemInput, PaymentDetails


def _create(db, *items, **kwargs):
    payload = OrderCreate(items=[OrderItemInput(**item) for item in items], **kwargs)
    return orders.create_order(db, payload)


def test_line_totals_and_discounts() -> None:
    assert line_total(3, Decimal("80"), Decimal("10")) == Decimal("230.00")
    assert line_total(3, Decimal("80"), is_complimentary=True) == Decimal("0.00")
    assert line_total(1, Decimal("5"), Decimal("20")) == Decimal("0.00")
    assert discount_for(Decimal("333.33"), "percentage", 10) == Decimal("33.33")
    with pytest.raises(ValidationError):
        discount_for(Decimal("100"), "percentage", 120)
    with pytest.raises(ValidationError):
        discount_for(Decimal("100"), "fixed_amount", 150)
    assert discount_for(Decimal("100"), "fixed_amount", 150, strict=False) == Decimal("100.00")
    assert discount_for(Decimal("100"), "percentage", 120, strict=False) == Decimal("100.00")


def test_create_walk_up_order_confirms_and_routes(db, seed) -> None:
    ids = seed()
    order, warnings = _create(db, {"product_id": ids.beer, "quantity": 2}, {"product_id": ids.sisig, "quantity": 1})

    assert re.fullmatch(r"ORD-\d{8}-0001", order.order_number)
    assert order.status == "confirmed"
    assert order.confirmed_at is not None
    assert order.total_amount == Decimal("340.00")
    assert warnings == []
    assert {(t.product_name, t.destination) for t in order.tickets} == {("Beer", "bartender"), ("Sisig", "kitchen")}
    assert db.query(StockMovement).count() == 0
    assert db.query(Notification).filter_by(type="order_created").count() == 1


def test_order_numbers_increase_within_the_day(db, seed) -> None:
    ids = seed()
    first, _ = _create(db, {"product_id": ids.shake, "quantity": 1})
    second, _ = _create(db, {"product_id": ids.shake, "quantity": 1})
    assert first.order_number.endswith("-0001")
    assert second.order_number.endswith("-0002")


def test_totals_with_discount_and_tax(db, seed, monkeypatch) -> None:
    monkeypatch.setattr(settings, "tax_rate", Decimal("0.12"))
    ids = seed()
    order, _ = _create(
        db,
        {"product_id": ids.beer, "quantity": 2},
        {"product_id": ids.sisig, "quantity": 1},
        discount_type="percentage",
        discount_value=Decimal("10"),
    )
    assert order.subtotal == Decimal("340.00")
    assert order.discount_amount == Decimal("34.00")
    assert order.tax_amount == Decimal("36.72")
    assert order.total_amount == Decimal("342.72")


def test_strict_shortage_rejects_before_anything_is_written(db, seed) -> None:
    ids = seed(beer_stock=3)
    with pytest.raises(ValidationError) as exc_info:
        _create(db, {"product_id": ids.beer, "quantity": 5}, {"product_id": ids.sisig, "quantity": 1})
    db.rollback()

    assert "Beer: requested 5, available 3" in str(exc_info.value)
    assert db.query(Order).count() == 0
    assert db.query(PrepTicket).count() == 0
    assert db.query(StockMovement).count() == 0


def test_flexible_shortage_is_accepted_and_flagged(db, seed) -> None:
    ids = seed(sisig_stock=1)
    order, warnings = _create(db, {"product_id": ids.sisig, "quantity": 3})
    assert order.status == "confirmed"
    assert warnings == ["Sisig: requested 3, available 1 - kitchen confirmation required"]


def test_missing_optional_references_are_cleared(db, seed) -> None:
    ids = seed()
    order, warnings = _create(db, {"product_id": ids.shake, "quantity": 1}, customer_id=404, table_id=ids.patio)
    assert order.customer_id is None
    assert order.table_id is None
    assert len(warnings) == 2


def test_missing_product_blocks_the_order(db, seed) -> None:
    seed()
    with pytest.raises(NotFoundError):
        _create(db, {"product_id": 999, "quantity": 1})


def test_item_needs_exactly_one_reference(db, seed) -> None:
    ids = seed()
    with pytest.raises(ValidationError) as exc_info:
        _create(db, {"product_id": ids.beer, "package_id": ids.bucket, "quantity": 1}, {"quantity": 1})
    assert len(exc_info.value.violations) == 2


def test_unit_price_defaults_to_catalog_price(db, seed) -> None:
    ids = seed(beer_stock=24)
    order, _ = _create(db, {"package_id": ids.bucket, "quantity": 1}, {"product_id": ids.shake, "quantity": 1, "unit_price": "99.50"})
    assert [item.unit_price for item in order.items] == [Decimal("1200.00"), Decimal("99.50")]


def test_draft_orders_are_routed_on_confirm(db, seed) -> None:
    ids = seed(beer_stock=3)
    order, _ = _create(db, {"product_id": ids.beer, "quantity": 2}, confirm=False)
    assert order.status == "draft"
    assert order.tickets == []

    order, _ = orders.confirm_order(db, order.id)
    assert order.status == "confirmed"
    assert len(order.tickets) == 1


def test_confirming_a_draft_revalidates_stock(db, seed) -> None:
    ids = seed(beer_stock=3)
    order, _ = _create(db, {"product_id": ids.beer, "quantity": 5}, confirm=False)
    with pytest.raises(ValidationError):
        orders.confirm_order(db, order.id)


def test_added_items_on_confirmed_order_are_routed(db, seed) -> None:
    ids = seed()
    order, _ = _create(db, {"product_id": ids.beer, "quantity": 1})
    order, _ = orders.add_items(db, order.id, [OrderItemInput(product_id=ids.sisig, quantity=2)])

    assert len(order.items) == 2
    assert sorted(t.product_name for t in order.tickets) == ["Beer", "Sisig"]
    assert order.total_amount == Decimal("440.00")


def test_reduce_item_quantity_updates_ticket(db, seed) -> None:
    ids = seed()
    order, _ = _create(db, {"product_id": ids.beer, "quantity": 4})
    item_id = order.items[0].id

    order = orders.reduce_item_quantity(db, order.id, item_id, 2, reason="customer request")

    assert order.items[0].quantity == 2
    assert order.total_amount == Decimal("160.00")
    (ticket,) = order.tickets
    assert ticket.quantity == 2
    assert ticket.special_instructions == "MODIFIED: qty 4 -> 2"
    with pytest.raises(ValidationError):
        orders.reduce_item_quantity(db, order.id, item_id, 3)


def test_apply_discount(db, seed) -> None:
    ids = seed()
    order, _ = _create(db, {"product_id": ids.sisig, "quantity": 2})
    order = orders.apply_discount(db, order.id, "fixed_amount", Decimal("60"))
    assert order.discount_amount == Decimal("60.00")
    assert order.total_amount == Decimal("300.00")
    with pytest.raises(ValidationError):
        orders.apply_discount(db, order.id, "fixed_amount", Decimal("500"))


def test_fixed_discount_shrinks_with_the_subtotal(db, seed) -> None:
    ids = seed()
    order, _ = _create(db, {"product_id": ids.sisig, "quantity": 2})
    order = orders.apply_discount(db, order.id, "fixed_amount", Decimal("300"))
    assert order.total_amount == Decimal("60.00")

    order = orders.reduce_item_quantity(db, order.id, order.items[0].id, 1)

    assert order.subtotal == Decimal("180.00")
    assert order.discount_amount == Decimal("180.00")
    assert order.total_amount == Decimal("0.00")
    assert order.discount_value == Decimal("300")


def test_status_transitions(db, seed) -> None:
    ids = seed()
    order, _ = _create(db, {"product_id": ids.shake, "quantity": 1})
    assert orders.update_status(db, order.id, OrderStatus.PREPARING).status == "preparing"
    with pytest.raises(ValidationError):
        orders.update_status(db, order.id, OrderStatus.CONFIRMED)
    with pytest.raises(ValidationError):
        orders.update_status(db, order.id, OrderStatus.COMPLETED)

    draft, _ = _create(db, {"product_id": ids.shake, "quantity": 1}, confirm=False)
    with pytest.raises(ValidationError):
        orders.update_status(db, draft.id, OrderStatus.READY)


def test_complete_walk_up_order_deducts_and_emits_receipt(db, seed) -> None:
    ids = seed(beer_stock=10)
    received = []
    listener = receipts.register_receipt_listener(received.append)
    try:
        order, _ = _create(db, {"product_id": ids.beer, "quantity": 2})
        order, report, receipt = orders.complete_order(
            db, order.id, PaymentDetails(payment_method="cash", amount_tendered=Decimal("200"))
        )
    finally:
        receipts.unregister_receipt_listener(listener)

    assert order.status == "completed"
    assert order.change_amount == Decimal("40.00")
    assert report.deducted == [{"product_id": ids.beer, "quantity": 2}]
    assert db.get(Product, ids.beer).current_stock == 8
    assert received == [receipt]
    assert receipt["payment"]["change"] == 40.0


def test_underpayment_is_rejected(db, seed) -> None:
    ids = seed()
    order, _ = _create(db, {"product_id": ids.sisig, "quantity": 1})
    with pytest.raises(ValidationError):
        orders.complete_order(db, order.id, PaymentDetails(payment_method="cash", amount_tendered=Decimal("100")))


def test_voiding_a_completed_order_returns_stock(db, seed) -> None:
    ids = seed(beer_stock=10)
    order, _ = _create(db, {"product_id": ids.beer, "quantity": 2})
    orders.complete_order(db, order.id, PaymentDetails(payment_method="card"))

    order = orders.void_order(db, order.id, "customer complaint", voided_by=3)

    assert order.status == "voided"
    assert db.get(Product, ids.beer).current_stock == 10
    returns = db.query(StockMovement).filter_by(reference_order_id=order.id, movement_type="return").all()
    assert [movement.quantity_delta for movement in returns] == [2]
    assert db.query(Notification).filter_by(type="order_voided", role="manager").count() == 1
    with pytest.raises(ValidationError):
        orders.void_order(db, order.id, "twice")


def test_void_needs_a_reason(db, seed) -> None:
    ids = seed()
    order, _ = _create(db, {"product_id": ids.shake, "quantity": 1})
    with pytest.raises(ValidationError):
        orders.void_order(db, order.id, "  ")


def test_ticket_progress_drives_order_status(db, seed) -> None:
    ids = seed()
    order, _ = _create(db, {"product_id": ids.beer, "quantity": 1}, {"product_id": ids.sisig, "quantity": 1})
    beer_ticket, sisig_ticket = sorted(order.tickets, key=lambda t: t.product_name)

    with pytest.raises(ValidationError):
        tickets.advance_ticket(db, beer_ticket.id, TicketStatus.READY)

    tickets.advance_ticket(db, beer_ticket.id, TicketStatus.PREPARING, performed_by=12)
    assert db.get(Order, order.id).status == "preparing"
    tickets.advance_ticket(db, beer_ticket.id, TicketStatus.READY)
    assert db.get(Order, order.id).status == "preparing"
    tickets.advance_ticket(db, sisig_ticket.id, TicketStatus.PREPARING)
    tickets.advance_ticket(db, sisig_ticket.id, TicketStatus.READY)
    assert db.get(Order, order.id).status == "ready"
    tickets.advance_ticket(db, beer_ticket.id, TicketStatus.SERVED)
    tickets.advance_ticket(db, sisig_ticket.id, TicketStatus.SERVED)
    assert db.get(Order, order.id).status == "served"

    ready = db.query(Notification).filter_by(type="ticket_ready", role="waiter").count()
    assert ready == 2
    served = db.get(PrepTicket, beer_ticket.id)
    assert served.prepared_by == 12
    assert tickets.ticket_to_dict(served)["timings"]["total_minutes"] == 0


def test_ticket_feed_puts_urgent_first_and_hides_voided(db, seed) -> None:
    ids = seed()
    first, _ = _create(db, {"product_id": ids.sisig, "quantity": 1})
    second, _ = _create(db, {"product_id": ids.sisig, "quantity": 2})
    both, _ = _create(db, {"product_id": ids.flaming, "quantity": 1})
    voided, _ = _create(db, {"product_id": ids.sisig, "quantity": 3})
    orders.void_order(db, voided.id, "wrong table")
    tickets.mark_urgent(db, second.id)

    kitchen = tickets.ticket_feed(db, Destination.KITCHEN).all()
    bar = tickets.ticket_feed(db, Destination.BARTENDER).all()

    assert [t.order_id for t in kitchen] == [second.id, first.id, both.id]
    assert [t.order_id for t in bar] == [both.id]
    assert kitchen[0].is_urgent is True
