import pytest

from barpos import stock
from barpos.errors import NotFoundError, ValidationError
from barpos.models import AuditLog, Category, Order, Product, StockMovement
from barpos.orders import create_order
from barpos.schemas import OrderCreate, OrderItemInput


def test_classify_category_prefers_explicit_policy() -> None:
    assert stock.classify_category(Category(name="Beer", stock_policy="flexible")).value == "flexible"
    assert stock.classify_category(Category(name="Imported Beers")).value == "strict"
    assert stock.classify_category(Category(name="Grill")).value == "flexible"
    assert stock.classify_category(None).value == "flexible"


def test_stock_status_labels() -> None:
    strict = Category(name="Liquor", stock_policy="strict")
    flexible = Category(name="Kitchen", stock_policy="flexible")
    assert stock.stock_status(Product(name="Rum", category=strict, current_stock=0, reorder_point=3)) == {
        "status": "out_of_stock",
        "label": "Out of Stock",
        "should_warn": True,
    }
    assert stock.stock_status(Product(name="Adobo", category=flexible, current_stock=0, reorder_point=3))["label"] == (
        "Out of Stock (Kitchen Confirm)"
    )
    assert stock.stock_status(Product(name="Rum", category=strict, current_stock=2, reorder_point=3))["status"] == "low_stock"
    assert stock.stock_status(Product(name="Rum", category=strict, current_stock=9, reorder_point=3))["status"] == "adequate"


def test_strict_shortage_is_unavailable(db, seed) -> None:
    ids = seed(beer_stock=3)
    check = stock.validate_stock(db, [(ids.beer, None, 5)])
    assert check.valid is False
    assert check.unavailable[0]["message"] == "Beer: requested 5, available 3"


def test_flexible_shortage_is_only_a_warning(db, seed) -> None:
    ids = seed(sisig_stock=1)
    check = stock.validate_stock(db, [(ids.sisig, None, 4)])
    assert check.valid is True
    assert check.unavailable == []
    assert check.warning_messages == ["Sisig: requested 4, available 1 - kitchen confirmation required"]


def test_validation_counts_package_and_plain_lines_together(db, seed) -> None:
    ids = seed(beer_stock=3)
    with pytest.raises(ValidationError) as exc_info:
        stock.ensure_stock(db, [(ids.beer, None, 2), (None, ids.bucket, 1)])
    assert exc_info.value.violations == ["Beer: requested 14, available 3"]


def test_package_lines_are_expanded(db, seed) -> None:
    ids = seed(beer_stock=30)
    assert stock.requested_quantities(db, [(None, ids.bucket, 2), (ids.beer, None, 1)]) == {
        ids.beer: 25,
        ids.sisig: 4,
    }


def test_unknown_product_is_not_found(db, seed) -> None:
    seed()
    with pytest.raises(NotFoundError):
        stock.validate_stock(db, [(999, None, 1)])


def test_low_stock_warning_at_reorder_point(db, seed) -> None:
    ids = seed(beer_stock=2)
    check = stock.validate_stock(db, [(ids.beer, None, 1)])
    assert check.valid is True
    assert check.warning_messages == ["Beer: low stock (2 left)"]


def test_adjust_stock_records_movement_and_audit(db, seed) -> None:
    ids = seed(beer_stock=10)
    movement = stock.adjust_stock(db, ids.beer, 24, "delivery", performed_by=3)

    assert (movement.quantity_before, movement.quantity_after) == (10, 34)
    assert movement.movement_type == "adjustment"
    assert db.get(Product, ids.beer).current_stock == 34
    assert db.query(AuditLog).filter_by(action="stock_adjusted", entity_id=ids.beer).count() == 1


def test_adjust_stock_refuses_negative_zero_and_blank_reason(db, seed) -> None:
    ids = seed(beer_stock=2)
    with pytest.raises(ValidationError):
        stock.adjust_stock(db, ids.beer, -3, "breakage")
    db.rollback()
    with pytest.raises(ValidationError):
        stock.adjust_stock(db, ids.beer, 0, "count")
    with pytest.raises(ValidationError):
        stock.adjust_stock(db, ids.beer, 1, "  ")
    assert db.get(Product, ids.beer).current_stock == 2
    assert db.query(StockMovement).count() == 0


def test_available_products_hide_strict_items_without_stock(db, seed) -> None:
    ids = seed(beer_stock=0, sisig_stock=0)
    listed = {product["product_id"]: product for product in stock.available_products(db)}

    assert ids.beer not in listed
    assert listed[ids.sisig]["stock_status"]["label"] == "Out of Stock (Kitchen Confirm)"
    assert ids.shake in listed


def test_available_products_skip_inactive_categories(db, seed) -> None:
    ids = seed()
    db.get(Product, ids.sisig).category.is_active = False
    db.commit()

    listed = [product["product_id"] for product in stock.available_products(db)]

    assert ids.sisig not in listed
    assert ids.beer in listed


def test_low_stock_products(db, seed) -> None:
    ids = seed(beer_stock=1, sisig_stock=8)
    low = [product["product_id"] for product in stock.low_stock_products(db)]
    assert ids.beer in low
    assert ids.sisig not in low


def _paid_order(db, ids, **quantities) -> Order:
    items = [OrderItemInput(product_id=getattr(ids, name), quantity=qty) for name, qty in quantities.items()]
    order, _ = create_order(db, OrderCreate(items=items))
    return order


def test_deduction_happens_once_per_order_and_product(db, seed) -> None:
    ids = seed(beer_stock=10)
    order, _ = create_order(
        db,
        OrderCreate(
            items=[OrderItemInput(product_id=ids.beer, quantity=2), OrderItemInput(product_id=ids.beer, quantity=1)]
        ),
    )

    first = stock.deduct_for_order(db, order)
    db.commit()
    second = stock.deduct_for_order(db, order)
    db.commit()

    assert first.deducted == [{"product_id": ids.beer, "quantity": 3}]
    assert second.deducted == []
    assert second.skipped == [ids.beer]
    sales = db.query(StockMovement).filter_by(reference_order_id=order.id, movement_type="sale").all()
    assert [sale.quantity_delta for sale in sales] == [-3]
    assert db.get(Product, ids.beer).current_stock == 7
    assert db.query(AuditLog).filter_by(action="deduction_skipped").count() == 1


def test_deduction_may_drive_stock_negative(db, seed) -> None:
    ids = seed(sisig_stock=1)
    order = _paid_order(db, ids, sisig=3)
    report = stock.deduct_for_order(db, order)
    db.commit()
    assert report.failed == []
    assert db.get(Product, ids.sisig).current_stock == -2


def test_reversal_mirrors_recorded_sales(db, seed) -> None:
    ids = seed(beer_stock=30)
    order, _ = create_order(db, OrderCreate(items=[OrderItemInput(package_id=ids.bucket, quantity=1)]))
    stock.deduct_for_order(db, order)
    db.commit()
    assert db.get(Product, ids.beer).current_stock == 18

    returned = stock.reverse_for_order(db, order, reason="void_return")
    again = stock.reverse_for_order(db, order, reason="void_return")
    db.commit()

    assert sorted((m.product_id, m.quantity_delta) for m in returned) == sorted([(ids.beer, 12), (ids.sisig, 2)])
    assert again == []
    assert db.get(Product, ids.beer).current_stock == 30
    assert db.get(Product, ids.sisig).current_stock == 5
