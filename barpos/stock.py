"""Stock ledger.

``current_stock`` is only ever changed through ``_apply_movement`` so every
change is paired with an append-only ``StockMovement`` row. Strictness is a
property of the product's category: strict goods (bottled drinks) must be in
stock before they are sold, flexible goods (cooked food) only raise a warning.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from barpos import audit
from barpos.config import settings
from barpos.errors import ConflictError, DeductionError, NotFoundError, ValidationError
from barpos.models import (
    Category,
    MovementType,
    Order,
    Package,
    Product,
    StockMovement,
    StockPolicy,
)
from barpos.realtime import Outbox
from barpos.utils import iso, now

logger = logging.getLogger(__name__)


def classify_category(category: Optional[Category]) -> StockPolicy:
    if category is None:
        return StockPolicy.FLEXIBLE
    if category.stock_policy:
        return StockPolicy(category.stock_policy)
    name = (category.name or "").lower()
    if any(keyword in name for keyword in settings.strict_category_keywords):
        return StockPolicy.STRICT
    return StockPolicy.FLEXIBLE


def is_strict(product: Product) -> bool:
    return classify_category(product.category) is StockPolicy.STRICT


def stock_status(product: Product) -> dict[str, Any]:
    strict = is_strict(product)
    if product.current_stock <= 0:
        return {
            "status": "out_of_stock",
            "label": "Out of Stock" if strict else "Out of Stock (Kitchen Confirm)",
            "should_warn": strict,
        }
    if product.current_stock <= product.reorder_point:
        return {
            "status": "low_stock",
            "label": f"Low Stock ({product.current_stock})",
            "should_warn": True,
        }
    return {
        "status": "adequate",
        "label": f"In Stock ({product.current_stock})",
        "should_warn": False,
    }


@dataclass
class StockCheck:
    valid: bool = True
    unavailable: list[dict] = field(default_factory=list)
    warnings: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {"valid": self.valid, "unavailable": self.unavailable, "warnings": self.warnings}

    @property
    def warning_messages(self) -> list[str]:
        return [warning["message"] for warning in self.warnings]


def requested_quantities(
    db: Session, lines: Iterable[tuple[Optional[int], Optional[int], int]]
) -> dict[int, int]:
    """Total quantity per product for ``(product_id, package_id, quantity)`` lines.

    Package lines count as ``quantity x ratio`` of each constituent product.
    Raises ``NotFoundError`` naming every unknown product or package.
    """
    totals: dict[int, int] = defaultdict(int)
    missing: list[str] = []
    for product_id, package_id, quantity in lines:
        if package_id is not None:
            package = db.get(Package, package_id)
            if package is None:
                missing.append(f"package {package_id}")
                continue
            for package_item in package.items:
                totals[package_item.product_id] += quantity * package_item.quantity
        elif product_id is not None:
            totals[product_id] += quantity
    if missing:
        raise NotFoundError("Unknown references: " + ", ".join(missing), missing)
    return dict(totals)


def validate_stock(db: Session, lines: Iterable[tuple[Optional[int], Optional[int], int]]) -> StockCheck:
    check = StockCheck()
    quantities = requested_quantities(db, lines)
    missing: list[str] = []
    for product_id, requested in quantities.items():
        product = db.get(Product, product_id)
        if product is None:
            missing.append(f"product {product_id}")
            continue
        available = product.current_stock
        entry = {
            "product_id": product.id,
            "product_name": product.name,
            "requested": requested,
            "available": available,
        }
        if not product.is_active:
            check.unavailable.append({**entry, "message": f"{product.name}: product is not active"})
        elif available < requested:
            message = f"{product.name}: requested {requested}, available {available}"
            if is_strict(product):
                check.unavailable.append({**entry, "message": message})
            else:
                check.warnings.append({**entry, "message": f"{message} - kitchen confirmation required"})
        elif available <= product.reorder_point:
            check.warnings.append({**entry, "message": f"{product.name}: low stock ({available} left)"})
    if missing:
        raise NotFoundError("Unknown references: " + ", ".join(missing), missing)
    check.valid = not check.unavailable
    return check


def ensure_stock(db: Session, lines: Iterable[tuple[Optional[int], Optional[int], int]]) -> StockCheck:
    check = validate_stock(db, lines)
    if not check.valid:
        raise ValidationError.from_violations(
            "Insufficient stock", [item["message"] for item in check.unavailable]
        )
    return check


def _apply_movement(
    db: Session,
    product_id: int,
    delta: int,
    movement_type: MovementType,
    *,
    order_id: Optional[int] = None,
    reason: Optional[str] = None,
    performed_by: Optional[int] = None,
    allow_negative: bool = True,
) -> StockMovement:
    product = db.execute(
        select(Product)
        .where(Product.id == product_id)
        .with_for_update(of=Product)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if product is None:
        raise NotFoundError(f"product {product_id} not found")
    before = product.current_stock
    after = before + delta
    if after < 0 and not allow_negative:
        raise ValidationError(
            f"Insufficient stock for {product.name}. Current: {before}, requested change: {delta}"
        )
    product.current_stock = after
    product.updated_at = now()
    movement = StockMovement(
        product_id=product.id,
        quantity_delta=delta,
        quantity_before=before,
        quantity_after=after,
        movement_type=movement_type.value,
        reference_order_id=order_id,
        reason=reason,
        performed_by=performed_by,
        created_at=now(),
    )
    db.add(movement)
    db.flush()
    if after < 0:
        logger.warning("stock of %s (%s) is negative after %s: %s", product.name, product.id, movement_type.value, after)
    return movement


def _apply_sale(
    db: Session, order_id: int, product_id: int, quantity: int, performed_by: Optional[int]
) -> StockMovement:
    existing = db.scalar(
        select(StockMovement.id).where(
            StockMovement.reference_order_id == order_id,
            StockMovement.product_id == product_id,
            StockMovement.movement_type == MovementType.SALE.value,
        )
    )
    if existing is not None:
        raise ConflictError(f"sale of product {product_id} already deducted for order {order_id}")
    try:
        return _apply_movement(
            db,
            product_id,
            -quantity,
            MovementType.SALE,
            order_id=order_id,
            reason="sale_deduction",
            performed_by=performed_by,
        )
    except NotFoundError as exc:
        raise DeductionError(exc.message) from exc


def sale_quantities(order: Order) -> dict[int, int]:
    totals: dict[int, int] = defaultdict(int)
    for item in order.items:
        if item.package_id is not None and item.package is not None:
            for package_item in item.package.items:
                totals[package_item.product_id] += item.quantity * package_item.quantity
        elif item.product_id is not None:
            totals[item.product_id] += item.quantity
    return dict(totals)


@dataclass
class DeductionReport:
    order_id: int
    deducted: list[dict] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "deducted": self.deducted,
            "skipped": self.skipped,
            "failed": self.failed,
        }


def deduct_for_order(
    db: Session,
    order: Order,
    performed_by: Optional[int] = None,
    outbox: Optional[Outbox] = None,
) -> DeductionReport:
    """Write one sale movement per product of a paid order.

    Each product runs in its own savepoint: a failure is recorded for
    reconciliation and the remaining products are still deducted.
    """
    report = DeductionReport(order_id=order.id)
    for product_id, quantity in sale_quantities(order).items():
        try:
            with db.begin_nested():
                _apply_sale(db, order.id, product_id, quantity, performed_by)
        except (ConflictError, IntegrityError):
            report.skipped.append(product_id)
            logger.info("sale of product %s for order %s already recorded", product_id, order.id)
            audit.record(
                db,
                audit.DEDUCTION_SKIPPED,
                "order",
                order.id,
                f"Sale of product {product_id} was already deducted",
                severity="warning",
                details={"product_id": product_id, "quantity": quantity},
            )
        except Exception as exc:
            report.failed.append({"product_id": product_id, "quantity": quantity, "error": str(exc)})
            audit.record_failure(
                db,
                audit.DEDUCTION_FAILED,
                "order",
                order.id,
                f"Stock deduction failed for product {product_id}: {exc}",
                details={"product_id": product_id, "quantity": quantity, "error": str(exc)},
                outbox=outbox,
            )
        else:
            report.deducted.append({"product_id": product_id, "quantity": quantity})
    return report


def reverse_for_order(
    db: Session,
    order: Order,
    performed_by: Optional[int] = None,
    reason: Optional[str] = None,
    outbox: Optional[Outbox] = None,
) -> list[StockMovement]:
    """Compensate the sale movements of an order with return movements.

    Only what was actually deducted is returned, minus anything returned before.
    """
    sold: dict[int, int] = defaultdict(int)
    returned: dict[int, int] = defaultdict(int)
    rows = db.execute(
        select(StockMovement.product_id, StockMovement.movement_type, func.sum(StockMovement.quantity_delta))
        .where(
            StockMovement.reference_order_id == order.id,
            StockMovement.movement_type.in_([MovementType.SALE.value, MovementType.RETURN.value]),
        )
        .group_by(StockMovement.product_id, StockMovement.movement_type)
    ).all()
    for product_id, movement_type, delta in rows:
        if movement_type == MovementType.SALE.value:
            sold[product_id] += -delta
        else:
            returned[product_id] += delta

    movements: list[StockMovement] = []
    for product_id, quantity in sold.items():
        outstanding = quantity - returned.get(product_id, 0)
        if outstanding <= 0:
            continue
        try:
            with db.begin_nested():
                movement = _apply_movement(
                    db,
                    product_id,
                    outstanding,
                    MovementType.RETURN,
                    order_id=order.id,
                    reason=reason or "void_return",
                    performed_by=performed_by,
                )
        except Exception as exc:
            audit.record_failure(
                db,
                audit.REVERSAL_FAILED,
                "order",
                order.id,
                f"Stock return failed for product {product_id}: {exc}",
                details={"product_id": product_id, "quantity": outstanding, "error": str(exc)},
                outbox=outbox,
            )
        else:
            movements.append(movement)
    return movements


def adjust_stock(
    db: Session,
    product_id: int,
    delta: int,
    reason: str,
    performed_by: Optional[int] = None,
) -> StockMovement:
    if delta == 0:
        raise ValidationError("Adjustment quantity must not be zero")
    if not reason or not reason.strip():
        raise ValidationError("Adjustment reason is required")
    movement = _apply_movement(
        db,
        product_id,
        delta,
        MovementType.ADJUSTMENT,
        reason=reason.strip(),
        performed_by=performed_by,
        allow_negative=False,
    )
    audit.record(
        db,
        "stock_adjusted",
        "product",
        product_id,
        f"Stock adjusted by {delta}: {reason.strip()}",
        details={"before": movement.quantity_before, "after": movement.quantity_after},
        performed_by=performed_by,
    )
    db.commit()
    return movement


def available_products(db: Session, category_id: Optional[int] = None) -> list[dict[str, Any]]:
    """Products that can be offered on a terminal.

    Products of an inactive category and strict products without stock are left
    out; flexible ones stay listed with their stock indicator.
    """
    query = db.query(Product).filter(Product.is_active.is_(True))
    if category_id is not None:
        query = query.filter(Product.category_id == category_id)
    listed = []
    for product in query.order_by(Product.name, Product.id).all():
        if product.category is not None and not product.category.is_active:
            continue
        if is_strict(product) and product.current_stock <= 0:
            continue
        listed.append(product_to_dict(product))
    return listed


def low_stock_products(db: Session) -> list[dict[str, Any]]:
    products = (
        db.query(Product)
        .filter(Product.is_active.is_(True), Product.current_stock <= Product.reorder_point)
        .order_by(Product.current_stock, Product.id)
        .all()
    )
    return [product_to_dict(product) for product in products]


def product_to_dict(product: Product) -> dict[str, Any]:
    return {
        "product_id": product.id,
        "name": product.name,
        "sku": product.sku,
        "category_id": product.category_id,
        "category_name": product.category.name if product.category is not None else None,
        "stock_policy": classify_category(product.category).value,
        "base_price": float(product.base_price),
        "current_stock": product.current_stock,
        "reorder_point": product.reorder_point,
        "stock_status": stock_status(product),
    }


def movement_to_dict(movement: StockMovement) -> dict[str, Any]:
    return {
        "stock_movement_id": movement.id,
        "product_id": movement.product_id,
        "quantity_delta": movement.quantity_delta,
        "quantity_before": movement.quantity_before,
        "quantity_after": movement.quantity_after,
        "movement_type": movement.movement_type,
        "reference_order_id": movement.reference_order_id,
        "reason": movement.reason,
        "performed_by": movement.performed_by,
        "created_at": iso(movement.created_at),
    }
