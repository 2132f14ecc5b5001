"""Money arithmetic for order lines, orders and dining sessions."""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, Optional

from barpos.errors import ValidationError
from barpos.models import OrderStatus
from barpos.utils import money

PERCENTAGE = "percentage"
FIXED_AMOUNT = "fixed_amount"


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal

    def as_dict(self) -> dict:
        return {
            "subtotal": float(self.subtotal),
            "discount_amount": float(self.discount_amount),
            "tax_amount": float(self.tax_amount),
            "total_amount": float(self.total_amount),
        }


def line_total(quantity: int, unit_price: Any, discount_amount: Any = 0, is_complimentary: bool = False) -> Decimal:
    if is_complimentary:
        return money(0)
    total = money(unit_price) * quantity - money(discount_amount)
    return max(money(0), money(total))


def discount_for(subtotal: Decimal, discount_type: Optional[str], discount_value: Any, strict: bool = True) -> Decimal:
    """Discount amount for ``subtotal``.

    ``strict`` rejects out-of-range values; otherwise they are clamped to
    ``0..100`` percent or ``0..subtotal``.
    """
    if not discount_type or discount_value is None:
        return money(0)
    value = Decimal(str(discount_value))
    if discount_type == PERCENTAGE:
        if strict and (value < 0 or value > 100):
            raise ValidationError("Discount percentage must be between 0 and 100")
        return money(subtotal * min(max(value, Decimal("0")), Decimal("100")) / 100)
    if discount_type == FIXED_AMOUNT:
        if strict and (value < 0 or value > subtotal):
            raise ValidationError("Discount amount cannot exceed the order subtotal")
        return money(min(max(value, Decimal("0")), subtotal))
    raise ValidationError(f"Unknown discount type '{discount_type}'")


def order_totals(
    lines: Iterable[Any],
    discount_type: Optional[str] = None,
    discount_value: Any = None,
    tax_rate: Any = 0,
    strict: bool = True,
) -> Totals:
    subtotal = money(
        sum(
            (line_total(line.quantity, line.unit_price, line.discount_amount, line.is_complimentary)
             for line in lines),
            Decimal("0"),
        )
    )
    discount = discount_for(subtotal, discount_type, discount_value, strict)
    taxable = subtotal - discount
    tax = money(taxable * Decimal(str(tax_rate))) if tax_rate else money(0)
    total = max(money(0), money(taxable + tax))
    return Totals(subtotal, discount, tax, total)


def session_totals(orders: Iterable[Any]) -> Totals:
    """Sum the stored totals of every order that is not voided."""
    subtotal = discount = tax = total = Decimal("0")
    for order in orders:
        if order.status == OrderStatus.VOIDED.value:
            continue
        subtotal += money(order.subtotal)
        discount += money(order.discount_amount)
        tax += money(order.tax_amount)
        total += money(order.total_amount)
    return Totals(money(subtotal), money(discount), money(tax), money(total))


def change_due(total: Any, amount_tendered: Any) -> Optional[Decimal]:
    if amount_tendered is None:
        return None
    return max(money(0), money(money(amount_tendered) - money(total)))
