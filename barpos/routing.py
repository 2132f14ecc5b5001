"""Routing of order items to preparation stations.

A destination is resolved by an ordered chain of pure strategies: the
category's configured destination, then keyword matching on the product
name, then the kitchen. Package items are expanded into one ticket per
constituent product, keeping the package only as display metadata.
"""
import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from sqlalchemy.orm import Session

from barpos import audit
from barpos.errors import RoutingError
from barpos.models import Destination, Order, OrderItem, PrepTicket, Product, TicketStatus
from barpos.realtime import Outbox
from barpos.utils import now

logger = logging.getLogger(__name__)

BEVERAGE_KEYWORDS = (
    "beer", "wine", "whiskey", "vodka", "rum", "gin", "tequila",
    "cocktail", "mojito", "margarita", "juice", "soda", "water",
    "shake", "smoothie", "coffee", "tea", "latte", "cappuccino",
    "pale", "pilsen", "red horse", "san miguel", "bottle", "draft",
)

FOOD_KEYWORDS = (
    "sisig", "wings", "fries", "burger", "pizza", "pasta",
    "rice", "chicken", "pork", "beef", "fish", "seafood",
    "salad", "soup", "sandwich", "pulutan", "calamares",
    "lumpia", "adobo", "sinigang", "lechon", "barbecue", "grilled",
)


def _keyword_pattern(keywords: Iterable[str]) -> re.Pattern:
    # Whole words with an optional plural: "teas" matches "tea", "steak" does not.
    return re.compile(r"\b(?:" + "|".join(re.escape(k) for k in keywords) + r")(?:e?s)?\b", re.IGNORECASE)


_BEVERAGE_RE = _keyword_pattern(BEVERAGE_KEYWORDS)
_FOOD_RE = _keyword_pattern(FOOD_KEYWORDS)


@dataclass(frozen=True)
class ProductRef:
    name: str
    product_id: Optional[int] = None
    category_name: Optional[str] = None
    category_destination: Optional[str] = None

    @classmethod
    def from_product(cls, product: Product) -> "ProductRef":
        category = product.category
        return cls(
            name=product.name,
            product_id=product.id,
            category_name=category.name if category is not None else None,
            category_destination=category.default_destination if category is not None else None,
        )


@dataclass(frozen=True)
class TicketDraft:
    order_item_id: int
    product_id: Optional[int]
    product_name: str
    quantity: int
    destination: Destination
    special_instructions: Optional[str] = None
    package_id: Optional[int] = None
    package_name: Optional[str] = None


DestinationStrategy = Callable[[ProductRef], Optional[Destination]]


def from_category(product: ProductRef) -> Optional[Destination]:
    value = (product.category_destination or "").strip().lower()
    if not value:
        return None
    try:
        return Destination(value)
    except ValueError:
        logger.warning("category %r has unknown destination %r", product.category_name, value)
        return None


def from_keywords(product: ProductRef) -> Optional[Destination]:
    if _BEVERAGE_RE.search(product.name):
        return Destination.BARTENDER
    if _FOOD_RE.search(product.name):
        return Destination.KITCHEN
    return None


def to_kitchen(product: ProductRef) -> Destination:
    return Destination.KITCHEN


DESTINATION_STRATEGIES: tuple[DestinationStrategy, ...] = (from_category, from_keywords, to_kitchen)


def resolve_destination(
    product: ProductRef, strategies: Iterable[DestinationStrategy] = DESTINATION_STRATEGIES
) -> Destination:
    for strategy in strategies:
        destination = strategy(product)
        if destination is not None:
            return destination
    raise RoutingError(f"No destination resolved for {product.name}")


def package_instructions(package_name: str, per_item_quantity: int, notes: Optional[str] = None) -> str:
    text = f"Package: {package_name} (x{per_item_quantity})"
    if notes:
        text = f"{text} - {notes}"
    return text


def plan_tickets(
    item: OrderItem, strategies: Iterable[DestinationStrategy] = DESTINATION_STRATEGIES
) -> list[TicketDraft]:
    """Ticket-ready records for one order item; the item itself is never modified."""
    strategies = tuple(strategies)
    if item.package_id is not None:
        package = item.package
        if package is None:
            raise RoutingError(f"Package {item.package_id} not found")
        if not package.items:
            logger.warning("package %r has no items configured", package.name)
            return []
        drafts = []
        for package_item in package.items:
            product = package_item.product
            if product is None:
                logger.warning("package %r references a missing product", package.name)
                continue
            ref = ProductRef.from_product(product)
            drafts.append(
                TicketDraft(
                    order_item_id=item.id,
                    product_id=product.id,
                    product_name=product.name,
                    quantity=item.quantity * package_item.quantity,
                    destination=resolve_destination(ref, strategies),
                    special_instructions=package_instructions(package.name, package_item.quantity, item.notes),
                    package_id=package.id,
                    package_name=package.name,
                )
            )
        return drafts

    product = item.product
    if product is None:
        raise RoutingError(f"Product {item.product_id} not found")
    return [
        TicketDraft(
            order_item_id=item.id,
            product_id=product.id,
            product_name=product.name,
            quantity=item.quantity,
            destination=resolve_destination(ProductRef.from_product(product), strategies),
            special_instructions=item.notes or None,
        )
    ]


def route_items(
    db: Session,
    order: Order,
    items: Iterable[OrderItem],
    outbox: Optional[Outbox] = None,
) -> list[PrepTicket]:
    """Persist prep tickets for ``items``.

    Failures are recorded for reconciliation and never fail the order: an
    order may end up with zero or partial tickets.
    """
    created: list[PrepTicket] = []
    for item in items:
        try:
            with db.begin_nested():
                tickets = [
                    PrepTicket(
                        order_id=order.id,
                        order_item_id=draft.order_item_id,
                        product_id=draft.product_id,
                        package_id=draft.package_id,
                        product_name=draft.product_name,
                        package_name=draft.package_name,
                        quantity=draft.quantity,
                        destination=draft.destination.value,
                        status=TicketStatus.PENDING.value,
                        special_instructions=draft.special_instructions,
                        is_urgent=False,
                        sent_at=now(),
                    )
                    for draft in plan_tickets(item)
                ]
                db.add_all(tickets)
        except Exception as exc:
            audit.record_failure(
                db,
                audit.ROUTING_FAILED,
                "order_item",
                item.id,
                f"Routing failed for {item.item_name} on order {order.order_number}: {exc}",
                details={"order_id": order.id, "error": str(exc)},
                outbox=outbox,
            )
            continue
        for ticket in tickets:
            logger.info("routed %sx %s to %s for order %s", ticket.quantity, ticket.product_name, ticket.destination, order.id)
            if outbox is not None:
                outbox.ticket(ticket, "ticket_created")
        created.extend(tickets)
    db.expire(order, ["tickets"])
    return created
