from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from barpos.db import Base

ID_TYPE = BigInteger().with_variant(Integer, "sqlite")
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")
MONEY = Numeric(12, 2)


class Destination(str, Enum):
    KITCHEN = "kitchen"
    BARTENDER = "bartender"
    BOTH = "both"


class StockPolicy(str, Enum):
    STRICT = "strict"
    FLEXIBLE = "flexible"


class SessionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    ABANDONED = "abandoned"


class OrderStatus(str, Enum):
    DRAFT = "draft"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    SERVED = "served"
    COMPLETED = "completed"
    VOIDED = "voided"


class TicketStatus(str, Enum):
    PENDING = "pending"
    PREPARING = "preparing"
    READY = "ready"
    SERVED = "served"


class TableStatus(str, Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    OCCUPIED = "occupied"
    CLEANING = "cleaning"


class MovementType(str, Enum):
    SALE = "sale"
    RETURN = "return"
    ADJUSTMENT = "adjustment"


class Category(Base):
    __tablename__ = "category"
    __table_args__ = (
        CheckConstraint(
            "default_destination IS NULL OR default_destination IN ('kitchen', 'bartender', 'both')",
            name="category_destination",
        ),
        CheckConstraint(
            "stock_policy IS NULL OR stock_policy IN ('strict', 'flexible')",
            name="category_stock_policy",
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    default_destination: Mapped[str | None] = mapped_column(Text)
    stock_policy: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Product(Base):
    __tablename__ = "product"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    category_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("category.id"))
    name: Mapped[str] = mapped_column(Text, nullable=False)
    sku: Mapped[str | None] = mapped_column(Text)
    base_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    current_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reorder_point: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    category: Mapped[Category | None] = relationship(lazy="joined")


class Package(Base):
    __tablename__ = "package"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    items: Mapped[list["PackageItem"]] = relationship(
        back_populates="package", order_by="PackageItem.id", cascade="all, delete-orphan"
    )


class PackageItem(Base):
    __tablename__ = "package_item"
    __table_args__ = (CheckConstraint("quantity > 0", name="package_item_quantity_positive"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    package_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("package.id"), nullable=False)
    product_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("product.id"), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    package: Mapped[Package] = relationship(back_populates="items")
    product: Mapped[Product] = relationship(lazy="joined")


class Customer(Base):
    __tablename__ = "customer"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    full_name: Mapped[str] = mapped_column(Text, nullable=False)
    phone: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class DiningTable(Base):
    __tablename__ = "dining_table"
    __table_args__ = (
        CheckConstraint(
            "status IN ('available', 'reserved', 'occupied', 'cleaning')", name="dining_table_status"
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    table_number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False, default=4)
    area: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, default=TableStatus.AVAILABLE.value)
    # Plain column rather than a foreign key: session and table reference each other.
    current_session_id: Mapped[int | None] = mapped_column(BigInteger)
    notes: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class OrderSession(Base):
    __tablename__ = "order_session"
    __table_args__ = (
        Index(
            "ix_order_session_one_open_per_table",
            "table_id",
            unique=True,
            postgresql_where=text("status = 'open'"),
            sqlite_where=text("status = 'open'"),
        ),
        CheckConstraint("status IN ('open', 'closed', 'abandoned')", name="order_session_status"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    session_number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    table_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("dining_table.id"), nullable=False)
    customer_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("customer.id"))
    status: Mapped[str] = mapped_column(Text, nullable=False, default=SessionStatus.OPEN.value)
    subtotal: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    discount_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    notes: Mapped[str | None] = mapped_column(Text)
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    opened_by: Mapped[int | None] = mapped_column(BigInteger)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    closed_by: Mapped[int | None] = mapped_column(BigInteger)

    table: Mapped[DiningTable] = relationship()
    customer: Mapped[Customer | None] = relationship()
    orders: Mapped[list["Order"]] = relationship(back_populates="session", order_by="Order.id")


class Order(Base):
    __tablename__ = "pos_order"
    __table_args__ = (
        CheckConstraint(
            "status IN ('draft', 'confirmed', 'preparing', 'ready', 'served', 'completed', 'voided')",
            name="pos_order_status",
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    order_number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    session_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("order_session.id"))
    table_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("dining_table.id"))
    customer_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("customer.id"))
    cashier_id: Mapped[int | None] = mapped_column(BigInteger)
    status: Mapped[str] = mapped_column(Text, nullable=False, default=OrderStatus.DRAFT.value)
    subtotal: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    discount_type: Mapped[str | None] = mapped_column(Text)
    discount_value: Mapped[Decimal | None] = mapped_column(MONEY)
    discount_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    tax_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    payment_method: Mapped[str | None] = mapped_column(Text)
    amount_tendered: Mapped[Decimal | None] = mapped_column(MONEY)
    change_amount: Mapped[Decimal | None] = mapped_column(MONEY)
    payment_reference: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    voided_reason: Mapped[str | None] = mapped_column(Text)
    voided_by: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    voided_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    session: Mapped[OrderSession | None] = relationship(back_populates="orders")
    items: Mapped[list["OrderItem"]] = relationship(
        back_populates="order", order_by="OrderItem.id", cascade="all, delete-orphan"
    )
    tickets: Mapped[list["PrepTicket"]] = relationship(
        back_populates="order", order_by="PrepTicket.id", cascade="all, delete-orphan"
    )


class OrderItem(Base):
    __tablename__ = "order_item"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="order_item_quantity_positive"),
        CheckConstraint(
            "(product_id IS NULL) <> (package_id IS NULL)", name="order_item_product_xor_package"
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("pos_order.id"), nullable=False)
    product_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("product.id"))
    package_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("package.id"))
    item_name: Mapped[str] = mapped_column(Text, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    total: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    is_complimentary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notes: Mapped[str | None] = mapped_column(Text)

    order: Mapped[Order] = relationship(back_populates="items")
    product: Mapped[Product | None] = relationship()
    package: Mapped[Package | None] = relationship()


class PrepTicket(Base):
    __tablename__ = "prep_ticket"
    __table_args__ = (
        CheckConstraint("destination IN ('kitchen', 'bartender', 'both')", name="prep_ticket_destination"),
        CheckConstraint(
            "status IN ('pending', 'preparing', 'ready', 'served')", name="prep_ticket_status"
        ),
        Index("ix_prep_ticket_feed", "destination", "status"),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("pos_order.id"), nullable=False)
    order_item_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("order_item.id"), nullable=False)
    product_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("product.id"))
    package_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("package.id"))
    product_name: Mapped[str] = mapped_column(Text, nullable=False)
    package_name: Mapped[str | None] = mapped_column(Text)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    destination: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default=TicketStatus.PENDING.value)
    special_instructions: Mapped[str | None] = mapped_column(Text)
    is_urgent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    prepared_by: Mapped[int | None] = mapped_column(BigInteger)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    ready_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    served_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    order: Mapped[Order] = relationship(back_populates="tickets")


class StockMovement(Base):
    __tablename__ = "stock_movement"
    __table_args__ = (
        Index(
            "ix_stock_movement_one_sale_per_order_product",
            "reference_order_id",
            "product_id",
            unique=True,
            postgresql_where=text("movement_type = 'sale'"),
            sqlite_where=text("movement_type = 'sale'"),
        ),
        CheckConstraint(
            "movement_type IN ('sale', 'return', 'adjustment')", name="stock_movement_type"
        ),
    )

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    product_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("product.id"), nullable=False)
    quantity_delta: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_before: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_after: Mapped[int] = mapped_column(Integer, nullable=False)
    movement_type: Mapped[str] = mapped_column(Text, nullable=False)
    reference_order_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey("pos_order.id"))
    reason: Mapped[str | None] = mapped_column(Text)
    performed_by: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class AuditLog(Base):
    __tablename__ = "audit_log"
    __table_args__ = (Index("ix_audit_log_action_created", "action", "created_at"),)

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    entity_type: Mapped[str] = mapped_column(Text, nullable=False)
    entity_id: Mapped[int | None] = mapped_column(BigInteger)
    severity: Mapped[str] = mapped_column(Text, nullable=False, default="info")
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict | None] = mapped_column(JSON_TYPE)
    performed_by: Mapped[int | None] = mapped_column(BigInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Notification(Base):
    __tablename__ = "notification"

    id: Mapped[int] = mapped_column(ID_TYPE, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[str] = mapped_column(Text, nullable=False, default="normal")
    role: Mapped[str | None] = mapped_column(Text)
    user_id: Mapped[int | None] = mapped_column(BigInteger)
    reference_id: Mapped[int | None] = mapped_column(BigInteger)
    reference_table: Mapped[str | None] = mapped_column(Text)
    data: Mapped[dict | None] = mapped_column(JSON_TYPE)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
