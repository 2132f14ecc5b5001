from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    E_WALLET = "e_wallet"
    BANK_TRANSFER = "bank_transfer"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class OrderItemInput(BaseModel):
    model_config = {"json_schema_extra": {"example": {'product_id': 1, 'quantity': 2, 'notes': 'no ice'}}}
    product_id: Optional[int] = None
    package_id: Optional[int] = None
    quantity: int = Field(gt=0)
    unit_price: Optional[Decimal] = Field(default=None, ge=0)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)
    is_complimentary: bool = False
    notes: Optional[str] = None


class OrderCreate(BaseModel):
    model_config = {"json_schema_extra": {"example": {'cashier_id': 7, 'items': [{'product_id': 1, 'quantity': 2}], 'confirm': True}}}
    items: list[OrderItemInput] = Field(default_factory=list)
    cashier_id: Optional[int] = None
    customer_id: Optional[int] = None
    table_id: Optional[int] = None
    notes: Optional[str] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[Decimal] = None
    confirm: bool = True


class PaymentDetails(BaseModel):
    model_config = {"json_schema_extra": {"example": {'payment_method': 'cash', 'amount_tendered': 500.0, 'reference_number': None, 'closed_by': 7}}}
    payment_method: PaymentMethod
    amount_tendered: Optional[Decimal] = Field(default=None, ge=0)
    reference_number: Optional[str] = None
    closed_by: Optional[int] = None


class StockLine(BaseModel):
    product_id: Optional[int] = None
    package_id: Optional[int] = None
    quantity: int = Field(gt=0)
