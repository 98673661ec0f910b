import datetime as dt
from decimal import Decimal
from pydantic import BaseModel, Field
from typing import Optional

from rentledger.models.common import new_id
from rentledger.models.core import PayMethod
from rentledger.schemas.orders import Order

class PaymentIn(BaseModel):
    order_id: str
    # matches the Numeric(12, 2) column; sign is checked by the payment service
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    date: dt.date
    method: PayMethod = PayMethod.CASH
    transaction_ref: Optional[str] = None
    notes: Optional[str] = None

class Payment(PaymentIn):
    id: str = Field(default_factory=new_id)
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None

class PaymentUpdate(BaseModel):
    amount: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    date: Optional[dt.date] = None
    method: Optional[PayMethod] = None
    transaction_ref: Optional[str] = None
    notes: Optional[str] = None

class PaymentOut(BaseModel):
    payment: Optional[Payment] = None
    order: Order
