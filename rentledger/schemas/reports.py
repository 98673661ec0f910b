import datetime as dt
from decimal import Decimal
from pydantic import BaseModel
from typing import Optional

class OutstandingSummary(BaseModel):
    orders_count: int
    grand_total: Decimal
    paid: Decimal
    balance_due: Decimal
    by_status: dict[str, int]

class OverdueCredit(BaseModel):
    order_id: str
    display_code: Optional[str] = None
    client_name: Optional[str] = None
    balance_due: Decimal
    credit_due_date: dt.date
    days_overdue: int
