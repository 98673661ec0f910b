import datetime as dt
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from rentledger.models.common import new_id
from rentledger.models.core import MergeState, PaymentStatus


class Item(BaseModel):
    name: str
    quantity: float = 1
    price: Decimal = Decimal("0")
    remarks: Optional[str] = None


class EventFunction(BaseModel):
    # functions carry free-form fields (venue, time slot, ...) besides their items
    model_config = ConfigDict(extra="allow")
    name: str = ""
    items: list[Item] = []


class DayPlan(BaseModel):
    date: dt.date
    functions: list[EventFunction] = []


class SingleDaySchedule(BaseModel):
    kind: Literal["single"] = "single"
    date: dt.date
    items: list[Item] = []

    @property
    def event_end(self) -> dt.date:
        return self.date


class MultiDaySchedule(BaseModel):
    kind: Literal["multi"] = "multi"
    start_date: dt.date
    end_date: dt.date
    day_wise_data: list[DayPlan] = []

    @model_validator(mode="after")
    def _check_range(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self

    @property
    def event_end(self) -> dt.date:
        return self.end_date


Schedule = Annotated[Union[SingleDaySchedule, MultiDaySchedule], Field(discriminator="kind")]


class Financials(BaseModel):
    grand_total: Decimal = Decimal("0")
    advance_paid: Decimal = Decimal("0")
    balance_due: Decimal = Decimal("0")
    payment_status: PaymentStatus = PaymentStatus.PENDING
    last_payment_date: Optional[dt.date] = None
    credit_due_date: Optional[dt.date] = None


class FinancialSnapshot(Financials):
    """Reconciler output. Applied to an order as one value, never field by field."""
    model_config = ConfigDict(frozen=True)


class MergeSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)
    order_id: str
    display_code: Optional[str] = None
    order: "Order"


class Order(BaseModel):
    id: str = Field(default_factory=new_id)
    display_code: Optional[str] = None
    client_name: Optional[str] = None
    schedule: Schedule
    financials: Financials = Field(default_factory=Financials)
    notes: str = ""
    merge_state: MergeState = MergeState.NONE
    merged_into: Optional[str] = None
    merged_from: list[MergeSnapshot] = []
    merged_at: Optional[dt.datetime] = None

    def clone(self) -> "Order":
        return self.model_copy(deep=True)

    @property
    def is_multi_day(self) -> bool:
        return self.schedule.kind == "multi"

    @property
    def is_active(self) -> bool:
        return self.merge_state != MergeState.ABSORBED

    def snapshot(self) -> MergeSnapshot:
        return MergeSnapshot(order_id=self.id, display_code=self.display_code, order=self.clone())


MergeSnapshot.model_rebuild()
Order.model_rebuild()


# ── API payloads ─────────────────────────────────────────────────────────────
class OrderIn(BaseModel):
    display_code: Optional[str] = None
    client_name: Optional[str] = None
    schedule: Schedule
    grand_total: Decimal = Field(default=Decimal("0"), ge=0, max_digits=12, decimal_places=2)
    notes: str = ""


class OrderUpdate(BaseModel):
    # only fields present in the request body are applied
    client_name: Optional[str] = None
    notes: Optional[str] = None
    grand_total: Optional[Decimal] = Field(default=None, ge=0, max_digits=12, decimal_places=2)


class MergeIn(BaseModel):
    order_ids: list[str]
    base_order_id: str
    display_code: str
    # total of the merged booking; the base's total is kept when omitted
    grand_total: Optional[Decimal] = Field(default=None, ge=0, max_digits=12, decimal_places=2)


class MergeOut(BaseModel):
    order: Order
    absorbed_ids: list[str]
    skipped_ids: list[str] = []


class OrderPage(BaseModel):
    items: list[Order]
    total: int
