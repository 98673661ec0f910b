import calendar
import logging
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

from rentledger.config import settings
from rentledger.errors import InvalidState
from rentledger.models.core import MergeState, PaymentStatus
from rentledger.schemas.orders import FinancialSnapshot, Financials, Order
from rentledger.schemas.payments import Payment
from rentledger.store import OrderStore
from rentledger.util.locks import OrderLocks, order_locks

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


def _money(x) -> Decimal:
    # use string to avoid float binary artifacts
    return Decimal(str(x or 0)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def add_months(d: date, months: int) -> date:
    """Same day-of-month `months` later, clamped to the end of a shorter month
    (31 Jan + 1 month -> 28/29 Feb)."""
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    day = min(d.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def payment_status(grand_total: Decimal, advance_paid: Decimal, balance_due: Decimal) -> PaymentStatus:
    if balance_due <= 0:
        return PaymentStatus.PAID
    if 0 < advance_paid < grand_total:
        return PaymentStatus.PARTIAL
    return PaymentStatus.PENDING


def credit_due_date(order: Order, months: int | None = None) -> date:
    return add_months(order.schedule.event_end, settings.CREDIT_TERM_MONTHS if months is None else months)


def related_order_ids(order: Order) -> set[str]:
    """Ids whose payments count towards `order`: its own plus every merged source.
    Payments are never relinked on merge, so they keep their pre-merge order id."""
    return {order.id} | {s.order_id for s in order.merged_from}


def reconcile(order: Order, payments: Iterable[Payment]) -> FinancialSnapshot:
    """Recompute the derived financial fields of `order` from its payments.

    `payments` must already be limited to `related_order_ids(order)`. The result
    depends only on the stored grand total, the schedule and the payments, so
    calling this twice with the same inputs gives the same snapshot.
    """
    payments = list(payments)
    grand_total = _money(order.financials.grand_total)
    advance_paid = _money(sum((Decimal(str(p.amount)) for p in payments), Decimal("0")))
    balance_due = max(ZERO, _money(grand_total - advance_paid))
    last_payment = max((p.date for p in payments), default=None)

    return FinancialSnapshot(
        grand_total=grand_total,
        advance_paid=advance_paid,
        balance_due=balance_due,
        payment_status=payment_status(grand_total, advance_paid, balance_due),
        last_payment_date=last_payment,
        credit_due_date=credit_due_date(order) if balance_due > 0 else None,
    )


def apply_snapshot(order: Order, snap: FinancialSnapshot) -> Order:
    """Copy of `order` with its whole financials value replaced by `snap`."""
    updated = order.clone()
    updated.financials = Financials(**snap.model_dump())
    return updated


async def reconcile_order(store: OrderStore, order_id: str, *, locks: OrderLocks | None = None) -> Order:
    """Load, reconcile and persist one order. Callers hold no lock on `order_id`."""
    locks = locks or order_locks
    async with locks.hold(order_id):
        return await _reconcile_locked(store, order_id)


async def _reconcile_locked(store: OrderStore, order_id: str, operation: str = "reconcile") -> Order:
    order = await store.get_order(order_id)
    if order.merge_state == MergeState.ABSORBED:
        raise InvalidState(
            f"order {order_id} is absorbed into {order.merged_into}; reconcile the merged order instead",
            operation=operation, entity_id=order_id,
        )
    payments = await store.query_payments(related_order_ids(order))
    snap = reconcile(order, payments)
    updated = apply_snapshot(order, snap)
    try:
        await store.put_order(updated)
        store.audit("Order", order_id, "RECONCILE",
                    before=order.financials.model_dump(mode="json"), after=snap.model_dump(mode="json"))
        await store.commit()
    except Exception:
        await store.rollback()
        raise
    logger.info(
        "reconciled order %s: paid=%s balance=%s status=%s (%d payments)",
        order_id, snap.advance_paid, snap.balance_due, snap.payment_status.value, len(payments),
    )
    return updated
