from collections import Counter
from datetime import date
from decimal import Decimal
from typing import Iterable

from rentledger.models.core import PaymentStatus
from rentledger.schemas.orders import Order
from rentledger.schemas.reports import OutstandingSummary, OverdueCredit
from rentledger.services.reconcile import _money


def active_orders(orders: Iterable[Order]) -> list[Order]:
    """Orders that show up in listings: absorbed orders are represented by their merged order."""
    return [o for o in orders if o.is_active]


def outstanding_summary(orders: Iterable[Order]) -> OutstandingSummary:
    visible = active_orders(orders)
    statuses = Counter(o.financials.payment_status.value for o in visible)
    return OutstandingSummary(
        orders_count=len(visible),
        grand_total=_money(sum((o.financials.grand_total for o in visible), Decimal("0"))),
        paid=_money(sum((o.financials.advance_paid for o in visible), Decimal("0"))),
        balance_due=_money(sum((o.financials.balance_due for o in visible), Decimal("0"))),
        by_status={s.value: statuses.get(s.value, 0) for s in PaymentStatus},
    )


def overdue_credits(orders: Iterable[Order], today: date) -> list[OverdueCredit]:
    """Active orders still owing money after their credit due date, oldest first."""
    rows = []
    for o in active_orders(orders):
        fin = o.financials
        if fin.balance_due > 0 and fin.credit_due_date and fin.credit_due_date < today:
            rows.append(OverdueCredit(
                order_id=o.id,
                display_code=o.display_code,
                client_name=o.client_name,
                balance_due=_money(fin.balance_due),
                credit_due_date=fin.credit_due_date,
                days_overdue=(today - fin.credit_due_date).days,
            ))
    rows.sort(key=lambda r: (r.credit_due_date, r.order_id))
    return rows
