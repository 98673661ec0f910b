# test_reconcile.py
import asyncio
from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError as SchemaError

from rentledger.errors import InvalidState, NotFound, PersistenceError, ValidationError
from rentledger.models.core import MergeState, PaymentStatus
from rentledger.schemas.orders import OrderUpdate
from rentledger.schemas.payments import Payment, PaymentIn, PaymentUpdate
from rentledger.services.merge import merge, merge_by_ids, unmerge_by_id
from rentledger.services.orders import update_order
from rentledger.services.payments import delete_payment, edit_payment, record_payment
from rentledger.services.reconcile import add_months, reconcile, reconcile_order, related_order_ids
from rentledger.store import MemoryStore

DAY1 = date(2026, 3, 1)
DAY2 = date(2026, 3, 5)


def pay(order_id, amount, on=DAY1, **kw):
    return Payment(order_id=order_id, amount=Decimal(str(amount)), date=on, **kw)


def test_add_months_clamps_to_month_end():
    assert add_months(date(2026, 3, 14), 1) == date(2026, 4, 14)
    assert add_months(date(2026, 12, 20), 1) == date(2027, 1, 20)
    assert add_months(date(2027, 1, 31), 1) == date(2027, 2, 28)
    assert add_months(date(2028, 1, 31), 1) == date(2028, 2, 29)
    assert add_months(date(2026, 5, 31), 1) == date(2026, 6, 30)


def test_two_payments_partial(make_single):
    order = make_single("FP001", total="10000", on=date(2026, 3, 14))
    snap = reconcile(order, [pay(order.id, 3000, DAY1), pay(order.id, 2000, DAY2)])

    assert snap.advance_paid == Decimal("5000")
    assert snap.balance_due == Decimal("5000")
    assert snap.payment_status == PaymentStatus.PARTIAL
    assert snap.last_payment_date == DAY2
    assert snap.credit_due_date == date(2026, 4, 14)
    assert snap.grand_total == Decimal("10000")


def test_reconcile_is_idempotent(make_single):
    order = make_single("FP002", total="4500")
    payments = [pay(order.id, 1200, DAY2), pay(order.id, 300, DAY1)]

    assert reconcile(order, payments) == reconcile(order, payments)
    assert reconcile(order, payments) == reconcile(order, list(reversed(payments)))


def test_no_payments_is_pending_and_clears_last_date(make_single):
    order = make_single("FP003", total="800")
    order.financials.last_payment_date = DAY1  # stale value from an earlier state

    snap = reconcile(order, [])

    assert snap.advance_paid == 0
    assert snap.balance_due == Decimal("800")
    assert snap.payment_status == PaymentStatus.PENDING
    assert snap.last_payment_date is None


def test_balance_decreases_by_payment_until_zero(make_single):
    order = make_single("FP004", total="1000")
    payments = []
    previous = reconcile(order, payments).balance_due
    for amount in ["150", "250.50", "99.50", "400", "300"]:
        payments.append(pay(order.id, amount))
        current = reconcile(order, payments).balance_due
        assert current <= previous
        assert current == max(Decimal("0"), previous - Decimal(amount))
        previous = current
    assert previous == 0


@pytest.mark.parametrize(
    "total, amounts, status",
    [
        ("1000", [], PaymentStatus.PENDING),
        ("1000", ["1"], PaymentStatus.PARTIAL),
        ("1000", ["999.99"], PaymentStatus.PARTIAL),
        ("1000", ["1000"], PaymentStatus.PAID),
        ("1000", ["600", "600"], PaymentStatus.PAID),
    ],
)
def test_status_matches_balance(make_single, total, amounts, status):
    order = make_single("FP005", total=total)
    snap = reconcile(order, [pay(order.id, a) for a in amounts])

    assert snap.payment_status == status
    assert (snap.payment_status == PaymentStatus.PAID) == (snap.balance_due == 0)
    assert (snap.payment_status == PaymentStatus.PENDING) == (snap.advance_paid == 0)
    if status == PaymentStatus.PAID:
        assert snap.credit_due_date is None
    else:
        assert snap.credit_due_date is not None


def test_credit_due_date_uses_event_end_for_multi_day(make_multi):
    order = make_multi("FP006", [], start=date(2026, 1, 29), end=date(2026, 1, 31), total="5000")
    snap = reconcile(order, [pay(order.id, 1000)])

    assert snap.credit_due_date == date(2026, 2, 28)


def test_related_ids_cover_merged_sources(make_single):
    a = make_single("A", total="100")
    b = make_single("B", total="200")
    store = MemoryStore([a, b])
    result = asyncio.run(merge(store, [a, b], a.id, "AB"))

    assert related_order_ids(result.merged) == {a.id, b.id}


# ── reconcile_order / payment ledger over a store ───────────────────────────

def test_payment_lifecycle_scenario(store, locks, make_single):
    order = make_single("FP010", total="10000", on=date(2026, 3, 14))

    async def scenario():
        await store.put_order(order)
        _, _ = await record_payment(store, PaymentIn(order_id=order.id, amount=Decimal("3000"), date=DAY1), locks=locks)
        p2, after_two = await record_payment(
            store, PaymentIn(order_id=order.id, amount=Decimal("2000"), date=DAY2), locks=locks
        )
        after_delete = await delete_payment(store, p2.id, locks=locks)
        _, after_full = await record_payment(
            store, PaymentIn(order_id=order.id, amount=Decimal("7000"), date=date(2026, 3, 9)), locks=locks
        )
        return after_two, after_delete, after_full

    after_two, after_delete, after_full = asyncio.run(scenario())

    assert after_two.financials.advance_paid == Decimal("5000")
    assert after_two.financials.balance_due == Decimal("5000")
    assert after_two.financials.payment_status == PaymentStatus.PARTIAL
    assert after_two.financials.last_payment_date == DAY2

    assert after_delete.financials.advance_paid == Decimal("3000")
    assert after_delete.financials.balance_due == Decimal("7000")
    assert after_delete.financials.payment_status == PaymentStatus.PARTIAL
    assert after_delete.financials.last_payment_date == DAY1

    assert after_full.financials.balance_due == 0
    assert after_full.financials.payment_status == PaymentStatus.PAID
    assert after_full.financials.credit_due_date is None

    stored = store.orders[order.id]
    assert stored.financials == after_full.financials
    assert sum(p.amount for p in store.payments.values()) == stored.financials.advance_paid


def test_edit_to_full_amount_clears_credit_due_date(store, locks, make_single):
    order = make_single("FP011", total="2000")

    async def scenario():
        await store.put_order(order)
        p, partial = await record_payment(
            store, PaymentIn(order_id=order.id, amount=Decimal("500"), date=DAY1), locks=locks
        )
        _, full = await edit_payment(store, p.id, PaymentUpdate(amount=Decimal("2000")), locks=locks)
        _, back = await edit_payment(store, p.id, PaymentUpdate(amount=Decimal("1500")), locks=locks)
        return partial, full, back

    partial, full, back = asyncio.run(scenario())

    assert partial.financials.credit_due_date is not None
    assert full.financials.payment_status == PaymentStatus.PAID
    assert full.financials.credit_due_date is None
    assert back.financials.balance_due == Decimal("500")
    assert back.financials.credit_due_date == partial.financials.credit_due_date


def test_edit_without_amount_change_skips_reconcile(store, locks, make_single):
    order = make_single("FP012", total="900")

    async def scenario():
        await store.put_order(order)
        p, _ = await record_payment(store, PaymentIn(order_id=order.id, amount=Decimal("100"), date=DAY1), locks=locks)
        return await edit_payment(store, p.id, PaymentUpdate(notes="cheque no. 4411"), locks=locks)

    saved, updated = asyncio.run(scenario())

    assert saved.notes == "cheque no. 4411"
    assert updated.financials.advance_paid == Decimal("100")
    assert [e["action"] for e in store.audit_log].count("RECONCILE") == 1


def test_invalid_payment_amount(store, locks, make_single):
    order = make_single("FP013", total="900")
    asyncio.run(store.put_order(order))

    for bad in ["0", "-10"]:
        with pytest.raises(ValidationError) as exc:
            asyncio.run(record_payment(
                store, PaymentIn(order_id=order.id, amount=Decimal(bad), date=DAY1), locks=locks
            ))
        assert exc.value.operation == "record_payment"
    assert store.payments == {}


def test_payment_for_unknown_order(store, locks):
    with pytest.raises(NotFound) as exc:
        asyncio.run(record_payment(
            store, PaymentIn(order_id="missing", amount=Decimal("10"), date=DAY1), locks=locks
        ))
    assert exc.value.entity_id == "missing"


def test_merged_order_counts_source_payments(store, locks, make_single):
    a = make_single("A1", total="3000")
    b = make_single("B1", total="2000")

    async def scenario():
        await store.put_order(a)
        await store.put_order(b)
        await record_payment(store, PaymentIn(order_id=a.id, amount=Decimal("1000"), date=DAY1), locks=locks)
        pb, _ = await record_payment(store, PaymentIn(order_id=b.id, amount=Decimal("500"), date=DAY2), locks=locks)
        result = await merge_by_ids(store, [a.id, b.id], a.id, "AB1", locks=locks)
        result.merged.financials.grand_total = Decimal("5000")
        await store.put_order(result.merged)
        reconciled = await reconcile_order(store, a.id, locks=locks)
        # deleting a payment that still points at the absorbed order updates the merged one
        after_delete = await delete_payment(store, pb.id, locks=locks)
        return reconciled, after_delete

    reconciled, after_delete = asyncio.run(scenario())

    assert reconciled.financials.advance_paid == Decimal("1500")
    assert reconciled.financials.balance_due == Decimal("3500")
    assert reconciled.financials.last_payment_date == DAY2
    assert after_delete.id == a.id
    assert after_delete.financials.advance_paid == Decimal("1000")
    assert store.orders[b.id].financials.advance_paid == Decimal("500")  # absorbed copy untouched


def test_absorbed_order_is_not_reconciled_directly(store, locks, make_single):
    a = make_single("A2")
    b = make_single("B2")

    async def scenario():
        await store.put_order(a)
        await store.put_order(b)
        await merge(store, [a, b], a.id, "AB2", locks=locks)
        await reconcile_order(store, b.id, locks=locks)

    with pytest.raises(InvalidState) as exc:
        asyncio.run(scenario())
    assert exc.value.entity_id == b.id


class FailingStore(MemoryStore):
    async def put_order(self, order):
        raise PersistenceError("write rejected", operation="put_order", entity_id=order.id)


def test_failed_write_keeps_stored_financials(locks, make_single):
    order = make_single("FP020", total="1000")
    store = FailingStore([order])
    asyncio.run(store.put_payment(pay(order.id, 400)))

    with pytest.raises(PersistenceError) as exc:
        asyncio.run(reconcile_order(store, order.id, locks=locks))

    assert exc.value.retryable
    assert store.orders[order.id].financials.advance_paid == 0
    assert store.orders[order.id].financials.balance_due == Decimal("1000")


class YieldingStore(MemoryStore):
    """Suspends on every order read, like a remote store would."""

    async def get_order(self, order_id):
        await asyncio.sleep(0)
        return await super().get_order(order_id)


@pytest.mark.parametrize("action", ["edit", "delete"])
def test_payment_follows_owner_changed_by_concurrent_unmerge(locks, make_single, action):
    a = make_single("A3", total="100")
    b = make_single("B3", total="2000")
    store = YieldingStore([a, b])

    async def scenario():
        pb, _ = await record_payment(store, PaymentIn(order_id=b.id, amount=Decimal("400"), date=DAY1), locks=locks)
        await merge_by_ids(store, [a.id, b.id], a.id, "AB3", locks=locks)
        # the unmerge holds its locks first; the payment change resolves its owner
        # while the order is still absorbed and has to wait behind it
        if action == "edit":
            change = edit_payment(store, pb.id, PaymentUpdate(amount=Decimal("900")), locks=locks)
        else:
            change = delete_payment(store, pb.id, locks=locks)
        return await asyncio.gather(unmerge_by_id(store, a.id, locks=locks), change)

    _, outcome = asyncio.run(scenario())
    owner = outcome[1] if action == "edit" else outcome

    b_after = store.orders[b.id]
    assert owner.id == b.id
    assert b_after.merge_state == MergeState.NONE
    assert b_after.financials.advance_paid == sum(
        (p.amount for p in store.payments.values() if p.order_id == b.id), Decimal("0")
    )
    assert store.orders[a.id].financials.advance_paid == 0


def test_edit_can_clear_optional_payment_fields(store, locks, make_single):
    order = make_single("FP014", total="900")

    async def scenario():
        await store.put_order(order)
        p, _ = await record_payment(store, PaymentIn(
            order_id=order.id, amount=Decimal("100"), date=DAY1, transaction_ref="UTR-88", notes="first part",
        ), locks=locks)
        return await edit_payment(store, p.id, PaymentUpdate(transaction_ref=None, notes=None), locks=locks)

    saved, _ = asyncio.run(scenario())

    assert saved.transaction_ref is None
    assert saved.notes is None
    assert saved.amount == Decimal("100")


@pytest.mark.parametrize("field", ["amount", "date", "method"])
def test_edit_cannot_clear_required_payment_fields(store, locks, make_single, field):
    order = make_single("FP015", total="900")

    async def scenario():
        await store.put_order(order)
        p, _ = await record_payment(store, PaymentIn(order_id=order.id, amount=Decimal("100"), date=DAY1), locks=locks)
        await edit_payment(store, p.id, PaymentUpdate(**{field: None}), locks=locks)

    with pytest.raises(ValidationError) as exc:
        asyncio.run(scenario())
    assert exc.value.operation == "edit_payment"
    assert [p.amount for p in store.payments.values()] == [Decimal("100")]


def test_payment_amount_is_limited_to_cents():
    with pytest.raises(SchemaError):
        PaymentIn(order_id="x", amount=Decimal("0.004"), date=DAY1)
    with pytest.raises(SchemaError):
        PaymentUpdate(amount=Decimal("12.345"))
    assert PaymentIn(order_id="x", amount=Decimal("12.30"), date=DAY1).amount == Decimal("12.3")


def test_update_order_total_reconciles(store, locks, make_single):
    order = make_single("FP016", total="1000")

    async def scenario():
        await store.put_order(order)
        await record_payment(store, PaymentIn(order_id=order.id, amount=Decimal("1000"), date=DAY1), locks=locks)
        renamed = await update_order(store, order.id, OrderUpdate(client_name="Kapoor"), locks=locks)
        raised = await update_order(store, order.id, OrderUpdate(grand_total=Decimal("2500")), locks=locks)
        return renamed, raised

    renamed, raised = asyncio.run(scenario())

    assert renamed.client_name == "Kapoor"
    assert renamed.financials.payment_status == PaymentStatus.PAID
    assert raised.client_name == "Kapoor"
    assert raised.financials.balance_due == Decimal("1500")
    assert raised.financials.payment_status == PaymentStatus.PARTIAL
    assert store.orders[order.id].financials == raised.financials
    assert [e["action"] for e in store.audit_log].count("RECONCILE") == 2


def test_update_order_rejects_absorbed_and_cleared_total(store, locks, make_single):
    a, b = make_single("A4"), make_single("B4")

    async def scenario():
        await store.put_order(a)
        await store.put_order(b)
        await merge(store, [a, b], a.id, "AB4", locks=locks)
        await update_order(store, b.id, OrderUpdate(notes="late change"), locks=locks)

    with pytest.raises(InvalidState) as exc:
        asyncio.run(scenario())
    assert exc.value.entity_id == b.id
    with pytest.raises(ValidationError):
        asyncio.run(update_order(store, a.id, OrderUpdate(grand_total=None), locks=locks))
