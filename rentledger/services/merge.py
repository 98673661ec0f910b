"""Reversible order merge.

A merge rewrites the base order in place (same id) as the merged order and keeps a
full snapshot of every input order, base included, in `merged_from`. The other
inputs are kept but flagged `absorbed`, which hides them from every active listing.
`unmerge` writes the snapshots back verbatim; nothing is recomputed.

Payments are left alone: they keep pointing at the pre-merge ids and the reconciler
collects them through `related_order_ids()`. `merge` leaves the base's financials as
they were; `merge_by_ids(..., reconcile_financials=True)` recomputes them in the same
write whenever schedule content was combined or a new grand total was given.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Sequence

from rentledger.config import settings
from rentledger.errors import InvalidState, NotFound, ValidationError
from rentledger.models.core import MergeState
from rentledger.schemas.orders import MultiDaySchedule, Order, SingleDaySchedule
from rentledger.services.reconcile import _money, apply_snapshot, reconcile, related_order_ids
from rentledger.store import OrderStore
from rentledger.util.locks import OrderLocks, order_locks

logger = logging.getLogger(__name__)

NOTES_DIVIDER = "\n---\n"


@dataclass
class MergeResult:
    merged: Order
    absorbed: list[Order]
    skipped_ids: list[str] = field(default_factory=list)


def _validate(orders: Sequence[Order], base_order_id: str, new_display_code: str, policy: str) -> Order:
    if len(orders) < 2:
        raise ValidationError("at least two orders are needed to merge", operation="merge", entity_id=base_order_id)
    ids = [o.id for o in orders]
    if len(set(ids)) != len(ids):
        raise ValidationError("the same order was selected twice", operation="merge", entity_id=base_order_id)
    if not (new_display_code or "").strip():
        raise ValidationError("merged order needs a display code", operation="merge", entity_id=base_order_id)

    base = next((o for o in orders if o.id == base_order_id), None)
    if base is None:
        raise NotFound(f"base order {base_order_id} is not among the selected orders",
                       operation="merge", entity_id=base_order_id)

    for o in orders:
        if o.merge_state != MergeState.NONE:
            raise InvalidState(f"order {o.id} is already {o.merge_state.value}", operation="merge", entity_id=o.id)

    if policy == "reject":
        mixed = [o.id for o in orders if o.schedule.kind != base.schedule.kind]
        if mixed:
            raise ValidationError(
                f"cannot merge {base.schedule.kind}-day base with orders of another schedule kind: {', '.join(mixed)}",
                operation="merge", entity_id=base_order_id,
            )
    return base


def _merge_days(target: MultiDaySchedule, source: MultiDaySchedule) -> None:
    by_date = {d.date: d for d in target.day_wise_data}
    for day in source.day_wise_data:
        existing = by_date.get(day.date)
        if existing is not None:
            existing.functions.extend(f.model_copy(deep=True) for f in day.functions)
        else:
            added = day.model_copy(deep=True)
            target.day_wise_data.append(added)
            by_date[added.date] = added


def combine_orders(orders: Sequence[Order], base: Order, new_display_code: str) -> tuple[Order, list[str]]:
    """Build the merged order without touching the store.

    Returns the merged order and the ids of inputs whose schedule kind differs from
    the base; those contribute no schedule content (they remain in the snapshots).
    """
    others = [o for o in orders if o.id != base.id]

    merged = base.clone()
    merged.display_code = new_display_code
    merged.merge_state = MergeState.MERGED
    merged.merged_into = None
    merged.merged_from = [o.snapshot() for o in orders]
    merged.merged_at = datetime.now(timezone.utc)

    skipped: list[str] = []
    for other in others:
        if isinstance(merged.schedule, SingleDaySchedule) and isinstance(other.schedule, SingleDaySchedule):
            merged.schedule.items.extend(i.model_copy(deep=True) for i in other.schedule.items)
        elif isinstance(merged.schedule, MultiDaySchedule) and isinstance(other.schedule, MultiDaySchedule):
            _merge_days(merged.schedule, other.schedule)
        else:
            skipped.append(other.id)

    notes = [o.notes for o in orders if o.notes and o.notes.strip()]
    if notes:
        merged.notes = NOTES_DIVIDER.join(notes)
    return merged, skipped


def _absorbed_copy(order: Order, merged_into: str) -> Order:
    src = order.clone()
    src.merge_state = MergeState.ABSORBED
    src.merged_into = merged_into
    return src


async def merge(
    store: OrderStore,
    orders: Sequence[Order],
    base_order_id: str,
    new_display_code: str,
    *,
    locks: OrderLocks | None = None,
    policy: str | None = None,
) -> MergeResult:
    """Merge `orders` into the order `base_order_id`, keeping it reversible.

    The orders are taken as given; use `merge_by_ids` to read them under the lock.
    """
    locks = locks or order_locks
    async with locks.hold(*(o.id for o in orders)):
        return await _merge_locked(store, orders, base_order_id, new_display_code, policy)


async def merge_by_ids(
    store: OrderStore,
    order_ids: Sequence[str],
    base_order_id: str,
    new_display_code: str,
    *,
    locks: OrderLocks | None = None,
    policy: str | None = None,
    grand_total: Decimal | None = None,
    reconcile_financials: bool = False,
) -> MergeResult:
    """Read the orders under the lock and merge them.

    With `reconcile_financials` the merged order's financials are recomputed from
    the payments of every source before anything is written. `grand_total`, when
    given, replaces the base's total first.
    """
    locks = locks or order_locks
    async with locks.hold(*order_ids):
        orders = [await store.get_order(oid) for oid in order_ids]
        return await _merge_locked(store, orders, base_order_id, new_display_code, policy,
                                   grand_total=grand_total, reconcile_financials=reconcile_financials)


async def _merge_locked(store, orders, base_order_id, new_display_code, policy,
                        grand_total=None, reconcile_financials=False) -> MergeResult:
    policy = policy or settings.MIXED_SCHEDULE_POLICY
    new_display_code = (new_display_code or "").strip()
    base = _validate(orders, base_order_id, new_display_code, policy)
    merged, skipped = combine_orders(orders, base, new_display_code)
    if skipped:
        logger.warning(
            "merge %s: orders %s have a different schedule kind than base %s; their items were not combined",
            new_display_code, ", ".join(skipped), base.id,
        )

    if grand_total is not None:
        merged.financials.grand_total = _money(grand_total)
    combined = len(orders) - 1 > len(skipped)
    reconciled = reconcile_financials and (combined or grand_total is not None)

    absorbed = [_absorbed_copy(o, new_display_code) for o in orders if o.id != base.id]
    try:
        if reconciled:
            payments = await store.query_payments(related_order_ids(merged))
            merged = apply_snapshot(merged, reconcile(merged, payments))
        await store.put_order(merged)
        for src in absorbed:
            await store.put_order(src)
        store.audit("Order", merged.id, "MERGE",
                    before={"order_ids": [o.id for o in orders]},
                    after={"display_code": new_display_code, "skipped_ids": skipped,
                           "financials": merged.financials.model_dump(mode="json") if reconciled else None})
        await store.commit()
    except Exception:
        await store.rollback()
        raise

    logger.info("merged %d orders into %s (%s)", len(orders), new_display_code, merged.id)
    return MergeResult(merged=merged, absorbed=absorbed, skipped_ids=skipped)


def _check_merged(order: Order, operation: str) -> None:
    if order.merge_state != MergeState.MERGED or not order.merged_from:
        raise InvalidState(f"order {order.id} is not a merged order", operation=operation, entity_id=order.id)


def restored_copy(snapshot_order: Order) -> Order:
    order = snapshot_order.clone()
    order.merge_state = MergeState.NONE
    order.merged_into = None
    order.merged_from = []
    order.merged_at = None
    return order


async def unmerge(store: OrderStore, merged_order: Order, *, locks: OrderLocks | None = None) -> list[Order]:
    """Write every snapshot of `merged_order` back under its original id.

    Edits and payments made after the merge are not replayed onto the restored orders.
    """
    _check_merged(merged_order, "unmerge")
    locks = locks or order_locks
    async with locks.hold(merged_order.id, *(s.order_id for s in merged_order.merged_from)):
        return await _unmerge_locked(store, merged_order)


async def unmerge_by_id(store: OrderStore, order_id: str, *, locks: OrderLocks | None = None) -> list[Order]:
    locks = locks or order_locks
    async with locks.hold(order_id):
        merged_order = await store.get_order(order_id)
    _check_merged(merged_order, "unmerge")
    async with locks.hold(order_id, *(s.order_id for s in merged_order.merged_from)):
        # re-read under the full lock set; another unmerge may have won the race
        merged_order = await store.get_order(order_id)
        _check_merged(merged_order, "unmerge")
        return await _unmerge_locked(store, merged_order)


async def _unmerge_locked(store: OrderStore, merged_order: Order) -> list[Order]:
    restored = [restored_copy(s.order) for s in merged_order.merged_from]
    try:
        for order in restored:
            await store.put_order(order)
        store.audit("Order", merged_order.id, "UNMERGE",
                    before={"display_code": merged_order.display_code},
                    after={"order_ids": [o.id for o in restored]})
        await store.commit()
    except Exception:
        await store.rollback()
        raise

    logger.info("unmerged %s into %d orders", merged_order.display_code, len(restored))
    return restored


async def complete_merge(store: OrderStore, merged_order: Order, *, locks: OrderLocks | None = None) -> list[Order]:
    """Re-run the absorption step of a merge that stopped after writing the target.

    Sources are rebuilt from the snapshots, so running this any number of times
    leaves the same documents behind.
    """
    _check_merged(merged_order, "complete_merge")
    locks = locks or order_locks
    sources = [s.order for s in merged_order.merged_from if s.order_id != merged_order.id]
    async with locks.hold(*(o.id for o in sources)):
        absorbed = [_absorbed_copy(restored_copy(o), merged_order.display_code) for o in sources]
        try:
            for src in absorbed:
                await store.put_order(src)
            await store.commit()
        except Exception:
            await store.rollback()
            raise
    logger.info("completed merge %s: %d sources absorbed", merged_order.display_code, len(absorbed))
    return absorbed
