import logging

from rentledger.errors import InvalidState, ValidationError
from rentledger.models.core import MergeState
from rentledger.schemas.orders import Order, OrderUpdate
from rentledger.services.reconcile import _money, _reconcile_locked
from rentledger.store import OrderStore
from rentledger.util.locks import OrderLocks, order_locks

logger = logging.getLogger(__name__)


async def update_order(
    store: OrderStore, order_id: str, changes: OrderUpdate, *, locks: OrderLocks | None = None
) -> Order:
    """Edit the header fields of an order.

    Financials are recomputed only when the grand total actually changes; a note or
    client name edit leaves them as stored.
    """
    data = changes.model_dump(exclude_unset=True)
    if "grand_total" in data and data["grand_total"] is None:
        raise ValidationError("grand_total cannot be cleared", operation="update_order", entity_id=order_id)

    locks = locks or order_locks
    async with locks.hold(order_id):
        current = await store.get_order(order_id)
        if current.merge_state == MergeState.ABSORBED:
            raise InvalidState(
                f"order {order_id} is absorbed into {current.merged_into}; edit the merged order instead",
                operation="update_order", entity_id=order_id,
            )
        edited = current.clone()
        if "client_name" in data:
            edited.client_name = data["client_name"]
        if "notes" in data:
            edited.notes = data["notes"] or ""
        total_changed = "grand_total" in data and _money(data["grand_total"]) != _money(current.financials.grand_total)
        if total_changed:
            edited.financials.grand_total = _money(data["grand_total"])

        try:
            await store.put_order(edited)
            store.audit("Order", order_id, "UPDATE",
                        before={"client_name": current.client_name, "notes": current.notes,
                                "grand_total": str(current.financials.grand_total)},
                        after=changes.model_dump(mode="json", exclude_unset=True))
            if total_changed:
                order = await _reconcile_locked(store, order_id, operation="update_order")
            else:
                await store.commit()
                order = edited
        except Exception:
            await store.rollback()
            raise
    logger.info("updated order %s (fields=%s, reconciled=%s)", order_id, ", ".join(sorted(data)), total_changed)
    return order
