import logging
from contextlib import asynccontextmanager
from decimal import Decimal

from rentledger.errors import InvalidState, ValidationError
from rentledger.models.core import MergeState
from rentledger.schemas.orders import Order
from rentledger.schemas.payments import Payment, PaymentIn, PaymentUpdate
from rentledger.services.reconcile import _reconcile_locked, related_order_ids
from rentledger.store import OrderStore
from rentledger.util.locks import OrderLocks, order_locks

logger = logging.getLogger(__name__)

REQUIRED_PAYMENT_FIELDS = ("amount", "date", "method")


def _check_amount(amount: Decimal | None, operation: str, entity_id: str) -> None:
    if amount is None or not amount > 0:
        raise ValidationError("payment amount must be greater than zero", operation=operation, entity_id=entity_id)


async def owner_order_id(store: OrderStore, order_id: str) -> str:
    """Id of the visible order whose financials a payment on `order_id` feeds.

    Absorbed orders hand their payments to the merged order named in `merged_into`.
    """
    order = await store.get_order(order_id)
    if order.merge_state != MergeState.ABSORBED:
        return order.id
    for candidate in await store.find_by_display_code(order.merged_into or ""):
        if candidate.merge_state == MergeState.MERGED and order_id in related_order_ids(candidate):
            return candidate.id
    raise InvalidState(
        f"order {order_id} is absorbed into {order.merged_into}, which no longer exists",
        operation="owner_order_id", entity_id=order_id,
    )


async def list_payments(store: OrderStore, order_id: str) -> list[Payment]:
    order = await store.get_order(order_id)
    return await store.query_payments(related_order_ids(order))


async def record_payment(store: OrderStore, body: PaymentIn, *, locks: OrderLocks | None = None) -> tuple[Payment, Order]:
    _check_amount(body.amount, "record_payment", body.order_id)
    locks = locks or order_locks
    async with locks.hold(body.order_id):
        order = await store.get_order(body.order_id)
        if order.merge_state == MergeState.ABSORBED:
            raise InvalidState(
                f"order {order.id} is absorbed into {order.merged_into}; record the payment there",
                operation="record_payment", entity_id=order.id,
            )
        try:
            payment = await store.put_payment(Payment(**body.model_dump()))
            store.audit("Payment", payment.id, "CREATE", after=payment.model_dump(mode="json"))
            updated = await _reconcile_locked(store, order.id, operation="record_payment")
        except Exception:
            await store.rollback()
            raise
    logger.info("recorded payment %s of %s on order %s", payment.id, payment.amount, order.id)
    return payment, updated


@asynccontextmanager
async def _hold_payment_owner(store: OrderStore, payment_id: str, locks: OrderLocks, operation: str):
    """Lock a payment's order together with the order that owns its financials.

    The owner is resolved again once the locks are held; if a merge or unmerge moved
    the payment to another owner while we waited, the locks are dropped and taken
    again for the new owner.
    """
    while True:
        current = await store.get_payment(payment_id)
        owner_id = await owner_order_id(store, current.order_id)
        async with locks.hold(owner_id, current.order_id):
            current = await store.get_payment(payment_id)
            if await owner_order_id(store, current.order_id) == owner_id:
                yield current, owner_id
                return
        logger.info("%s: owner of payment %s changed from %s, retrying", operation, payment_id, owner_id)


async def edit_payment(
    store: OrderStore, payment_id: str, changes: PaymentUpdate, *, locks: OrderLocks | None = None
) -> tuple[Payment, Order]:
    # fields left out of the update keep their stored value; optional ones may be cleared with None
    data = changes.model_dump(exclude_unset=True)
    for name in REQUIRED_PAYMENT_FIELDS:
        if name in data and data[name] is None:
            raise ValidationError(f"payment {name} cannot be cleared", operation="edit_payment", entity_id=payment_id)
    if "amount" in data:
        _check_amount(data["amount"], "edit_payment", payment_id)

    locks = locks or order_locks
    async with _hold_payment_owner(store, payment_id, locks, "edit_payment") as (current, owner_id):
        edited = current.model_copy(update=data)
        needs_reconcile = edited.amount != current.amount or edited.date != current.date
        try:
            saved = await store.put_payment(edited)
            store.audit("Payment", payment_id, "EDIT",
                        before=current.model_dump(mode="json"), after=saved.model_dump(mode="json"))
            if needs_reconcile:
                order = await _reconcile_locked(store, owner_id, operation="edit_payment")
            else:
                await store.commit()
                order = await store.get_order(owner_id)
        except Exception:
            await store.rollback()
            raise
    logger.info("edited payment %s (reconciled=%s)", payment_id, needs_reconcile)
    return saved, order


async def delete_payment(store: OrderStore, payment_id: str, *, locks: OrderLocks | None = None) -> Order:
    locks = locks or order_locks
    async with _hold_payment_owner(store, payment_id, locks, "delete_payment") as (current, owner_id):
        try:
            await store.delete_payment(payment_id)
            store.audit("Payment", payment_id, "DELETE", before=current.model_dump(mode="json"))
            order = await _reconcile_locked(store, owner_id, operation="delete_payment")
        except Exception:
            await store.rollback()
            raise
    logger.info("deleted payment %s of %s from order %s", payment_id, current.amount, owner_id)
    return order
