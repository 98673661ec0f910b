"""Document-store seam used by the merge engine, the reconciler and the payment ledger.

Two implementations:

- ``MemoryStore`` keeps documents in dicts. Each write lands on its own, which
  matches a plain document database without multi-document transactions.
- ``SqlStore`` sits on an SQLAlchemy ``AsyncSession``. Writes are flushed and only
  become durable on ``commit()``, so everything written between two commits lands
  together or not at all.
"""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterable, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from rentledger.errors import NotFound, PersistenceError
from rentledger.models.core import MergeState, OrderDoc, PaymentRecord
from rentledger.schemas.orders import Order
from rentledger.schemas.payments import Payment
from rentledger.util.audit import audit

logger = logging.getLogger(__name__)


class OrderStore(Protocol):
    async def get_order(self, order_id: str) -> Order: ...
    async def put_order(self, order: Order) -> None: ...
    async def list_orders(self, include_absorbed: bool = False) -> list[Order]: ...
    async def find_by_display_code(self, code: str) -> list[Order]: ...
    async def get_payment(self, payment_id: str) -> Payment: ...
    async def query_payments(self, order_ids: Iterable[str]) -> list[Payment]: ...
    async def put_payment(self, payment: Payment) -> Payment: ...
    async def delete_payment(self, payment_id: str) -> None: ...
    def audit(self, entity: str, entity_id: str, action: str,
              before: dict | None = None, after: dict | None = None) -> None: ...
    async def commit(self) -> None: ...
    async def rollback(self) -> None: ...


def _order_not_found(order_id: str, operation: str) -> NotFound:
    return NotFound(f"order {order_id} not found", operation=operation, entity_id=order_id)


def _payment_not_found(payment_id: str, operation: str) -> NotFound:
    return NotFound(f"payment {payment_id} not found", operation=operation, entity_id=payment_id)


class MemoryStore:
    """In-process store. Hands out copies so callers never alias stored documents."""

    def __init__(self, orders: Iterable[Order] = (), payments: Iterable[Payment] = ()):
        self.orders: dict[str, Order] = {o.id: o.clone() for o in orders}
        self.payments: dict[str, Payment] = {p.id: p.model_copy(deep=True) for p in payments}
        self.audit_log: list[dict] = []

    async def get_order(self, order_id: str) -> Order:
        order = self.orders.get(order_id)
        if order is None:
            raise _order_not_found(order_id, "get_order")
        return order.clone()

    async def put_order(self, order: Order) -> None:
        self.orders[order.id] = order.clone()

    async def list_orders(self, include_absorbed: bool = False) -> list[Order]:
        return [o.clone() for o in self.orders.values() if include_absorbed or o.is_active]

    async def find_by_display_code(self, code: str) -> list[Order]:
        return [o.clone() for o in self.orders.values() if o.display_code == code and o.is_active]

    async def get_payment(self, payment_id: str) -> Payment:
        payment = self.payments.get(payment_id)
        if payment is None:
            raise _payment_not_found(payment_id, "get_payment")
        return payment.model_copy(deep=True)

    async def query_payments(self, order_ids: Iterable[str]) -> list[Payment]:
        wanted = set(order_ids)
        rows = [p for p in self.payments.values() if p.order_id in wanted]
        rows.sort(key=lambda p: (p.date, p.created_at or datetime.min.replace(tzinfo=timezone.utc)))
        return [p.model_copy(deep=True) for p in rows]

    async def put_payment(self, payment: Payment) -> Payment:
        now = datetime.now(timezone.utc)
        stored = payment.model_copy(update={"created_at": payment.created_at or now, "updated_at": now}, deep=True)
        self.payments[stored.id] = stored
        return stored.model_copy(deep=True)

    async def delete_payment(self, payment_id: str) -> None:
        if self.payments.pop(payment_id, None) is None:
            raise _payment_not_found(payment_id, "delete_payment")

    def audit(self, entity, entity_id, action, before=None, after=None) -> None:
        self.audit_log.append({"entity": entity, "entity_id": entity_id, "action": action,
                               "before": before, "after": after})

    async def commit(self) -> None:
        pass

    async def rollback(self) -> None:
        pass


@contextmanager
def _guard(operation: str, entity_id: str | None = None):
    try:
        yield
    except SQLAlchemyError as e:
        logger.error("store %s failed for %s: %s", operation, entity_id, e)
        raise PersistenceError(f"{operation} failed: {e}", operation=operation, entity_id=entity_id) from e


def _order_from_row(row: OrderDoc) -> Order:
    return Order.model_validate(row.body)


def _payment_from_row(row: PaymentRecord) -> Payment:
    return Payment(
        id=row.id,
        order_id=row.order_id,
        amount=row.amount,
        date=row.paid_on,
        method=row.method,
        transaction_ref=row.transaction_ref,
        notes=row.notes,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_order(self, order_id: str) -> Order:
        with _guard("get_order", order_id):
            row = await self.db.get(OrderDoc, order_id)
        if row is None:
            raise _order_not_found(order_id, "get_order")
        return _order_from_row(row)

    async def put_order(self, order: Order) -> None:
        with _guard("put_order", order.id):
            row = await self.db.get(OrderDoc, order.id)
            if row is None:
                row = OrderDoc(id=order.id, version=1)
                self.db.add(row)
            else:
                row.version = (row.version or 1) + 1
            row.display_code = order.display_code
            row.merge_state = order.merge_state
            row.merged_into = order.merged_into
            row.body = order.model_dump(mode="json")
            await self.db.flush()

    async def list_orders(self, include_absorbed: bool = False) -> list[Order]:
        q = select(OrderDoc)
        if not include_absorbed:
            q = q.where(OrderDoc.merge_state != MergeState.ABSORBED)
        q = q.order_by(OrderDoc.created_at, OrderDoc.id)
        with _guard("list_orders"):
            rows = (await self.db.scalars(q)).all()
        return [_order_from_row(r) for r in rows]

    async def find_by_display_code(self, code: str) -> list[Order]:
        q = select(OrderDoc).where(OrderDoc.display_code == code, OrderDoc.merge_state != MergeState.ABSORBED)
        with _guard("find_by_display_code", code):
            rows = (await self.db.scalars(q)).all()
        return [_order_from_row(r) for r in rows]

    async def get_payment(self, payment_id: str) -> Payment:
        with _guard("get_payment", payment_id):
            row = await self.db.get(PaymentRecord, payment_id)
        if row is None:
            raise _payment_not_found(payment_id, "get_payment")
        return _payment_from_row(row)

    async def query_payments(self, order_ids: Iterable[str]) -> list[Payment]:
        ids = sorted(set(order_ids))
        if not ids:
            return []
        q = (
            select(PaymentRecord)
            .where(PaymentRecord.order_id.in_(ids))
            .order_by(PaymentRecord.paid_on, PaymentRecord.created_at, PaymentRecord.id)
        )
        with _guard("query_payments", ",".join(ids)):
            rows = (await self.db.scalars(q)).all()
        return [_payment_from_row(r) for r in rows]

    async def put_payment(self, payment: Payment) -> Payment:
        with _guard("put_payment", payment.id):
            row = await self.db.get(PaymentRecord, payment.id)
            if row is None:
                row = PaymentRecord(id=payment.id, version=1)
                self.db.add(row)
            else:
                row.version = (row.version or 1) + 1
            row.order_id = payment.order_id
            row.amount = payment.amount
            row.paid_on = payment.date
            row.method = payment.method
            row.transaction_ref = payment.transaction_ref
            row.notes = payment.notes
            await self.db.flush()
            # pull server-generated timestamps back onto the row
            await self.db.refresh(row)
        return _payment_from_row(row)

    async def delete_payment(self, payment_id: str) -> None:
        with _guard("delete_payment", payment_id):
            row = await self.db.get(PaymentRecord, payment_id)
            if row is None:
                raise _payment_not_found(payment_id, "delete_payment")
            await self.db.delete(row)
            await self.db.flush()

    def audit(self, entity, entity_id, action, before=None, after=None) -> None:
        audit(self.db, entity, entity_id, action, before=before, after=after)

    async def commit(self) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("commit failed: %s", e)
            raise PersistenceError(f"commit failed: {e}", operation="commit") from e

    async def rollback(self) -> None:
        await self.db.rollback()
