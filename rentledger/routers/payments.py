from fastapi import APIRouter, Depends

from rentledger.deps import require_store
from rentledger.schemas.payments import Payment, PaymentIn, PaymentOut, PaymentUpdate
from rentledger.services import payments as ledger
from rentledger.store import SqlStore

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/", response_model=PaymentOut)
async def record_payment(body: PaymentIn, store: SqlStore = Depends(require_store)):
    payment, order = await ledger.record_payment(store, body)
    return PaymentOut(payment=payment, order=order)


@router.get("/", response_model=list[Payment])
async def list_payments(order_id: str, store: SqlStore = Depends(require_store)):
    """Payments counted towards `order_id`, including those of merged-in orders."""
    return await ledger.list_payments(store, order_id)


@router.patch("/{payment_id}", response_model=PaymentOut)
async def edit_payment(payment_id: str, body: PaymentUpdate, store: SqlStore = Depends(require_store)):
    payment, order = await ledger.edit_payment(store, payment_id, body)
    return PaymentOut(payment=payment, order=order)


@router.delete("/{payment_id}", response_model=PaymentOut)
async def delete_payment(payment_id: str, store: SqlStore = Depends(require_store)):
    order = await ledger.delete_payment(store, payment_id)
    return PaymentOut(order=order)
