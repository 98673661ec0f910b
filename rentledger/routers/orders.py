from fastapi import APIRouter, Depends

from rentledger.deps import require_store
from rentledger.schemas.orders import MergeIn, MergeOut, Order, OrderIn, OrderPage, OrderUpdate
from rentledger.services.merge import complete_merge, merge_by_ids, unmerge_by_id
from rentledger.services.orders import update_order
from rentledger.services.reconcile import _money, apply_snapshot, reconcile, reconcile_order
from rentledger.store import SqlStore

router = APIRouter(prefix="/orders", tags=["orders"])


@router.get("/", response_model=OrderPage)
async def list_orders(
    include_absorbed: bool = False,
    page: int = 1,
    size: int = 20,
    store: SqlStore = Depends(require_store),
):
    """
    List orders (paged), oldest first.

    Absorbed orders are hidden unless `include_absorbed` is set; the merged order
    stands in for them.
    """
    # simple pagination math
    if page < 1:
        page = 1
    if size < 1:
        size = 20
    offset = (page - 1) * size

    rows = await store.list_orders(include_absorbed=include_absorbed)
    return OrderPage(items=rows[offset:offset + size], total=len(rows))


@router.post("/", response_model=Order)
async def create_order(body: OrderIn, store: SqlStore = Depends(require_store)):
    order = Order(
        display_code=body.display_code,
        client_name=body.client_name,
        schedule=body.schedule,
        notes=body.notes,
    )
    order.financials.grand_total = _money(body.grand_total)
    # no payments yet: balance equals the total and the credit clock starts
    order = apply_snapshot(order, reconcile(order, []))
    await store.put_order(order)
    store.audit("Order", order.id, "CREATE", after={"display_code": order.display_code})
    await store.commit()
    return order


@router.get("/{order_id}", response_model=Order)
async def get_order(order_id: str, store: SqlStore = Depends(require_store)):
    return await store.get_order(order_id)


@router.patch("/{order_id}", response_model=Order)
async def patch_order(order_id: str, body: OrderUpdate, store: SqlStore = Depends(require_store)):
    """Edit client name, notes or grand total; a new total re-runs reconciliation."""
    return await update_order(store, order_id, body)


@router.post("/merge", response_model=MergeOut)
async def merge_orders(body: MergeIn, store: SqlStore = Depends(require_store)):
    """
    Merge the selected orders into `base_order_id`.

    The merged order comes back already reconciled against the payments of every
    source order.
    """
    result = await merge_by_ids(
        store, body.order_ids, body.base_order_id, body.display_code,
        grand_total=body.grand_total, reconcile_financials=True,
    )
    return MergeOut(
        order=result.merged,
        absorbed_ids=[o.id for o in result.absorbed],
        skipped_ids=result.skipped_ids,
    )


@router.post("/{order_id}/unmerge", response_model=list[Order])
async def unmerge_order(order_id: str, store: SqlStore = Depends(require_store)):
    return await unmerge_by_id(store, order_id)


@router.post("/{order_id}/complete_merge", response_model=list[Order])
async def finish_merge(order_id: str, store: SqlStore = Depends(require_store)):
    order = await store.get_order(order_id)
    return await complete_merge(store, order)


@router.post("/{order_id}/reconcile", response_model=Order)
async def reconcile_financials(order_id: str, store: SqlStore = Depends(require_store)):
    return await reconcile_order(store, order_id)
