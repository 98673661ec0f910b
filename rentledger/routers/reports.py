from datetime import date

from fastapi import APIRouter, Depends

from rentledger.deps import business_today, require_store
from rentledger.schemas.reports import OutstandingSummary, OverdueCredit
from rentledger.services.receivables import outstanding_summary, overdue_credits
from rentledger.store import SqlStore

router = APIRouter(prefix="/reports", tags=["reports"])


@router.get("/outstanding", response_model=OutstandingSummary)
async def outstanding(store: SqlStore = Depends(require_store)):
    return outstanding_summary(await store.list_orders())


@router.get("/overdue", response_model=list[OverdueCredit])
async def overdue(as_of: date | None = None, store: SqlStore = Depends(require_store),
                  today: date = Depends(business_today)):
    """Credit reminders: active orders with a balance past their credit due date."""
    return overdue_credits(await store.list_orders(), as_of or today)
