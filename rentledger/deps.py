from datetime import date, datetime
from zoneinfo import ZoneInfo

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from rentledger.config import settings
from rentledger.db import get_db
from rentledger.store import SqlStore

def require_store(db: AsyncSession = Depends(get_db)) -> SqlStore:
    return SqlStore(db)

def business_today() -> date:
    # "today" for due-date checks is the business's local date, not UTC
    return datetime.now(ZoneInfo(settings.TZ)).date()
