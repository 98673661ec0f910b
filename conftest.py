# conftest.py
import os
import random
import string
import tempfile

import pytest

# point the app at a throwaway database before rentledger.config is imported
os.environ.setdefault("DB_URL", f"sqlite+aiosqlite:///{tempfile.mkdtemp()}/rentledger-test.db")

from datetime import date  # noqa: E402
from decimal import Decimal  # noqa: E402

from rentledger.schemas.orders import (  # noqa: E402
    DayPlan, EventFunction, Financials, Item, MultiDaySchedule, Order, SingleDaySchedule,
)
from rentledger.store import MemoryStore  # noqa: E402
from rentledger.util.locks import OrderLocks  # noqa: E402


@pytest.fixture(scope="session")
def client():
    from fastapi.testclient import TestClient
    from rentledger.main import app

    with TestClient(app) as c:
        yield c


@pytest.fixture(scope="session")
def base_url():
    return ""


@pytest.fixture
def rng_suffix():
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=6))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def locks():
    return OrderLocks()


def single_day(code, items=(), total="0", notes="", on=date(2026, 3, 14), **kw):
    return Order(
        display_code=code,
        schedule=SingleDaySchedule(date=on, items=[Item(**i) for i in items]),
        financials=Financials(grand_total=Decimal(total), balance_due=Decimal(total)),
        notes=notes,
        **kw,
    )


def multi_day(code, days, start, end, total="0", notes="", **kw):
    return Order(
        display_code=code,
        schedule=MultiDaySchedule(
            start_date=start,
            end_date=end,
            day_wise_data=[
                DayPlan(date=d, functions=[EventFunction(**f) for f in fns]) for d, fns in days
            ],
        ),
        financials=Financials(grand_total=Decimal(total), balance_due=Decimal(total)),
        notes=notes,
        **kw,
    )


@pytest.fixture
def make_single():
    return single_day


@pytest.fixture
def make_multi():
    return multi_day
