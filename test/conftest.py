import sys
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


TODAY = date(2024, 3, 15)
NOW = datetime(2024, 3, 15, 10, 30, 0)


@pytest.fixture
def repo(tmp_path: Path):
    from rsm.repositories.sqlite_repo import SqliteRepository

    r = SqliteRepository(tmp_path / "t.db")
    r.init_db()
    return r


@pytest.fixture
def app(tmp_path: Path):
    from dataclasses import replace

    from rsm.application.container import build_container
    from rsm.config import EngineSettings
    from rsm.services.credit_service import CreditService
    from rsm.services.sales_service import SalesService

    c = build_container(tmp_path / "app.db", EngineSettings(lock_timeout_seconds=10.0))
    # pin the clocks so due dates and aging are reproducible
    sales = SalesService(c.repo, c.locks, settings=c.settings, now=lambda: NOW)
    credit = CreditService(
        c.repo,
        c.locks,
        currency_places=c.settings.currency_places,
        due_soon_days=c.settings.due_soon_days,
        clock=lambda: TODAY,
    )
    return replace(c, sales=sales, credit=credit)


def add_product(app, sku="SKU-1", cost="40", price="100", stock="10", name=None) -> int:
    return app.inventory.add_product(sku, name or f"Product {sku}", Decimal(cost), Decimal(price), stock=Decimal(stock))
