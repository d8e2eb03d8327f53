from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from rsm.config import EngineSettings, load_settings
from rsm.repositories.locks import EntityLocks
from rsm.repositories.sqlite_repo import SqliteRepository
from rsm.services.credit_service import CreditService
from rsm.services.customer_service import CustomerService
from rsm.services.import_service import ImportService
from rsm.services.inventory_service import InventoryService
from rsm.services.pricing_service import PricingService
from rsm.services.sales_service import SalesService


@dataclass(frozen=True)
class AppContainer:
    repo: SqliteRepository
    settings: EngineSettings
    locks: EntityLocks
    pricing: PricingService
    inventory: InventoryService
    customers: CustomerService
    credit: CreditService
    sales: SalesService
    imports: ImportService


def build_container(db_path: Path | str, settings: EngineSettings | None = None) -> AppContainer:
    settings = settings or load_settings()
    repo = SqliteRepository(db_path, timeout=settings.lock_timeout_seconds)
    repo.init_db()

    # one lock table shared by every writer in the process
    locks = EntityLocks(timeout=settings.lock_timeout_seconds)

    pricing = PricingService(settings.currency_places)
    inventory = InventoryService(repo, locks)
    customers = CustomerService(repo)
    credit = CreditService(
        repo,
        locks,
        currency_places=settings.currency_places,
        due_soon_days=settings.due_soon_days,
    )
    sales = SalesService(repo, locks, settings=settings)
    imports = ImportService(repo, inventory)

    return AppContainer(
        repo=repo,
        settings=settings,
        locks=locks,
        pricing=pricing,
        inventory=inventory,
        customers=customers,
        credit=credit,
        sales=sales,
        imports=imports,
    )
