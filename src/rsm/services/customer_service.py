from __future__ import annotations

import logging
from typing import Callable

from rsm.domain.errors import NotFoundError, ValidationError
from rsm.domain.models import Customer
from rsm.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork

log = logging.getLogger("rsm.customers")

CUSTOMER_TYPES = ("cash", "credit")


class CustomerService:
    def __init__(self, repo, uow_factory: Callable[[], UnitOfWork] | None = None):
        self.repo = repo
        self.uow_factory = uow_factory or (lambda: SqliteUnitOfWork(repo))

    def add_customer(
        self,
        name: str,
        customer_type: str = "cash",
        credit_days: int | None = None,
        phone: str | None = None,
    ) -> int:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Customer name is required.")
        if customer_type not in CUSTOMER_TYPES:
            raise ValidationError(f"Customer type must be one of {', '.join(CUSTOMER_TYPES)}.")
        if credit_days is not None and int(credit_days) < 0:
            raise ValidationError("Credit days must be >= 0.")

        with self.uow_factory() as uow:
            customer_id = uow.insert_customer(
                name, customer_type, None if credit_days is None else int(credit_days), phone
            )
        log.info("customer_added customer_id=%s type=%s", customer_id, customer_type)
        return customer_id

    def get_customer(self, customer_id: int) -> Customer:
        c = self.repo.get_customer(int(customer_id))
        if not c:
            raise NotFoundError("customer", customer_id)
        return c

    def list_customers(self) -> list[Customer]:
        return self.repo.list_customers()
