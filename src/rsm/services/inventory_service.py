from __future__ import annotations

import logging
import sqlite3
from decimal import Decimal
from typing import Callable, Iterable, Optional

from rsm.domain.errors import InsufficientStockError, NotFoundError, ValidationError
from rsm.domain.models import MovementDelta, MovementLogEntry, MovementType, Product
from rsm.domain.money import ZERO, to_decimal
from rsm.repositories.locks import EntityLocks, product_key
from rsm.repositories.unit_of_work import SqliteUnitOfWork, UnitOfWork, now_iso
from rsm.services.pricing_service import price_for_margin

log = logging.getLogger("rsm.inventory")


def apply_movements(
    uow: UnitOfWork,
    deltas: Iterable[MovementDelta],
    actor_user_id: Optional[int] = None,
) -> list[MovementLogEntry]:
    """Stage and write a batch of stock deltas inside ``uow``.

    Every delta is checked before anything is written: if any product would
    end below zero the whole batch raises InsufficientStockError and the
    store is untouched. Several deltas for the same product accumulate in
    order. Caller must hold the product locks.
    """
    deltas = list(deltas)
    products: dict[int, Product] = {}
    staged: dict[int, Decimal] = {}
    plan: list[tuple[MovementDelta, Decimal, Decimal]] = []

    for d in deltas:
        pid = int(d.product_id)
        change = to_decimal(d.quantity_change)
        if change == 0:
            raise ValidationError("Quantity change must not be zero.")
        if pid not in products:
            prod = uow.get_product(pid)
            if prod is None:
                raise NotFoundError("product", pid)
            products[pid] = prod
            staged[pid] = prod.stock

        before = staged[pid]
        after = before + change
        if after < 0:
            requested = products[pid].stock - after
            raise InsufficientStockError(pid, available=products[pid].stock, requested=requested)
        staged[pid] = after
        plan.append((d, before, after))

    for pid in sorted(staged):
        if staged[pid] != products[pid].stock:
            uow.write_stock(pid, products[pid].stock, staged[pid])

    at = now_iso()
    entries = []
    for d, before, after in plan:
        prod = products[int(d.product_id)]
        entries.append(
            uow.append_movement_log(
                {
                    "datetime": at,
                    "product_id": prod.id,
                    "movement_type": MovementType(d.movement_type),
                    "quantity_change": to_decimal(d.quantity_change),
                    "stock_before": before,
                    "stock_after": after,
                    "cost_price": prod.cost_price,
                    "selling_price": prod.selling_price,
                    "cause_ref": d.cause_ref,
                    "actor_user_id": actor_user_id,
                    "notes": d.notes,
                    "reverses_entry_id": d.reverses_entry_id,
                }
            )
        )
    return entries


class InventoryService:
    def __init__(
        self,
        repo,
        locks: EntityLocks | None = None,
        uow_factory: Callable[[], UnitOfWork] | None = None,
    ):
        self.repo = repo
        self.locks = locks or EntityLocks()
        self.uow_factory = uow_factory or (lambda: SqliteUnitOfWork(repo))

    def get_product(self, product_id: int) -> Product:
        p = self.repo.get_product(int(product_id))
        if not p:
            raise NotFoundError("product", product_id)
        return p

    def list_products(self, pos_only: bool = False) -> list[Product]:
        return self.repo.list_products(pos_only=pos_only)

    def add_product(
        self,
        sku: str,
        name: str,
        cost_price,
        selling_price,
        stock=0,
        selling_price_2=None,
        selling_price_3=None,
        unit: str = "pcs",
        actor_user_id: int | None = None,
    ) -> int:
        sku = (sku or "").strip()
        name = (name or "").strip()
        if not sku or not name:
            raise ValidationError("SKU and Name are required.")
        cost = to_decimal(cost_price)
        price = to_decimal(selling_price)
        stock = to_decimal(stock)
        if stock < 0:
            raise ValidationError("Stock must be >= 0.")
        if cost < 0:
            raise ValidationError("Cost must be >= 0.")
        if price < 0:
            raise ValidationError("Price must be >= 0.")
        tiers = [None if t is None else to_decimal(t) for t in (selling_price_2, selling_price_3)]
        if any(t is not None and t < 0 for t in tiers):
            raise ValidationError("Price tiers must be >= 0.")

        try:
            with self.uow_factory() as uow:
                product_id = uow.insert_product(sku, name, cost, price, tiers[0], tiers[1], unit)
                if stock > 0:
                    apply_movements(
                        uow,
                        [MovementDelta(product_id, stock, MovementType.INITIAL_STOCK, f"product:{product_id}", "Initial stock")],
                        actor_user_id=actor_user_id,
                    )
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Product with SKU {sku} already exists.") from e
        log.info("product_added product_id=%s sku=%s stock=%s", product_id, sku, stock)
        return product_id

    def update_product(
        self,
        product_id: int,
        name: str | None = None,
        cost_price=None,
        selling_price=None,
        selling_price_2=None,
        selling_price_3=None,
        unit: str | None = None,
        show_in_pos: bool | None = None,
        active: bool | None = None,
        target_gp_percent=None,
        actor_user_id: int | None = None,
    ) -> Product:
        """Edit a product's name, prices, tiers, unit or flags.

        Arguments left as None are unchanged. ``target_gp_percent`` derives
        the selling price from the (new or current) cost and cannot be
        combined with an explicit ``selling_price``. Clearing ``active``
        hides the product from lookups and sales but keeps its history;
        setting it again brings the product back.
        """
        changes: dict = {}
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationError("Name must not be empty.")
            changes["name"] = name
        if unit is not None:
            if not unit.strip():
                raise ValidationError("Unit must not be empty.")
            changes["unit"] = unit.strip()
        for field, value in (
            ("cost_price", cost_price),
            ("selling_price", selling_price),
            ("selling_price_2", selling_price_2),
            ("selling_price_3", selling_price_3),
        ):
            if value is None:
                continue
            value = to_decimal(value)
            if value < 0:
                raise ValidationError(f"{field} must be >= 0.")
            changes[field] = value
        if show_in_pos is not None:
            changes["show_in_pos"] = 1 if show_in_pos else 0
        if active is not None:
            changes["active"] = 1 if active else 0

        with self.locks.hold([product_key(product_id)]):
            with self.uow_factory() as uow:
                if target_gp_percent is not None:
                    if selling_price is not None:
                        raise ValidationError("Give either a selling price or a target margin, not both.")
                    cost = changes.get("cost_price")
                    if cost is None:
                        current = uow.get_product(product_id, include_inactive=True)
                        if current is None:
                            raise NotFoundError("product", product_id)
                        cost = current.cost_price
                    changes["selling_price"] = price_for_margin(cost, to_decimal(target_gp_percent))
                product = uow.update_product(product_id, changes)

        log.info(
            "product_updated product_id=%s fields=%s actor=%s",
            product.id,
            ",".join(sorted(changes)) or "-",
            actor_user_id,
        )
        return product

    def _single_movement(self, delta: MovementDelta, actor_user_id: int | None) -> MovementLogEntry:
        with self.locks.hold([product_key(delta.product_id)]):
            with self.uow_factory() as uow:
                (entry,) = apply_movements(uow, [delta], actor_user_id=actor_user_id)
        log.info(
            "stock_moved product_id=%s type=%s change=%s stock_after=%s cause=%s",
            entry.product_id,
            entry.movement_type.value,
            entry.quantity_change,
            entry.stock_after,
            entry.cause_ref,
        )
        return entry

    def adjust_stock(
        self,
        product_id: int,
        quantity_change,
        notes: str | None = None,
        actor_user_id: int | None = None,
    ) -> MovementLogEntry:
        delta = MovementDelta(int(product_id), to_decimal(quantity_change), MovementType.ADJUSTMENT, "manual", notes)
        return self._single_movement(delta, actor_user_id)

    def receive_stock(
        self,
        product_id: int,
        quantity,
        cause_ref: str,
        notes: str | None = None,
        actor_user_id: int | None = None,
    ) -> MovementLogEntry:
        qty = to_decimal(quantity)
        if qty <= 0:
            raise ValidationError("Received quantity must be > 0.")
        delta = MovementDelta(int(product_id), qty, MovementType.PURCHASE_RECEIPT, cause_ref, notes)
        return self._single_movement(delta, actor_user_id)

    def reverse_document(
        self,
        cause_ref: str,
        notes: str | None = None,
        actor_user_id: int | None = None,
    ) -> list[MovementLogEntry]:
        """Append an inverse ``reversal`` movement for each movement of a document.

        Movements that were already reversed are skipped, so reversing twice
        is a no-op. History is never edited.
        """
        known = self.repo.movements_for_cause(cause_ref)
        if not known:
            raise NotFoundError("movement document", cause_ref)
        keys = [product_key(m.product_id) for m in known]

        with self.locks.hold(keys):
            with self.uow_factory() as uow:
                movements = [m for m in uow.movements_for_cause(cause_ref) if m.movement_type is not MovementType.REVERSAL]
                done = uow.reversed_entry_ids([m.id for m in movements])
                deltas = [
                    MovementDelta(
                        m.product_id,
                        -m.quantity_change,
                        MovementType.REVERSAL,
                        cause_ref,
                        notes or f"Reversal of movement {m.id}",
                        reverses_entry_id=m.id,
                    )
                    for m in movements
                    if m.id not in done
                ]
                entries = apply_movements(uow, deltas, actor_user_id=actor_user_id) if deltas else []
        log.info("document_reversed cause=%s movements=%s", cause_ref, len(entries))
        return entries

    def get_movement_history(self, product_id: int) -> list[MovementLogEntry]:
        self.get_product(product_id)
        return self.repo.movement_history(int(product_id))

    def reconcile_stock(self, product_id: int) -> tuple[Decimal, Decimal]:
        """Return (current stock, sum of all logged deltas); equal when the ledger is intact."""
        product = self.get_product(product_id)
        total = sum((m.quantity_change for m in self.repo.movement_history(int(product_id))), ZERO)
        return product.stock, total
