from __future__ import annotations

import logging
from decimal import InvalidOperation

from openpyxl import load_workbook

from rsm.domain.errors import AppError, ValidationError
from rsm.domain.money import to_decimal

log = logging.getLogger(__name__)

REQUIRED_HEADERS = ["sku", "name", "cost_price", "selling_price", "stock"]


class ImportService:
    def __init__(self, repo, inventory_service):
        self.repo = repo
        self.inventory = inventory_service

    def import_products_excel(self, path: str, actor_user_id: int | None = None) -> tuple[int, int]:
        """
        Headers:
          sku | name | cost_price | selling_price | stock

        New SKUs are created with ``stock`` logged as initial stock. For known
        SKUs ``stock`` is a quantity received (delta to add), never an
        absolute value. Returns (imported, skipped).
        """
        wb = load_workbook(path, read_only=True, data_only=True)
        ws = wb.active
        rows = ws.iter_rows(values_only=True)

        header_row = next(rows, None) or ()
        headers = {}
        for idx, v in enumerate(header_row):
            if isinstance(v, str):
                headers[v.strip().lower()] = idx
        for r in REQUIRED_HEADERS:
            if r not in headers:
                wb.close()
                raise ValidationError(f"Missing column header: {r}")

        ok = 0
        skipped = 0
        for row_no, row in enumerate(rows, start=2):
            try:
                sku, name, cost, price, qty = (
                    row[headers[h]] if headers[h] < len(row) else None for h in REQUIRED_HEADERS
                )
                if not sku or not name or cost is None or price is None:
                    skipped += 1
                    continue

                sku = str(sku).strip()
                qty = to_decimal(qty if qty is not None else 0)
                if qty < 0:
                    skipped += 1
                    continue

                existing = self.repo.get_product_by_sku(sku)
                if existing:
                    if qty > 0:
                        self.inventory.receive_stock(
                            existing.id,
                            qty,
                            cause_ref=f"import:{sku}",
                            notes=f"Spreadsheet import (+{qty})",
                            actor_user_id=actor_user_id,
                        )
                else:
                    self.inventory.add_product(
                        sku,
                        str(name),
                        to_decimal(cost),
                        to_decimal(price),
                        stock=qty,
                        actor_user_id=actor_user_id,
                    )
                ok += 1
            except (AppError, InvalidOperation, TypeError, ValueError) as e:
                log.warning("Import skipped row %s: %s", row_no, e)
                skipped += 1

        wb.close()
        log.info("products_imported path=%s ok=%s skipped=%s", path, ok, skipped)
        return ok, skipped
