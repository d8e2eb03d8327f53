from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterable, Iterator

from rsm.domain.errors import ConcurrentModificationError

# Acquisition order: products (by id) -> sale -> customer.
_RANK = {"product": 0, "sale": 1, "customer": 2}


def product_key(product_id: int) -> tuple[str, int]:
    return ("product", int(product_id))


def sale_key(sale_id: int) -> tuple[str, int]:
    return ("sale", int(sale_id))


def customer_key(customer_id: int) -> tuple[str, int]:
    return ("customer", int(customer_id))


class _Slot:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class EntityLocks:
    """In-process write locks per entity, always taken in a fixed order.

    A key's lock only lives while some caller holds or waits for it, so the
    table stays as small as the number of entities being written right now.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = float(timeout)
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, int], _Slot] = {}

    def _check_out(self, keys: list[tuple[str, int]]) -> list[_Slot]:
        with self._guard:
            slots = []
            for key in keys:
                slot = self._locks.get(key)
                if slot is None:
                    slot = self._locks[key] = _Slot()
                slot.users += 1
                slots.append(slot)
            return slots

    def _check_in(self, keys: list[tuple[str, int]]) -> None:
        with self._guard:
            for key in keys:
                slot = self._locks[key]
                slot.users -= 1
                if slot.users == 0:
                    del self._locks[key]

    @staticmethod
    def ordered(keys: Iterable[tuple[str, int]]) -> list[tuple[str, int]]:
        return sorted(set(keys), key=lambda k: (_RANK[k[0]], k[1]))

    @contextmanager
    def hold(self, keys: Iterable[tuple[str, int]]) -> Iterator[None]:
        keys = self.ordered(keys)
        slots = self._check_out(keys)
        acquired: list[threading.Lock] = []
        try:
            for key, slot in zip(keys, slots):
                if not slot.lock.acquire(timeout=self.timeout):
                    raise ConcurrentModificationError(f"Timed out waiting for {key[0]} {key[1]}.")
                acquired.append(slot.lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            self._check_in(keys)
