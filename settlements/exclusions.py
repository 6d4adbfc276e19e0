from __future__ import annotations

from typing import Iterable


class ExclusionLedger:
    """Excluded row ids, scoped strictly by cache handle.

    Every operation is synchronous and touches nothing but the ledger, so
    the UI can reflect a toggle immediately. Page fetches never write here.
    """

    def __init__(self) -> None:
        self._by_handle: dict[str, set[int]] = {}

    def exclude(self, handle: str, ids: Iterable[int]) -> frozenset[int]:
        """Add ``ids`` to the handle's set and return the ids that were new."""
        excluded = self._by_handle.setdefault(handle, set())
        added = {int(i) for i in ids} - excluded
        excluded.update(added)
        return frozenset(added)

    def reinclude(self, handle: str, row_id: int) -> bool:
        excluded = self._by_handle.get(handle)
        if not excluded or row_id not in excluded:
            return False
        excluded.discard(row_id)
        return True

    def toggle(self, handle: str, row_id: int) -> bool:
        """Flip one id and return whether it is excluded afterwards."""
        if self.is_excluded(handle, row_id):
            self.reinclude(handle, row_id)
            return False
        self.exclude(handle, [row_id])
        return True

    def is_excluded(self, handle: str, row_id: int) -> bool:
        return row_id in self._by_handle.get(handle, ())

    def excluded_ids(self, handle: str) -> frozenset[int]:
        return frozenset(self._by_handle.get(handle, ()))

    def excluded_count(self, handle: str) -> int:
        return len(self._by_handle.get(handle, ()))

    def union(self, handles: Iterable[str] | None = None) -> list[int]:
        """Sorted union of excluded ids across ``handles`` (all by default)."""
        keys = self._by_handle.keys() if handles is None else handles
        merged: set[int] = set()
        for handle in keys:
            merged.update(self._by_handle.get(handle, ()))
        return sorted(merged)

    def handles(self) -> list[str]:
        return [h for h, ids in self._by_handle.items() if ids]

    def clear(self) -> None:
        self._by_handle.clear()
