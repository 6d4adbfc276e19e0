from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Iterable

import structlog

from settlements.errors import PageFetchError, PageOutOfRangeError, UnknownHandleError
from settlements.models import ProvidedServiceRow

logger = structlog.get_logger(__name__)

PageKey = tuple[str, int]
PageFetcher = Callable[[str, int], Awaitable[list[ProvidedServiceRow]]]


class PageCache:
    """Pages of provided services owned by a single draft.

    A cached page is treated as the truth for its handle; exclusion state is
    never written into it. Fetches run as tasks keyed by (handle, page) so a
    page is never requested twice concurrently, and every result is checked
    against the set of current handles before it is stored. ``discard``
    cancels outstanding tasks and turns the cache into a sink that drops any
    late response.
    """

    def __init__(
        self,
        fetcher: PageFetcher,
        page_counts: dict[str, int] | None = None,
        on_commit: Callable[[str, int], None] | None = None,
        initial_pages: int = 3,
        prefetch_ahead: int = 2,
    ) -> None:
        self._fetcher = fetcher
        self._page_counts: dict[str, int] = dict(page_counts or {})
        self._on_commit = on_commit
        self._initial_pages = initial_pages
        self._prefetch_ahead = prefetch_ahead
        self._pages: dict[PageKey, tuple[ProvidedServiceRow, ...]] = {}
        self._tasks: dict[PageKey, asyncio.Task[tuple[ProvidedServiceRow, ...] | None]] = {}
        self._failures: dict[PageKey, str] = {}
        self._discarded = False

    # -- reads ---------------------------------------------------------------

    def get(self, handle: str, page_index: int) -> tuple[ProvidedServiceRow, ...] | None:
        return self._pages.get((handle, page_index))

    def is_current(self, handle: str) -> bool:
        return not self._discarded and handle in self._page_counts

    def page_count(self, handle: str) -> int:
        return self._page_counts.get(handle, 0)

    def cached_pages(self, handle: str) -> list[int]:
        return sorted(p for (h, p) in self._pages if h == handle)

    def rows(self, handle: str) -> list[ProvidedServiceRow]:
        """All cached rows of ``handle`` in page order."""
        result: list[ProvidedServiceRow] = []
        for page_index in self.cached_pages(handle):
            result.extend(self._pages[(handle, page_index)])
        return result

    def row_ids(self, handle: str) -> set[int]:
        return {row.id for row in self.rows(handle)}

    def is_fully_cached(self, handle: str) -> bool:
        count = self.page_count(handle)
        return count > 0 and len(self.cached_pages(handle)) >= count

    def in_flight(self, handle: str, page_index: int) -> bool:
        task = self._tasks.get((handle, page_index))
        return task is not None and not task.done()

    def failure(self, handle: str, page_index: int) -> str | None:
        return self._failures.get((handle, page_index))

    # -- writes --------------------------------------------------------------

    def put(self, handle: str, page_index: int, rows: Iterable[ProvidedServiceRow]) -> None:
        self._pages[(handle, page_index)] = tuple(rows)
        self._failures.pop((handle, page_index), None)

    # -- fetching ------------------------------------------------------------

    def prefetch(self, handle: str, page_index: int) -> asyncio.Task[tuple[ProvidedServiceRow, ...] | None] | None:
        """Start a background fetch unless the page is cached, in flight or out of range."""
        if not self.is_current(handle):
            return None
        if page_index < 0 or page_index >= self.page_count(handle):
            return None
        key = (handle, page_index)
        if key in self._pages:
            return None
        existing = self._tasks.get(key)
        if existing is not None and not existing.done():
            return existing
        task = asyncio.get_running_loop().create_task(self._load(handle, page_index))
        self._tasks[key] = task
        return task

    async def fetch(self, handle: str, page_index: int) -> tuple[ProvidedServiceRow, ...]:
        """Return a page, loading it (or joining the in-flight load) on a miss."""
        if not self.is_current(handle):
            raise UnknownHandleError(f"handle {handle} is not part of the current draft")
        if page_index < 0 or page_index >= self.page_count(handle):
            raise PageOutOfRangeError(f"page {page_index} out of range for {handle}")
        cached = self.get(handle, page_index)
        if cached is not None:
            return cached

        task = self.prefetch(handle, page_index)
        if task is None:
            cached = self.get(handle, page_index)
            if cached is not None:
                return cached
            raise UnknownHandleError(f"handle {handle} is not part of the current draft")
        try:
            rows = await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled():
                raise
            rows = None

        if rows is not None:
            return rows
        if not self.is_current(handle):
            raise UnknownHandleError(f"handle {handle} was discarded while page {page_index} was loading")
        raise PageFetchError(handle, page_index, self._failures.get((handle, page_index), "page fetch failed"))

    def warm(self, handle: str) -> list[asyncio.Task[tuple[ProvidedServiceRow, ...] | None]]:
        """Eagerly load the first pages of a freshly previewed handle."""
        tasks = []
        for page_index in range(min(self._initial_pages, self.page_count(handle))):
            task = self.prefetch(handle, page_index)
            if task is not None:
                tasks.append(task)
        return tasks

    def prefetch_window(self, handle: str, page_index: int) -> None:
        for ahead in range(1, self._prefetch_ahead + 1):
            self.prefetch(handle, page_index + ahead)

    async def drain(self) -> None:
        """Wait for every fetch currently in flight."""
        while True:
            pending = [t for t in self._tasks.values() if not t.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def discard(self) -> None:
        self._discarded = True
        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        self._tasks.clear()
        self._pages.clear()
        self._failures.clear()
        self._page_counts.clear()

    async def _load(self, handle: str, page_index: int) -> tuple[ProvidedServiceRow, ...] | None:
        key = (handle, page_index)
        try:
            rows = tuple(await self._fetcher(handle, page_index))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # Nothing is cached; the next read of this page retries.
            if self.is_current(handle):
                self._failures[key] = str(exc) or exc.__class__.__name__
            logger.warning("page_fetch_failed", handle=handle, page=page_index, error=str(exc))
            return None
        finally:
            if self._tasks.get(key) is asyncio.current_task():
                del self._tasks[key]

        if not self.is_current(handle):
            logger.info("stale_page_dropped", handle=handle, page=page_index)
            return None
        self.put(handle, page_index, rows)
        if self._on_commit is not None:
            self._on_commit(handle, page_index)
        return rows
