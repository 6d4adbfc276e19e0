from __future__ import annotations

import asyncio
import unittest
from decimal import Decimal

from settlements.errors import PageFetchError, PageOutOfRangeError, UnknownHandleError
from settlements.models import ProvidedServiceRow
from settlements.page_cache import PageCache


def row(row_id: int, covered: str = "100") -> ProvidedServiceRow:
    return ProvidedServiceRow(
        id=row_id,
        service_date=None,
        origin_label="-",
        analysis_count=1,
        covered_amount=Decimal(covered),
        copayment_amount=Decimal("0"),
        status="COMPLETED",
    )


class PageCacheTests(unittest.IsolatedAsyncioTestCase):
    async def test_fetch_loads_and_caches_page(self) -> None:
        calls: list[tuple[str, int]] = []
        commits: list[tuple[str, int]] = []

        async def fetcher(handle: str, page: int) -> list[ProvidedServiceRow]:
            calls.append((handle, page))
            return [row(page * 10 + 1), row(page * 10 + 2)]

        cache = PageCache(fetcher, {"A": 2}, on_commit=lambda h, p: commits.append((h, p)))
        rows = await cache.fetch("A", 1)
        self.assertEqual([r.id for r in rows], [11, 12])
        self.assertEqual(await cache.fetch("A", 1), rows)
        self.assertEqual(calls, [("A", 1)])
        self.assertEqual(commits, [("A", 1)])
        self.assertFalse(cache.is_fully_cached("A"))

        await cache.fetch("A", 0)
        self.assertTrue(cache.is_fully_cached("A"))
        self.assertEqual([r.id for r in cache.rows("A")], [1, 2, 11, 12])

    async def test_concurrent_reads_share_one_request(self) -> None:
        calls: list[tuple[str, int]] = []
        gate = asyncio.Event()

        async def fetcher(handle: str, page: int) -> list[ProvidedServiceRow]:
            calls.append((handle, page))
            await gate.wait()
            return [row(1)]

        cache = PageCache(fetcher, {"A": 1})
        first = asyncio.ensure_future(cache.fetch("A", 0))
        second = asyncio.ensure_future(cache.fetch("A", 0))
        await asyncio.sleep(0)
        self.assertTrue(cache.in_flight("A", 0))
        gate.set()
        left, right = await asyncio.gather(first, second)
        self.assertEqual(left, right)
        self.assertEqual(calls, [("A", 0)])

    async def test_response_for_discarded_cache_is_dropped(self) -> None:
        gate = asyncio.Event()
        commits: list[tuple[str, int]] = []

        async def fetcher(handle: str, page: int) -> list[ProvidedServiceRow]:
            await gate.wait()
            return [row(1)]

        cache = PageCache(fetcher, {"A": 1}, on_commit=lambda h, p: commits.append((h, p)))
        task = cache.prefetch("A", 0)
        self.assertIsNotNone(task)
        await asyncio.sleep(0)
        cache.discard()
        gate.set()
        await asyncio.gather(task, return_exceptions=True)

        self.assertIsNone(cache.get("A", 0))
        self.assertEqual(commits, [])
        self.assertIsNone(cache.prefetch("A", 0))
        with self.assertRaises(UnknownHandleError):
            await cache.fetch("A", 0)

    async def test_late_response_ignoring_cancellation_is_dropped(self) -> None:
        gate = asyncio.Event()
        commits: list[tuple[str, int]] = []

        async def fetcher(handle: str, page: int) -> list[ProvidedServiceRow]:
            try:
                await gate.wait()
            except asyncio.CancelledError:
                pass
            return [row(1)]

        cache = PageCache(fetcher, {"A": 1}, on_commit=lambda h, p: commits.append((h, p)))
        task = cache.prefetch("A", 0)
        await asyncio.sleep(0)
        cache.discard()

        self.assertIsNone(await task)
        self.assertIsNone(cache.get("A", 0))
        self.assertEqual(cache.cached_pages("A"), [])
        self.assertEqual(commits, [])

    async def test_failed_page_is_recorded_and_retried(self) -> None:
        attempts = {"count": 0}

        async def fetcher(handle: str, page: int) -> list[ProvidedServiceRow]:
            attempts["count"] += 1
            if attempts["count"] == 1:
                raise RuntimeError("upstream timeout")
            return [row(7)]

        cache = PageCache(fetcher, {"A": 1})
        with self.assertRaises(PageFetchError) as ctx:
            await cache.fetch("A", 0)
        self.assertEqual(ctx.exception.page_index, 0)
        self.assertEqual(cache.failure("A", 0), "upstream timeout")
        self.assertIsNone(cache.get("A", 0))

        rows = await cache.fetch("A", 0)
        self.assertEqual([r.id for r in rows], [7])
        self.assertIsNone(cache.failure("A", 0))

    async def test_range_and_handle_checks(self) -> None:
        async def fetcher(handle: str, page: int) -> list[ProvidedServiceRow]:
            return []

        cache = PageCache(fetcher, {"A": 2})
        with self.assertRaises(PageOutOfRangeError):
            await cache.fetch("A", 2)
        with self.assertRaises(PageOutOfRangeError):
            await cache.fetch("A", -1)
        with self.assertRaises(UnknownHandleError):
            await cache.fetch("B", 0)
        self.assertIsNone(cache.prefetch("A", 5))

    async def test_warm_and_prefetch_window(self) -> None:
        calls: list[int] = []

        async def fetcher(handle: str, page: int) -> list[ProvidedServiceRow]:
            calls.append(page)
            return [row(page)]

        cache = PageCache(fetcher, {"A": 8, "B": 2}, initial_pages=3, prefetch_ahead=2)
        cache.warm("A")
        cache.warm("B")
        await cache.drain()
        self.assertEqual(cache.cached_pages("A"), [0, 1, 2])
        self.assertEqual(cache.cached_pages("B"), [0, 1])

        await cache.fetch("A", 5)
        cache.prefetch_window("A", 5)
        await cache.drain()
        self.assertEqual(cache.cached_pages("A"), [0, 1, 2, 5, 6, 7])

        # already cached pages are not requested again
        before = len(calls)
        cache.prefetch_window("A", 0)
        await cache.drain()
        self.assertEqual(len(calls), before)


if __name__ == "__main__":
    unittest.main()
