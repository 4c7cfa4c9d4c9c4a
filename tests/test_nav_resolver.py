from __future__ import annotations

import asyncio

import pytest
from conftest import MAY_HISTORY, FakeClock, FakeHistory

from config import constants
from domain.errors import FetchFailure
from domain.nav import HistoryPage, NavRecord
from services.nav_cache import NavTableCache
from services.nav_resolver import NavResolver


def test_before_on_missing_date_is_none(resolver):
    assert asyncio.run(resolver.resolve("161725", "2024-05-10", constants.TIMING_BEFORE)) is None


def test_after_on_missing_date_takes_next(resolver):
    assert asyncio.run(resolver.resolve("161725", "2024-05-10", constants.TIMING_AFTER)) == 1.05


def test_resolves_from_later_page(history, resolver):
    # per=3：第 1 页 05-14/13/09，第 2 页 05-08/07/06
    nav = asyncio.run(resolver.resolve("161725", "2024-05-07", constants.TIMING_BEFORE))
    assert nav == 1.01
    assert history.calls == [("161725", 1), ("161725", 2)]


def test_result_is_cached(history, resolver):
    async def go():
        a = await resolver.resolve("161725", "2024-05-13", constants.TIMING_BEFORE)
        b = await resolver.resolve("161725", "2024-05-13", constants.TIMING_BEFORE)
        return a, b

    assert asyncio.run(go()) == (1.05, 1.05)
    assert history.calls == [("161725", 1)]


def test_fetched_pages_are_reused_for_other_keys(history, resolver):
    async def go():
        await resolver.resolve("161725", "2024-05-07", constants.TIMING_BEFORE)
        return await resolver.resolve("161725", "2024-05-08", constants.TIMING_BEFORE)

    assert asyncio.run(go()) == 1.02
    assert len(history.calls) == 2


def test_concurrent_calls_share_one_fetch():
    history = FakeHistory(MAY_HISTORY, per=10, delay=0.01)
    resolver = NavResolver(history)

    async def go():
        key = ("161725", "2024-05-13", constants.TIMING_BEFORE)
        tasks = [asyncio.ensure_future(resolver.resolve(*key)) for _ in range(5)]
        await asyncio.sleep(0)
        pending = resolver.is_pending(*key)
        results = await asyncio.gather(*tasks)
        return pending, results, resolver.is_pending(*key)

    pending, results, still_pending = asyncio.run(go())
    assert pending is True
    assert results == [1.05] * 5
    assert still_pending is False
    assert history.calls == [("161725", 1)]


def test_scan_stops_once_past_order_date():
    rows = [(f"2024-04-{d:02d}", 1.0 + d / 100) for d in range(1, 31) if d != 23]
    history = FakeHistory(rows, per=5)
    resolver = NavResolver(history)
    # 第 2 页最老的是 04-20，已早于下单日，后面的分页不再拉
    assert asyncio.run(resolver.resolve("161725", "2024-04-23", constants.TIMING_BEFORE)) is None
    assert [p for _, p in history.calls] == [1, 2]


def test_not_found_cached_until_ttl_expires(history):
    clock = FakeClock()
    resolver = NavResolver(history, miss_ttl_sec=60, clock=clock)
    key = ("161725", "2024-05-10", constants.TIMING_BEFORE)

    assert asyncio.run(resolver.resolve(*key)) is None
    calls = len(history.calls)
    assert asyncio.run(resolver.resolve(*key)) is None
    assert len(history.calls) == calls

    # 净值晚些时候公布了
    history.rows.insert(0, ("2024-05-10", 1.04))
    history.rows.sort(key=lambda r: r[0], reverse=True)
    clock.t += 61
    assert asyncio.run(resolver.resolve(*key)) == 1.04


def test_first_page_failure_raises_and_is_not_cached(history):
    resolver = NavResolver(FakeHistory(MAY_HISTORY, fail_pages=[1]))
    with pytest.raises(FetchFailure):
        asyncio.run(resolver.resolve("161725", "2024-05-13", constants.TIMING_BEFORE))
    assert not resolver.is_pending("161725", "2024-05-13", constants.TIMING_BEFORE)

    resolver.fetch_page = history
    assert asyncio.run(resolver.resolve("161725", "2024-05-13", constants.TIMING_BEFORE)) == 1.05


def test_later_page_failure_gives_uncached_none():
    failing = FakeHistory(MAY_HISTORY, per=3, fail_pages=[2])
    resolver = NavResolver(failing)
    key = ("161725", "2024-05-07", constants.TIMING_BEFORE)

    assert asyncio.run(resolver.resolve(*key)) is None

    failing.fail_pages.clear()
    assert asyncio.run(resolver.resolve(*key)) == 1.01


def test_empty_code_or_date(history, resolver):
    assert asyncio.run(resolver.resolve("", "2024-05-13", constants.TIMING_BEFORE)) is None
    assert asyncio.run(resolver.resolve("161725", "", constants.TIMING_BEFORE)) is None
    assert history.calls == []


def test_page_one_wins_on_duplicate_dates():
    cache = NavTableCache()
    cache.put_page(HistoryPage("161725", 2, [NavRecord("2024-05-09", 9.99)], total_pages=2))
    cache.put_page(HistoryPage("161725", 1, [NavRecord("2024-05-09", 1.03)], total_pages=2))
    assert [r.nav for r in cache.combined_history("161725")] == [1.03]
    assert cache.total_pages("161725") == 2

    cache.clear("161725")
    assert not cache.has_pages("161725")


def test_after_keeps_paging_until_order_date_covered(history, resolver):
    # 第 1 页只到 05-09；05-07 之后的第一个净值是第 2 页的 05-08
    nav = asyncio.run(resolver.resolve("161725", "2024-05-07", constants.TIMING_AFTER))
    assert nav == 1.02
    assert [p for _, p in history.calls] == [1, 2]


def test_after_does_not_trust_cached_pages_short_of_order_date(history, resolver):
    async def go():
        await resolver.resolve("161725", "2024-05-13", constants.TIMING_BEFORE)
        return await resolver.resolve("161725", "2024-05-07", constants.TIMING_AFTER)

    assert asyncio.run(go()) == 1.02
    assert [p for _, p in history.calls] == [1, 1, 2]


def test_new_first_page_drops_stale_later_pages(history, resolver):
    assert asyncio.run(resolver.resolve("161725", "2024-05-07", constants.TIMING_BEFORE)) == 1.01

    # 05-15 公布后每一页都往后挪一行，旧的第 2 页里已经没有 05-09
    history.rows.insert(0, ("2024-05-15", 1.07))
    assert asyncio.run(resolver.resolve("161725", "2024-05-15", constants.TIMING_BEFORE)) == 1.07
    assert resolver.cache.get_page("161725", 2) is None

    assert asyncio.run(resolver.resolve("161725", "2024-05-08", constants.TIMING_AFTER)) == 1.03
    assert [p for _, p in history.calls] == [1, 2, 1, 1, 2]


def test_invalidate_drops_cached_results(history, resolver):
    key = ("161725", "2024-05-10", constants.TIMING_BEFORE)
    assert asyncio.run(resolver.resolve(*key)) is None

    history.rows.insert(2, ("2024-05-10", 1.04))
    assert asyncio.run(resolver.resolve(*key)) is None
    assert len(history.calls) == 1

    resolver.invalidate("161725")
    assert asyncio.run(resolver.resolve(*key)) == 1.04
    assert len(history.calls) == 2
