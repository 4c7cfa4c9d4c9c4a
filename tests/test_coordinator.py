from __future__ import annotations

import asyncio
from typing import Callable, Dict, List, Optional, Tuple

import pytest
from conftest import cn, set_latest_nav

from config import constants
from domain.errors import FetchFailure
from domain.holding import Holding
from services.ledger_service import build_trade_operation
from services.reconcile_service import ReconcileCoordinator
from services.trade_service import TradeOrchestrator

CODE = "161725"


class ScriptedResolver:
    def __init__(self, navs: Dict[Tuple[str, str], float], delay: float = 0.0) -> None:
        self.navs = navs
        self.delay = delay
        self.fail = False
        self.on_first_call: Optional[Callable[[], None]] = None
        self.calls: List[Tuple[str, str, str]] = []

    async def resolve(self, code: str, date: str, timing: str) -> Optional[float]:
        self.calls.append((code, date, timing))
        await asyncio.sleep(self.delay)
        if self.on_first_call is not None:
            cb, self.on_first_call = self.on_first_call, None
            cb()
        if self.fail:
            raise FetchFailure(code, "down", page=1)
        return self.navs.get((date, timing))


def _raw_add(date: str, amount: float, timing=constants.TIMING_BEFORE):
    """只有金额、没有成交净值的旧流水"""
    return build_trade_operation(
        constants.OP_ADD,
        None,
        None,
        timing=timing,
        is_qdii=False,
        method=constants.METHOD_AMOUNT,
        date=date,
        amount=amount,
        now=cn(2024, 5, 15, 10),
        code=CODE,
    )


NAVS = {
    ("2024-05-08", constants.TIMING_BEFORE): 1.0,
    ("2024-05-09", constants.TIMING_BEFORE): 1.25,
}


def test_sync_applies_replay_and_backfills(state):
    set_latest_nav(state, CODE, 1.25)
    state.ledger.record(_raw_add("2024-05-08", 100.0))
    state.ledger.record(_raw_add("2024-05-09", 125.0))
    coord = ReconcileCoordinator(state, ScriptedResolver(NAVS))

    assert asyncio.run(coord.sync(CODE)) is True
    h = state.get_holding(CODE)
    assert h.shares == 200.0
    assert h.cost_price == 1.125
    assert h.amount == 250.0
    assert h.profit == 25.0
    assert h.first_buy == "2024-05-08"

    backfilled = {op.date: (op.nav, op.shares) for op in state.ledger}
    assert backfilled == {"2024-05-08": (1.0, 100.0), "2024-05-09": (1.25, 100.0)}


def test_unchanged_inputs_do_no_work(state):
    set_latest_nav(state, CODE, 1.0)
    state.ledger.record(_raw_add("2024-05-08", 100.0))
    resolver = ScriptedResolver(NAVS)
    coord = ReconcileCoordinator(state, resolver)

    assert asyncio.run(coord.sync(CODE, backfill=False)) is True
    calls = len(resolver.calls)
    assert asyncio.run(coord.sync(CODE, backfill=False)) is False
    assert len(resolver.calls) == calls

    # 最新净值变化会让 sync key 失效
    set_latest_nav(state, CODE, 1.1)
    assert asyncio.run(coord.sync(CODE, backfill=False)) is True
    assert state.get_holding(CODE).amount == 110.0


def test_concurrent_trigger_is_coalesced(state):
    set_latest_nav(state, CODE, 1.0)
    state.ledger.record(_raw_add("2024-05-08", 100.0))
    coord = ReconcileCoordinator(state, ScriptedResolver(NAVS, delay=0.01))

    async def go():
        first = coord.trigger(CODE)
        await asyncio.sleep(0)
        assert coord.is_running(CODE)
        second = await coord.sync(CODE)
        return await first, second

    assert asyncio.run(go()) == (True, False)
    assert not coord.is_running(CODE)


def test_stale_result_is_discarded_and_rerun(state):
    set_latest_nav(state, CODE, 1.0)
    state.ledger.record(_raw_add("2024-05-08", 100.0))
    resolver = ScriptedResolver(NAVS)
    # 回放途中又来了一笔交易
    resolver.on_first_call = lambda: state.ledger.record(_raw_add("2024-05-09", 125.0))
    coord = ReconcileCoordinator(state, resolver)

    assert asyncio.run(coord.sync(CODE, backfill=False)) is True
    assert state.get_holding(CODE).shares == 200.0


def test_fetch_failure_leaves_holding_and_retries(state):
    set_latest_nav(state, CODE, 1.0)
    before = Holding(code=CODE, method=constants.METHOD_AMOUNT, amount=100.0, profit=0.0, first_buy="2024-05-08")
    state.put_holding(before)
    state.ledger.record(_raw_add("2024-05-08", 100.0))
    resolver = ScriptedResolver(NAVS)
    resolver.fail = True
    coord = ReconcileCoordinator(state, resolver)

    assert asyncio.run(coord.sync(CODE)) is False
    assert state.get_holding(CODE) == before

    resolver.fail = False
    assert asyncio.run(coord.sync(CODE)) is True
    assert state.get_holding(CODE).method == constants.METHOD_SHARES
    assert state.get_holding(CODE).shares == 100.0


def test_replay_to_zero_deletes_holding(trader_state):
    state, trader = trader_state
    # 另一端录入的减仓：只进了流水，持仓还没更新
    state.ledger.record(
        build_trade_operation(
            constants.OP_REDUCE,
            state.get_holding(CODE),
            None,
            timing=constants.TIMING_BEFORE,
            is_qdii=False,
            method=constants.METHOD_SHARES,
            date="2024-05-13",
            amount=105.0,
            shares=100.0,
            nav=1.05,
            now=cn(2024, 5, 15, 10),
        )
    )
    coord = ReconcileCoordinator(state, trader.resolver)
    assert state.get_holding(CODE) is not None

    assert asyncio.run(coord.sync(CODE)) is True
    assert state.get_holding(CODE) is None


@pytest.fixture
def trader_state(state, resolver):
    set_latest_nav(state, CODE, 1.0)
    trader = TradeOrchestrator(state, resolver, clock=lambda: cn(2024, 5, 15, 10))
    # 05-08 净值 1.02 买入 100 份
    asyncio.run(trader.trade_add(CODE, 102.0, date="2024-05-08"))
    return state, trader


def test_backfill_resolves_each_key_once(state):
    resolver = ScriptedResolver(NAVS)
    state.ledger.record(_raw_add("2024-05-08", 100.0))
    state.ledger.record(_raw_add("2024-05-08", 50.0))
    coord = ReconcileCoordinator(state, resolver)

    assert asyncio.run(coord.backfill_operation_navs("161725")) == 2
    assert resolver.calls == [(CODE, "2024-05-08", constants.TIMING_BEFORE)]
    assert sorted(op.shares for op in state.ledger) == [50.0, 100.0]
    assert all(op.nav == 1.0 for op in state.ledger)

    # 已经补齐的流水不会再改
    assert asyncio.run(coord.backfill_operation_navs(CODE)) == 0
