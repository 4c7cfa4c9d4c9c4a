from __future__ import annotations

import asyncio

from conftest import cn

from config import constants, settings
from domain.holding import Holding
from domain.nav import LatestQuote
from services.ledger_service import build_edit_operation
from services.portfolio_service import PortfolioState
from storage.json_store import JsonKeyValueStore, MemoryKeyValueStore, load_json, save_json


def test_first_run_seeds_default_watchlist(tmp_path):
    state = PortfolioState.load(JsonKeyValueStore(tmp_path))
    assert state.watchlist == settings.DEFAULT_WATCHLIST
    assert state.holdings == {}
    assert len(state.ledger) == 0


def test_saved_empty_lists_are_not_first_run(tmp_path):
    store = JsonKeyValueStore(tmp_path)
    PortfolioState(store).save()
    assert PortfolioState.load(store).watchlist == []


def test_state_round_trip(tmp_path):
    store = JsonKeyValueStore(tmp_path)
    state = PortfolioState(store)
    h = Holding(code="161725", method=constants.METHOD_SHARES, shares=100.0, cost_price=1.2, first_buy="2024-01-02")
    state.put_holding(h)
    state.add_to_watchlist("1632")
    state.ledger.record(build_edit_operation(None, h, now=cn(2024, 5, 10, 9)))
    state.save()

    loaded = PortfolioState.load(store)
    assert loaded.get_holding("161725") == h
    assert loaded.watchlist == ["001632"]
    assert loaded.ledger.operations == state.ledger.operations
    assert loaded.tracked_codes() == ["161725", "001632"]


def test_legacy_holdings_are_normalized():
    store = MemoryKeyValueStore(
        {
            "holdings": [
                {"code": "1632", "shares": 10, "costPrice": 1.5, "firstBuy": "2024-01-02"},
                {"code": "161725", "amount": "1,000.50", "profit": 20},
                "junk",
            ],
            "watchlist": ["161725", "161725", ""],
        }
    )
    state = PortfolioState.load(store)
    assert state.get_holding("001632").method == constants.METHOD_SHARES
    assert state.get_holding("001632").cost_price == 1.5
    assert state.get_holding("161725").amount == 1000.5
    assert state.get_holding("161725").method == constants.METHOD_AMOUNT
    assert state.watchlist == ["161725"]


def test_corrupt_json_falls_back_to_default(tmp_path):
    p = tmp_path / "holdings.json"
    p.write_text("{not json", encoding="utf-8")
    assert load_json(p, default=[]) == []

    save_json(p, [{"code": "161725"}])
    assert load_json(p) == [{"code": "161725"}]
    assert list(tmp_path.glob("*.tmp")) == []


def test_refresh_quotes_keeps_previous_on_failure(state):
    state.add_to_watchlist("161725")
    state.add_to_watchlist("001632")
    old = LatestQuote(code="001632", name="旧", nav=1.0, nav_date="2024-05-09", est_nav=None, est_pct=None)
    state.quotes["001632"] = old

    async def fetch(code):
        if code == "001632":
            raise RuntimeError("timeout")
        return LatestQuote(code=code, name="白酒", nav=1.03, nav_date="2024-05-09", est_nav=1.04, est_pct=0.9)

    updated = asyncio.run(state.refresh_quotes(fetch_quote=fetch))
    assert set(updated) == {"161725"}
    assert state.latest_nav("161725") == 1.03
    assert state.quotes["001632"] is old
    assert state.fund_name("161725") == "白酒"


def test_watchlist_add_remove(state):
    assert state.add_to_watchlist("161725")
    assert not state.add_to_watchlist("161725")
    assert state.remove_from_watchlist("161725")
    assert not state.remove_from_watchlist("161725")
