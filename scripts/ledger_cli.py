# scripts/ledger_cli.py
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

import pandas as pd

from config import constants
from datasources.quote_api import fetch_fee_rate_async
from domain.errors import LedgerError
from domain.operation import TradeOperation
from services.holding_service import holding_view
from services.nav_resolver import NavResolver
from services.portfolio_service import PortfolioState
from services.reconcile_service import ReconcileCoordinator
from services.trade_service import TradeOrchestrator
from storage.json_store import JsonKeyValueStore, load_json
from utils.log_utils import setup_logging
from utils.parse_utils import normalize_code

logger = logging.getLogger("ledger_cli")


def _print_table(rows: List[dict], empty: str) -> None:
    if not rows:
        print(empty)
        return
    df = pd.DataFrame(rows)
    print(df.to_string(index=False))


def _holding_rows(state: PortfolioState) -> List[dict]:
    rows = []
    for h in state.holdings_list():
        nav = state.latest_nav(h.code)
        v = holding_view(h, nav)
        rows.append(
            {
                "code": h.code,
                "name": state.fund_name(h.code),
                "method": h.method,
                "shares": h.shares,
                "latest_nav": nav,
                "amount": None if v.amount is None else round(v.amount, 2),
                "profit": None if v.profit is None else round(v.profit, 2),
                "cost_unit": None if v.cost_unit is None else round(v.cost_unit, 4),
                "first_buy": h.first_buy,
            }
        )
    return rows


def _operation_rows(state: PortfolioState, code: Optional[str]) -> List[dict]:
    ops = state.ledger.for_code(normalize_code(code)) if code else state.ledger.operations
    rows = []
    for op in ops:
        trade = op if isinstance(op, TradeOperation) else None
        rows.append(
            {
                "id": op.id[:8],
                "code": op.code,
                "type": op.type,
                "status": op.status,
                "date": op.date,
                "timing": trade.timing if trade else "",
                "amount": getattr(op, "amount", None),
                "shares": getattr(op, "shares", None),
                "nav": trade.nav if trade else None,
                "fee": trade.fee if trade else None,
                "apply_at": op.apply_at.strftime("%Y-%m-%d %H:%M"),
            }
        )
    return rows


def _find_op_id(state: PortfolioState, prefix: str) -> str:
    matches = [op.id for op in state.ledger if op.id.startswith(prefix)]
    if len(matches) != 1:
        raise LedgerError(f"operation id prefix {prefix!r} matched {len(matches)} operations")
    return matches[0]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fund ledger CLI (holdings derived from operations)")
    parser.add_argument("--log-level", default=None, help="DEBUG/INFO/WARNING")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("holdings", help="show holdings (refreshes latest quotes)")

    p_ops = sub.add_parser("ops", help="show operation ledger")
    p_ops.add_argument("--code", default=None)

    p_add = sub.add_parser("add", help="buy by amount")
    p_add.add_argument("code")
    p_add.add_argument("amount", type=float)
    p_add.add_argument("--fee-rate", type=float, default=None, help="percent, e.g. 0.15; looked up when omitted")
    p_add.add_argument("--date", default=None, help="YYYY-MM-DD, default today")
    p_add.add_argument("--timing", choices=constants.TIMINGS, default=constants.TIMING_BEFORE)

    p_red = sub.add_parser("reduce", help="sell by shares")
    p_red.add_argument("code")
    p_red.add_argument("shares", type=float)
    p_red.add_argument("--fee", type=float, default=None)
    p_red.add_argument("--date", default=None)
    p_red.add_argument("--timing", choices=constants.TIMINGS, default=constants.TIMING_BEFORE)

    p_edit = sub.add_parser("edit", help="overwrite holding")
    p_edit.add_argument("code")
    p_edit.add_argument("--method", choices=constants.METHODS, required=True)
    p_edit.add_argument("--amount", type=float, default=None)
    p_edit.add_argument("--profit", type=float, default=None)
    p_edit.add_argument("--shares", type=float, default=None)
    p_edit.add_argument("--cost-price", type=float, default=None)
    p_edit.add_argument("--first-buy", required=True, help="YYYY-MM-DD")

    p_undo = sub.add_parser("undo", help="revert one operation (id or id prefix)")
    p_undo.add_argument("op_id")

    p_imp = sub.add_parser("import", help="batch import trades from a JSON list")
    p_imp.add_argument("code")
    p_imp.add_argument("file", type=Path)
    p_imp.add_argument("--fee-rate", type=float, default=None, help="percent; looked up when omitted")

    p_ref = sub.add_parser("refresh", help="refresh quotes, backfill navs and replay operations")
    p_ref.add_argument("code", nargs="?", default=None)

    p_rm = sub.add_parser("remove", help="remove fund and purge its operations")
    p_rm.add_argument("code")

    p_watch = sub.add_parser("watch", help="add fund to watchlist")
    p_watch.add_argument("code")

    return parser


async def run(args: argparse.Namespace, store: JsonKeyValueStore) -> int:
    state = PortfolioState.load(store)
    resolver = NavResolver()
    trader = TradeOrchestrator(state, resolver, fee_rates=fetch_fee_rate_async)
    coordinator = ReconcileCoordinator(state, resolver)

    state.ledger.refresh_statuses()
    cmd = args.cmd

    if cmd == "ops":
        _print_table(_operation_rows(state, args.code), "(no operations)")
        return 0

    if cmd == "holdings":
        await state.refresh_quotes()
        _print_table(_holding_rows(state), "(no holdings)")
        return 0

    if cmd == "watch":
        if state.add_to_watchlist(args.code):
            print(f"OK: watching {normalize_code(args.code)}")
        state.save()
        return 0

    if cmd in ("add", "reduce", "import", "edit"):
        # 需要基金名称判断 QDII，需要最新净值推导另一组字段
        await state.refresh_quotes([args.code])

    if cmd == "add":
        op = await trader.trade_add(args.code, args.amount, fee_rate=args.fee_rate, date=args.date, timing=args.timing)
        await coordinator.trigger(op.code)
        print(f"OK: add {op.code} shares={op.shares} nav={op.nav} fee={op.fee} status={op.status}")
    elif cmd == "reduce":
        op = await trader.trade_reduce(args.code, args.shares, fee=args.fee, date=args.date, timing=args.timing)
        await coordinator.trigger(op.code)
        print(f"OK: reduce {op.code} amount={op.amount} nav={op.nav} status={op.status}")
    elif cmd == "edit":
        op = trader.update_holding(
            args.code,
            args.method,
            amount=args.amount,
            profit=args.profit,
            shares=args.shares,
            cost_price=args.cost_price,
            first_buy=args.first_buy,
        )
        print("OK: unchanged" if op is None else f"OK: edit {op.code}")
    elif cmd == "undo":
        op = trader.undo(_find_op_id(state, args.op_id))
        if op is not None:
            await coordinator.trigger(op.code)
        print(f"OK: undo {op.type} {op.code}" if op else "(not found)")
    elif cmd == "import":
        items = load_json(args.file, default=None)
        if not isinstance(items, list):
            raise LedgerError(f"{args.file} must contain a JSON list")
        ops = await trader.apply_batch_import(args.code, items, fee_rate=args.fee_rate)
        if ops:
            await coordinator.trigger(args.code)
        print(f"OK: imported {len(ops)}/{len(items)} trades")
    elif cmd == "remove":
        purged = trader.remove_fund(args.code)
        print(f"OK: removed {normalize_code(args.code)} ({purged} operations purged)")
    elif cmd == "refresh":
        codes = [normalize_code(args.code)] if args.code else None
        await state.refresh_quotes(codes)
        if codes:
            changed = codes if await coordinator.sync(codes[0]) else []
        else:
            changed = await coordinator.sync_all()
        print(f"OK: {len(changed)} holdings updated")
        _print_table(_holding_rows(state), "(no holdings)")

    state.save()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    try:
        return asyncio.run(run(args, JsonKeyValueStore()))
    except LedgerError as e:
        logger.error("%s", e)
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
