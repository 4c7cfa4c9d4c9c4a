from __future__ import annotations

import json
from datetime import date, timedelta

import pytest

from scripts import ledger_cli


@pytest.fixture(autouse=True)
def _no_logging_setup(monkeypatch):
    monkeypatch.setattr(ledger_cli, "setup_logging", lambda *a, **k: None)


def test_parser_knows_all_commands():
    parser = ledger_cli.build_parser()
    for argv in (
        ["holdings"],
        ["ops", "--code", "161725"],
        ["add", "161725", "1000", "--fee-rate", "0.15", "--timing", "after"],
        ["reduce", "161725", "10"],
        ["edit", "161725", "--method", "shares", "--shares", "10", "--cost-price", "1.2", "--first-buy", "2024-01-02"],
        ["undo", "abc"],
        ["import", "161725", "trades.json"],
        ["refresh"],
        ["remove", "161725"],
        ["watch", "161725"],
    ):
        assert parser.parse_args(argv).cmd == argv[0]


def test_edit_then_show_holdings(capsys):
    rc = ledger_cli.main(
        ["edit", "161725", "--method", "amount", "--amount", "1000", "--profit", "50", "--first-buy", "2024-01-02"]
    )
    assert rc == 0
    assert "OK: edit 161725" in capsys.readouterr().out

    assert ledger_cli.main(["holdings"]) == 0
    out = capsys.readouterr().out
    assert "161725" in out
    assert "1000.0" in out

    assert ledger_cli.main(["ops"]) == 0
    assert "edit" in capsys.readouterr().out


def test_import_rejects_non_list(tmp_path, capsys):
    f = tmp_path / "trades.json"
    f.write_text(json.dumps({"type": "add"}), encoding="utf-8")
    assert ledger_cli.main(["import", "161725", str(f)]) == 1
    assert "JSON list" in capsys.readouterr().err


def test_undo_unknown_id_fails(capsys):
    assert ledger_cli.main(["undo", "deadbeef"]) == 1
    assert "matched 0 operations" in capsys.readouterr().err


def _last_weekday() -> str:
    d = date.today() - timedelta(days=1)
    while d.weekday() >= 5:
        d -= timedelta(days=1)
    return d.isoformat()


def test_add_without_fee_rate_looks_it_up(capsys):
    d = _last_weekday()
    assert ledger_cli.main(["add", "161725", "1000", "--date", d]) == 0
    out = capsys.readouterr().out
    assert "OK: add 161725" in out
    assert "fee=1.5" in out

    assert ledger_cli.main(["holdings"]) == 0
    assert "161725" in capsys.readouterr().out


def test_explicit_fee_rate_wins(capsys):
    d = _last_weekday()
    assert ledger_cli.main(["add", "161725", "1000", "--date", d, "--fee-rate", "0"]) == 0
    assert "fee=0.0" in capsys.readouterr().out
