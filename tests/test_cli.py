"""End-to-end tests for the insider-finder command line."""

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from polymarket_insider_finder.cli import app

WALLET = "0x00000000000000000000000000000000000000aa"

runner = CliRunner()


@pytest.fixture
def workdir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")
    monkeypatch.setenv("SCAN_PROGRESS", "false")
    monkeypatch.setenv("SCAN_SHARD_COUNT", "2")
    monkeypatch.setenv("SCAN_CONCURRENCY", "1")
    monkeypatch.delenv("REDIS_URL", raising=False)
    monkeypatch.delenv("DRY_RUN", raising=False)
    return tmp_path


def write_lines(path: Path, rows: list[dict]) -> Path:
    path.write_text("\n".join(json.dumps(r) for r in rows) + "\n")
    return path


def test_config_redacts_database_password(workdir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://scanner:hunter2@db/insiders")

    result = runner.invoke(app, ["config"])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["database_url"] == "postgresql+asyncpg://scanner:***@db/insiders"


def test_scan_then_query_and_wallet(workdir: Path) -> None:
    trades = write_lines(
        workdir / "trades.jsonl",
        [
            {
                "id": "t-1",
                "walletAddress": WALLET,
                "marketId": "m-1",
                "marketQuestion": "Will it happen?",
                "marketCategory": "Politics",
                "outcomeName": "Yes",
                "side": "BUY",
                "price": "0.05",
                "usdValue": "400",
                "timestamp": "2026-10-17T10:00:00Z",
            },
            {"id": "broken"},
        ],
    )
    resolutions = write_lines(
        workdir / "resolutions.jsonl",
        [{"marketId": "m-1", "winningOutcome": "Yes", "resolvedAt": "2026-10-17T11:00:00Z"}],
    )

    assert runner.invoke(app, ["init-db"]).exit_code == 0
    scanned = runner.invoke(app, ["scan", "-t", str(trades), "-r", str(resolutions)])
    assert scanned.exit_code == 0, scanned.output

    listed = runner.invoke(app, ["query", "--badges", "LONG_SHOT", "--timeframe", "3650"])
    assert listed.exit_code == 0, listed.output
    payload = json.loads(listed.stdout)
    assert [w["address"] for w in payload["data"]] == [WALLET]

    detail = runner.invoke(app, ["wallet", WALLET])
    assert detail.exit_code == 0, detail.output
    wallet = json.loads(detail.stdout)
    assert {b["type"] for b in wallet["badges"]} == {"LONG_SHOT", "LATE_WINNER"}
    assert wallet["wallet"]["winRate"] == 1.0


def test_wallet_not_found_exits_nonzero(workdir: Path) -> None:
    assert runner.invoke(app, ["init-db"]).exit_code == 0

    result = runner.invoke(app, ["wallet", "0xmissing"])

    assert result.exit_code == 1
    assert json.loads(result.stdout)["success"] is False


def test_query_rejects_inverted_size_range(workdir: Path) -> None:
    assert runner.invoke(app, ["init-db"]).exit_code == 0

    result = runner.invoke(app, ["query", "--min-size", "500", "--max-size", "10"])

    assert result.exit_code == 1
    assert json.loads(result.stdout)["data"] == []


def test_scan_refuses_concurrency_above_shards(workdir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SCAN_CONCURRENCY", "4")
    trades = write_lines(workdir / "trades.jsonl", [])

    result = runner.invoke(app, ["scan", "-t", str(trades)])

    assert result.exit_code == 2
