"""CLI smoke tests against a file-backed database."""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from tourney.cli import cli
from tourney.config import EngineConfig, StorageConfig
from tourney.engine.app import TournamentEngine


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "cli.db")


def _run(runner: CliRunner, db_path: str, *args: str):
    return runner.invoke(cli, ["--db", db_path, *args], catch_exceptions=False)


def _open(db_path: str) -> TournamentEngine:
    return TournamentEngine(EngineConfig(storage=StorageConfig(sqlite_path=db_path)))


@pytest.fixture
def active_tournament(db_path: str):
    runner = CliRunner()
    assert _run(runner, db_path, "tournament", "create", "--name", "Cup", "--id", "trn_cup").exit_code == 0
    assert _run(runner, db_path, "tournament", "status", "trn_cup", "registration_open").exit_code == 0
    for user in ("alice", "bob"):
        assert _run(runner, db_path, "participant", "register", "trn_cup", user).exit_code == 0
    assert _run(runner, db_path, "tournament", "status", "trn_cup", "registration_closed").exit_code == 0
    assert _run(runner, db_path, "tournament", "status", "trn_cup", "active").exit_code == 0

    with _open(db_path) as eng:
        ids = {u: eng.ledger.get_participant_by_user("trn_cup", u).id for u in ("alice", "bob")}
    return runner, ids


class TestCli:
    def test_init_db(self, db_path: str) -> None:
        result = _run(CliRunner(), db_path, "init-db")
        assert result.exit_code == 0
        assert "Database ready" in result.output

    def test_invalid_transition_exits_nonzero(self, db_path: str) -> None:
        runner = CliRunner()
        _run(runner, db_path, "tournament", "create", "--name", "Cup", "--id", "trn_x")
        result = _run(runner, db_path, "tournament", "status", "trn_x", "active")
        assert result.exit_code == 1
        assert "INVALID_TRANSITION" in result.output

    def test_ingest_and_leaderboard(self, tmp_path, db_path: str, active_tournament) -> None:
        runner, ids = active_tournament
        events = [
            {"type": "trade", "tournament_id": "trn_cup", "participant_id": ids["alice"],
             "idempotency_key": "t1",
             "payload": {"symbol": "AAPL", "side": "buy", "quantity": 10, "price": 150.0, "realized_pnl": 40.0}},
            {"type": "trade", "tournament_id": "trn_cup", "participant_id": ids["alice"],
             "idempotency_key": "t1",
             "payload": {"symbol": "AAPL", "side": "buy", "quantity": 10, "price": 150.0, "realized_pnl": 40.0}},
            {"type": "snapshot", "tournament_id": "trn_cup", "participant_id": ids["bob"],
             "payload": {"recorded_at": "2026-03-02T16:00:00Z", "realized_pnl": 100.0,
                         "unrealized_pnl": 25.0, "balance": 100_125.0}},
        ]
        path = tmp_path / "events.jsonl"
        path.write_text("\n".join(json.dumps(e) for e in events) + "\n")

        result = _run(runner, db_path, "ingest", str(path))
        assert result.exit_code == 0
        assert "applied=2 duplicate=1 rejected=0" in result.output

        board = json.loads(_run(runner, db_path, "leaderboard", "trn_cup", "--json").output)
        assert [(e["user_id"], e["rank"]) for e in board["entries"]] == [("bob", 1), ("alice", 2)]
        assert board["entries"][0]["total_pnl"] == 125.0

        rank = json.loads(_run(runner, db_path, "rank", ids["alice"]).output)
        assert rank["current_rank"] == 2

    def test_ingest_reports_rejections(self, tmp_path, db_path: str, active_tournament) -> None:
        runner, ids = active_tournament
        path = tmp_path / "bad.jsonl"
        path.write_text(
            "not json\n"
            + json.dumps({"type": "trade", "tournament_id": "trn_cup", "participant_id": ids["bob"],
                          "idempotency_key": "z", "payload": {"symbol": "AAPL", "side": "buy",
                                                              "quantity": -1, "price": 1.0}})
            + "\n"
        )
        result = _run(runner, db_path, "ingest", str(path))
        assert result.exit_code == 2
        assert "rejected=2" in result.output

    def test_unknown_leaderboard(self, db_path: str) -> None:
        result = _run(CliRunner(), db_path, "leaderboard", "trn_missing")
        assert result.exit_code == 1

    def test_audit_verify(self, db_path: str, active_tournament) -> None:
        runner, _ = active_tournament
        result = _run(runner, db_path, "audit", "--verify")
        assert result.exit_code == 0
        assert "0 invalid" in result.output

    def test_disqualify(self, db_path: str, active_tournament) -> None:
        runner, ids = active_tournament
        result = _run(runner, db_path, "participant", "disqualify", ids["bob"], "--reason", "wash trading")
        assert result.exit_code == 0
        with _open(db_path) as eng:
            assert eng.ledger.get_participant(ids["bob"]).disqualified

    def test_backup(self, tmp_path, db_path: str) -> None:
        runner = CliRunner()
        _run(runner, db_path, "init-db")
        # backup_dir comes from config.yaml; point it into tmp_path via a config file
        cfg = tmp_path / "config.yaml"
        cfg.write_text(f"storage:\n  sqlite_path: {db_path}\n  backup_dir: {tmp_path / 'bk'}\n")
        result = runner.invoke(cli, ["--config", str(cfg), "backup"], catch_exceptions=False)
        assert result.exit_code == 0
        assert list((tmp_path / "bk").glob("tourney_*.db"))

    def test_metrics(self, db_path: str) -> None:
        result = _run(CliRunner(), db_path, "metrics")
        assert result.exit_code == 0
        assert set(json.loads(result.output)) >= {"counters", "gauges"}
