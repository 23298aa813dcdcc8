"""Tests for the performance snapshot recorder."""

from __future__ import annotations

import datetime as dt

import pytest

from conftest import snapshot_event
from tourney.errors import DuplicateEvent, UnknownParticipant
from tourney.observability.metrics import metrics
from tourney.storage.audit import AuditFilter
from tourney.storage.models import utc_now

T0 = dt.datetime(2026, 3, 2, 16, 0, tzinfo=dt.timezone.utc)


def _data(t, p, at: dt.datetime, **overrides) -> dict:
    data = {
        "tournament_id": t.id,
        "participant_id": p.id,
        "recorded_at": at,
        "balance": 100_000.0,
    }
    data.update(overrides)
    return data


class TestRecord:
    def test_record_does_not_touch_aggregates(self, engine, setup_tournament) -> None:
        t, ps = setup_tournament()
        p = ps["alice"]
        snap = engine.performance.record_performance(_data(t, p, T0, realized_pnl=500.0))
        assert snap.total_pnl == 500.0
        assert snap.id.startswith("perf_")
        assert engine.ledger.get_participant(p.id).total_pnl == 0.0
        entries = engine.audit.get_audit_logs(AuditFilter(action="performance.recorded"))
        assert entries[0].entity_id == snap.id

    def test_duplicate(self, engine, setup_tournament) -> None:
        t, ps = setup_tournament()
        engine.performance.record_performance(_data(t, ps["alice"], T0))
        with pytest.raises(DuplicateEvent):
            engine.performance.record_performance(_data(t, ps["alice"], T0))

    def test_unknown_participant(self, engine, setup_tournament) -> None:
        t, _ = setup_tournament()
        with pytest.raises(UnknownParticipant):
            engine.performance.record_performance(
                {"tournament_id": t.id, "participant_id": "par_nope", "recorded_at": T0, "balance": 1.0}
            )

    def test_position_summary_derived(self, engine, setup_tournament) -> None:
        t, ps = setup_tournament()
        snap = engine.performance.record_performance(_data(
            t, ps["alice"], T0,
            positions=[
                {"symbol": "AAPL", "quantity": 10, "avg_price": 150.0},
                {"symbol": "TSLA", "quantity": -2, "avg_price": 190.0},
                {"symbol": "MSFT", "quantity": 5, "avg_price": 400.0},
            ],
        ))
        assert snap.position_count == 3
        assert snap.long_positions == 2
        assert snap.short_positions == 1
        stored = engine.performance.get_latest_performance(ps["alice"].id)
        assert [pos["symbol"] for pos in stored.positions] == ["AAPL", "TSLA", "MSFT"]

    def test_reported_risk_metrics_kept(self, engine, setup_tournament) -> None:
        t, ps = setup_tournament()
        snap = engine.performance.record_performance(_data(
            t, ps["alice"], T0, max_drawdown=0.12, volatility=0.03, sharpe_ratio=1.7
        ))
        assert (snap.max_drawdown, snap.volatility, snap.sharpe_ratio) == (0.12, 0.03, 1.7)

    def test_risk_metrics_derived_from_equity(self, engine, setup_tournament) -> None:
        t, ps = setup_tournament()
        p = ps["alice"]
        for i, pnl in enumerate([1_000.0, -2_000.0, 500.0]):
            snap = engine.performance.record_performance(
                _data(t, p, T0 + dt.timedelta(hours=i), realized_pnl=pnl)
            )
        # equity: 100000, 101000, 98000, 100500
        assert snap.max_drawdown == pytest.approx(3_000 / 101_000)
        assert snap.volatility is not None
        assert snap.sharpe_ratio is not None

    def test_first_snapshot_has_no_volatility(self, engine, setup_tournament) -> None:
        t, ps = setup_tournament()
        snap = engine.performance.record_performance(_data(t, ps["alice"], T0, realized_pnl=10.0))
        assert snap.volatility is None
        assert snap.max_drawdown == 0.0


class TestReads:
    @pytest.fixture
    def history(self, engine, setup_tournament):
        t, ps = setup_tournament()
        for i in range(5):
            engine.ingestion.apply_snapshot_event(snapshot_event(
                t, ps["alice"], T0 + dt.timedelta(days=i),
                realized_pnl=100.0 * i, number_of_trades=i * 2, total_notional_traded=1_000.0 * i,
                win_rate=0.5,
            ))
        engine.ingestion.apply_snapshot_event(snapshot_event(t, ps["bob"], T0 + dt.timedelta(days=1), realized_pnl=900.0))
        return t, ps

    def test_latest(self, engine, history) -> None:
        _, ps = history
        latest = engine.performance.get_latest_performance(ps["alice"].id)
        assert latest.total_pnl == 400.0
        assert latest.recorded_at.startswith("2026-03-06")

    def test_history_newest_first(self, engine, history) -> None:
        _, ps = history
        rows = engine.performance.get_performance_history(ps["alice"].id, limit=3)
        assert [r.total_pnl for r in rows] == [400.0, 300.0, 200.0]

    def test_history_window(self, engine, history) -> None:
        _, ps = history
        rows = engine.performance.get_performance_history(
            ps["alice"].id, from_date=T0 + dt.timedelta(days=1), to_date=T0 + dt.timedelta(days=2)
        )
        assert [r.total_pnl for r in rows] == [200.0, 100.0]

    def test_tournament_snapshot_at(self, engine, history) -> None:
        t, ps = history
        rows = engine.performance.get_tournament_performance_snapshot(t.id, at=T0 + dt.timedelta(days=2))
        assert [(r.participant_id, r.total_pnl) for r in rows] == [
            (ps["bob"].id, 900.0),
            (ps["alice"].id, 200.0),
        ]

    def test_tournament_snapshot_now(self, engine, history) -> None:
        t, ps = history
        rows = engine.performance.get_tournament_performance_snapshot(t.id)
        assert {r.participant_id: r.total_pnl for r in rows}[ps["alice"].id] == 400.0

    def test_metrics(self, engine, history) -> None:
        _, ps = history
        m = engine.performance.get_performance_metrics(ps["alice"].id)
        assert m.current_pnl == 400.0
        assert m.total_trades == 8
        assert m.win_rate == 0.5
        assert m.average_trade_size == pytest.approx(500.0)
        assert m.snapshot_count == 5
        assert engine.performance.get_performance_metrics(ps["carol"].id) is None


class TestCleanup:
    def test_purges_old_snapshots(self, engine, setup_tournament) -> None:
        t, ps = setup_tournament()
        p = ps["alice"]
        now = utc_now()
        engine.performance.record_performance(_data(t, p, now - dt.timedelta(days=120)))
        engine.performance.record_performance(_data(t, p, now - dt.timedelta(days=10)))

        assert engine.performance.cleanup_old_performance_data() == 1
        assert len(engine.performance.get_performance_history(p.id)) == 1
        assert metrics.counter("performance.purged") == 1
        purged = engine.audit.get_audit_logs(AuditFilter(action="performance.purged"))
        assert purged[0].metadata["deleted"] == 1

    def test_custom_horizon(self, engine, setup_tournament) -> None:
        t, ps = setup_tournament()
        engine.performance.record_performance(_data(t, ps["alice"], utc_now() - dt.timedelta(days=10)))
        assert engine.performance.cleanup_old_performance_data(days_to_keep=5) == 1

    def test_failure_returns_zero(self, engine, monkeypatch) -> None:
        def broken(fn):
            raise RuntimeError("locked")

        monkeypatch.setattr(engine.db, "write", broken)
        assert engine.performance.cleanup_old_performance_data() == 0
