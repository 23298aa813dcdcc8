"""Performance snapshot recorder.

Snapshots are point-in-time, append-only copies of a participant's broker
metrics, unique per (participant, recorded_at). Risk metrics the report
leaves out are derived from the participant's equity series: the starting
balance followed by starting balance + total PnL of every snapshot up to and
including the new one.
"""

from __future__ import annotations

import datetime as dt
import json
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Any

from tourney.analytics.risk_metrics import compute_risk_metrics
from tourney.config import RetentionConfig
from tourney.errors import DuplicateEvent, UnknownParticipant
from tourney.engine.events import PerformanceData, SnapshotPayload, parse_event
from tourney.engine.ledger import LedgerStore
from tourney.engine.positions import summarize_positions
from tourney.storage.audit import AuditTrail
from tourney.storage.database import Database
from tourney.storage.models import (
    ParticipantRecord,
    PerformanceSnapshotRecord,
    to_iso,
    utc_now,
)
from tourney.observability.logger import get_logger
from tourney.observability.metrics import metrics

log = get_logger(__name__)


@dataclass
class PerformanceMetrics:
    """Headline metrics from a participant's latest snapshot."""
    current_pnl: float
    total_trades: int
    win_rate: float
    sharpe_ratio: float | None
    max_drawdown: float | None
    volatility: float | None
    best_trade: float | None
    worst_trade: float | None
    average_trade_size: float | None
    snapshot_count: int
    last_recorded_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_pnl": round(self.current_pnl, 2),
            "total_trades": self.total_trades,
            "win_rate": round(self.win_rate, 4),
            "sharpe_ratio": self.sharpe_ratio,
            "max_drawdown": self.max_drawdown,
            "volatility": self.volatility,
            "best_trade": self.best_trade,
            "worst_trade": self.worst_trade,
            "average_trade_size": self.average_trade_size,
            "snapshot_count": self.snapshot_count,
            "last_recorded_at": self.last_recorded_at,
        }


class PerformanceRecorder:
    """Stores performance snapshots and serves history queries."""

    def __init__(
        self,
        db: Database,
        ledger: LedgerStore,
        audit: AuditTrail,
        retention: RetentionConfig | None = None,
    ):
        self._db = db
        self._ledger = ledger
        self._audit = audit
        self._retention = retention or RetentionConfig()

    # ── Write path ───────────────────────────────────────────────────

    def record_performance(
        self, data: PerformanceData | dict[str, Any], actor: str = "broker"
    ) -> PerformanceSnapshotRecord:
        """Store one snapshot without touching participant aggregates.

        Raises ``DuplicateEvent`` if a snapshot already exists for the same
        participant and timestamp.
        """
        data = parse_event(PerformanceData, data)
        participant = self._ledger.get_participant(data.participant_id)
        if participant is None or participant.tournament_id != data.tournament_id:
            raise UnknownParticipant(
                f"participant {data.participant_id} not in tournament {data.tournament_id}",
                participant_id=data.participant_id,
                tournament_id=data.tournament_id,
            )

        def _record(conn: sqlite3.Connection) -> PerformanceSnapshotRecord:
            snap = self.build_snapshot(conn, participant, data)
            self.insert_snapshot(conn, snap)
            self._audit.log_action(
                action="performance.recorded",
                entity_type="performance_snapshot",
                entity_id=snap.id,
                actor=actor,
                after=snap.model_dump(mode="json", exclude={"positions"}),
                metadata={"participant_id": participant.id},
                conn=conn,
            )
            return snap

        snap = self._db.write(_record)
        log.info(
            "performance.recorded",
            participant_id=participant.id,
            recorded_at=snap.recorded_at,
            total_pnl=snap.total_pnl,
        )
        return snap

    def build_snapshot(
        self,
        conn: sqlite3.Connection,
        participant: ParticipantRecord,
        payload: SnapshotPayload,
    ) -> PerformanceSnapshotRecord:
        """Assemble a snapshot, deriving missing risk metrics and counts."""
        recorded_at: str = to_iso(payload.recorded_at)  # type: ignore[assignment]
        total_pnl = payload.total_pnl if payload.total_pnl is not None else (
            payload.realized_pnl + payload.unrealized_pnl
        )
        positions = [p.model_dump() for p in payload.positions]

        snap = PerformanceSnapshotRecord(
            id=f"perf_{uuid.uuid4().hex[:16]}",
            tournament_id=participant.tournament_id,
            participant_id=participant.id,
            recorded_at=recorded_at,
            data_source=payload.data_source,
            total_pnl=total_pnl,
            realized_pnl=payload.realized_pnl,
            unrealized_pnl=payload.unrealized_pnl,
            balance=payload.balance,
            number_of_trades=payload.number_of_trades,
            total_shares_traded=payload.total_shares_traded,
            number_of_stocks_traded=payload.number_of_stocks_traded,
            total_notional_traded=payload.total_notional_traded,
            win_rate=payload.win_rate,
            best_trade=payload.best_trade,
            worst_trade=payload.worst_trade,
            max_drawdown=payload.max_drawdown,
            volatility=payload.volatility,
            sharpe_ratio=payload.sharpe_ratio,
            positions=positions,
            **summarize_positions(positions),
        )

        if None in (snap.max_drawdown, snap.volatility, snap.sharpe_ratio):
            prior = conn.execute(
                """
                SELECT total_pnl FROM performance_snapshots
                WHERE participant_id = ? AND recorded_at < ?
                ORDER BY recorded_at ASC
                """,
                (participant.id, recorded_at),
            ).fetchall()
            equity = [participant.starting_balance]
            equity += [participant.starting_balance + float(r["total_pnl"] or 0) for r in prior]
            equity.append(participant.starting_balance + total_pnl)
            risk = compute_risk_metrics(equity)
            if snap.max_drawdown is None:
                snap.max_drawdown = risk.max_drawdown
            if snap.volatility is None:
                snap.volatility = risk.volatility
            if snap.sharpe_ratio is None:
                snap.sharpe_ratio = risk.sharpe_ratio
        return snap

    @staticmethod
    def insert_snapshot(conn: sqlite3.Connection, s: PerformanceSnapshotRecord) -> None:
        try:
            conn.execute(
                """
                INSERT INTO performance_snapshots
                    (id, tournament_id, participant_id, recorded_at, data_source,
                     total_pnl, realized_pnl, unrealized_pnl, balance,
                     number_of_trades, total_shares_traded, number_of_stocks_traded,
                     total_notional_traded, win_rate, best_trade, worst_trade,
                     max_drawdown, volatility, sharpe_ratio, positions_json,
                     position_count, long_positions, short_positions, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    s.id, s.tournament_id, s.participant_id, s.recorded_at, s.data_source,
                    s.total_pnl, s.realized_pnl, s.unrealized_pnl, s.balance,
                    s.number_of_trades, s.total_shares_traded, s.number_of_stocks_traded,
                    s.total_notional_traded, s.win_rate, s.best_trade, s.worst_trade,
                    s.max_drawdown, s.volatility, s.sharpe_ratio, json.dumps(s.positions),
                    s.position_count, s.long_positions, s.short_positions, s.created_at,
                ),
            )
        except sqlite3.IntegrityError as e:
            if "recorded_at" not in str(e):
                raise
            raise DuplicateEvent(
                f"snapshot for {s.participant_id} at {s.recorded_at} already recorded",
                participant_id=s.participant_id,
                recorded_at=s.recorded_at,
            ) from e

    # ── Reads ────────────────────────────────────────────────────────

    def get_snapshot(self, participant_id: str, recorded_at: dt.datetime | str) -> PerformanceSnapshotRecord | None:
        row = self._db.query_one(
            "SELECT * FROM performance_snapshots WHERE participant_id = ? AND recorded_at = ?",
            (participant_id, to_iso(recorded_at)),
        )
        return PerformanceSnapshotRecord.from_row(row) if row else None

    def get_latest_performance(self, participant_id: str) -> PerformanceSnapshotRecord | None:
        row = self._db.query_one(
            """
            SELECT * FROM performance_snapshots WHERE participant_id = ?
            ORDER BY recorded_at DESC LIMIT 1
            """,
            (participant_id,),
        )
        return PerformanceSnapshotRecord.from_row(row) if row else None

    def get_performance_history(
        self,
        participant_id: str,
        limit: int = 100,
        from_date: dt.datetime | str | None = None,
        to_date: dt.datetime | str | None = None,
    ) -> list[PerformanceSnapshotRecord]:
        """Snapshots for one participant, newest first."""
        sql = "SELECT * FROM performance_snapshots WHERE participant_id = ?"
        params: list[Any] = [participant_id]
        if from_date:
            sql += " AND recorded_at >= ?"
            params.append(to_iso(from_date))
        if to_date:
            sql += " AND recorded_at <= ?"
            params.append(to_iso(to_date))
        sql += " ORDER BY recorded_at DESC LIMIT ?"
        params.append(max(1, limit))
        return [PerformanceSnapshotRecord.from_row(r) for r in self._db.query(sql, tuple(params))]

    def get_tournament_performance_snapshot(
        self, tournament_id: str, at: dt.datetime | str | None = None
    ) -> list[PerformanceSnapshotRecord]:
        """Latest snapshot per participant at or before ``at``, best PnL first."""
        cutoff = to_iso(at) if at else to_iso(utc_now())
        rows = self._db.query(
            """
            SELECT s.* FROM performance_snapshots s
            JOIN (
                SELECT participant_id, MAX(recorded_at) AS latest
                FROM performance_snapshots
                WHERE tournament_id = ? AND recorded_at <= ?
                GROUP BY participant_id
            ) m ON m.participant_id = s.participant_id AND m.latest = s.recorded_at
            ORDER BY s.total_pnl DESC, s.participant_id ASC
            """,
            (tournament_id, cutoff),
        )
        return [PerformanceSnapshotRecord.from_row(r) for r in rows]

    def get_performance_metrics(self, participant_id: str) -> PerformanceMetrics | None:
        latest = self.get_latest_performance(participant_id)
        if latest is None:
            return None
        row = self._db.query_one(
            "SELECT COUNT(*) AS n FROM performance_snapshots WHERE participant_id = ?",
            (participant_id,),
        )
        trades = latest.number_of_trades
        return PerformanceMetrics(
            current_pnl=latest.total_pnl,
            total_trades=trades,
            win_rate=latest.win_rate or 0.0,
            sharpe_ratio=latest.sharpe_ratio,
            max_drawdown=latest.max_drawdown,
            volatility=latest.volatility,
            best_trade=latest.best_trade,
            worst_trade=latest.worst_trade,
            average_trade_size=latest.total_notional_traded / trades if trades else None,
            snapshot_count=int(row["n"]) if row else 0,
            last_recorded_at=latest.recorded_at,
        )

    # ── Maintenance ──────────────────────────────────────────────────

    def cleanup_old_performance_data(self, days_to_keep: int | None = None) -> int:
        """Delete snapshots older than the retention horizon.

        Failures are logged and reported as zero deletions.
        """
        days = days_to_keep if days_to_keep is not None else self._retention.performance_days
        cutoff = to_iso(utc_now() - dt.timedelta(days=days))

        def _purge(conn: sqlite3.Connection) -> int:
            cur = conn.execute("DELETE FROM performance_snapshots WHERE recorded_at < ?", (cutoff,))
            self._audit.log_action(
                action="performance.purged",
                entity_type="performance_snapshot",
                metadata={"cutoff": cutoff, "deleted": cur.rowcount, "days_to_keep": days},
                conn=conn,
            )
            return cur.rowcount

        try:
            deleted = self._db.write(_purge)
        except Exception as e:
            log.error("performance.purge_failed", cutoff=cutoff, error=str(e))
            return 0
        metrics.incr("performance.purged", deleted)
        log.info("performance.purged", deleted=deleted, cutoff=cutoff)
        return deleted
