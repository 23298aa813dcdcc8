"""Ledger store — trades, positions and per-participant running aggregates.

Aggregation rules:
  - Only a trade entering ``executed`` touches the aggregates
  - Win / loss counters move only when the realized contribution is non-null
  - total_volume accumulates executed notional
  - total_pnl is rewritten as realized + unrealized on every update
  - win rate and average trade size are derived on read

Participant updates are compare-and-swap on ``version``; a lost race raises
``StaleAggregate`` and the caller re-reads and retries.
"""

from __future__ import annotations

import datetime as dt
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from tourney.config import LedgerConfig
from tourney.errors import DuplicateEvent, InvalidTransition, StaleAggregate
from tourney.storage.database import Database
from tourney.storage.models import (
    ParticipantRecord,
    PositionRecord,
    TradeRecord,
    TradeSide,
    TradeStatus,
    to_iso,
    utc_now_iso,
)
from tourney.observability.logger import get_logger

log = get_logger(__name__)

TRADE_TRANSITIONS: dict[TradeStatus, frozenset[TradeStatus]] = {
    TradeStatus.PENDING: frozenset({TradeStatus.EXECUTED, TradeStatus.REJECTED, TradeStatus.CANCELLED}),
    TradeStatus.EXECUTED: frozenset({TradeStatus.SETTLED}),
    TradeStatus.SETTLED: frozenset(),
    TradeStatus.REJECTED: frozenset(),
    TradeStatus.CANCELLED: frozenset(),
}

# Statuses a trade may be first recorded in; settled only by transition
INITIAL_TRADE_STATUSES = frozenset({
    TradeStatus.PENDING, TradeStatus.EXECUTED, TradeStatus.REJECTED, TradeStatus.CANCELLED,
})

_FILLED = ("executed", "settled")

_AGGREGATE_FIELDS = (
    "current_balance", "realized_pnl", "unrealized_pnl", "total_trades",
    "winning_trades", "losing_trades", "total_volume", "last_trade_at",
    "last_snapshot_at",
)


# Statuses a trade in the key status has necessarily been reported in before
SUPERSEDED_STATUSES: dict[TradeStatus, frozenset[TradeStatus]] = {
    TradeStatus.EXECUTED: frozenset({TradeStatus.PENDING}),
    TradeStatus.SETTLED: frozenset({TradeStatus.PENDING, TradeStatus.EXECUTED}),
}


def can_transition(current: TradeStatus, new: TradeStatus) -> bool:
    return new in TRADE_TRANSITIONS.get(current, frozenset())


def is_redelivery(current: TradeStatus, reported: TradeStatus) -> bool:
    """True when ``reported`` is the current status or one the trade moved past."""
    return reported == current or reported in SUPERSEDED_STATUSES.get(current, frozenset())


def make_trade(
    tournament_id: str,
    participant_id: str,
    external_trade_id: str,
    symbol: str,
    side: TradeSide,
    quantity: float,
    price: float,
    commission: float = 0.0,
    status: TradeStatus = TradeStatus.EXECUTED,
    realized_pnl: float | None = None,
    executed_at: dt.datetime | str | None = None,
    received_at: dt.datetime | str | None = None,
) -> TradeRecord:
    """Build a trade with its computed notional and net value."""
    notional = quantity * price
    net_value = notional + commission if side == TradeSide.BUY else notional - commission
    if status == TradeStatus.EXECUTED and executed_at is None:
        executed_at = utc_now_iso()
    return TradeRecord(
        id=f"trd_{uuid.uuid4().hex[:16]}",
        tournament_id=tournament_id,
        participant_id=participant_id,
        external_trade_id=external_trade_id,
        symbol=symbol.upper(),
        side=side,
        quantity=quantity,
        price=price,
        notional=notional,
        commission=commission,
        net_value=net_value,
        realized_pnl=realized_pnl,
        status=status,
        executed_at=to_iso(executed_at),
        received_at=to_iso(received_at),
    )


def executed_trade_changes(participant: ParticipantRecord, trade: TradeRecord) -> dict[str, Any]:
    """Aggregate changes for a trade entering ``executed``."""
    changes: dict[str, Any] = {
        "current_balance": participant.current_balance + trade.cash_delta,
        "total_trades": participant.total_trades + 1,
        "total_volume": participant.total_volume + trade.notional,
        "last_trade_at": trade.executed_at or utc_now_iso(),
    }
    if trade.realized_pnl is not None:
        changes["realized_pnl"] = participant.realized_pnl + trade.realized_pnl
        if trade.realized_pnl > 0:
            changes["winning_trades"] = participant.winning_trades + 1
        elif trade.realized_pnl < 0:
            changes["losing_trades"] = participant.losing_trades + 1
    return changes


class TradeFilter(BaseModel):
    tournament_id: str | None = None
    participant_id: str | None = None
    status: TradeStatus | None = None
    symbol: str | None = None
    side: TradeSide | None = None
    from_date: dt.datetime | str | None = None
    to_date: dt.datetime | str | None = None
    limit: int = 100
    offset: int = 0


@dataclass
class TradingStatistics:
    total_trades: int = 0
    executed_trades: int = 0
    total_volume: float = 0.0
    total_pnl: float = 0.0
    winning_trades: int = 0
    losing_trades: int = 0
    average_trade_size: float = 0.0
    win_rate: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_trades": self.total_trades,
            "executed_trades": self.executed_trades,
            "total_volume": round(self.total_volume, 2),
            "total_pnl": round(self.total_pnl, 2),
            "winning_trades": self.winning_trades,
            "losing_trades": self.losing_trades,
            "average_trade_size": round(self.average_trade_size, 2),
            "win_rate": round(self.win_rate, 4),
        }


class LedgerStore:
    """Durable storage of trades and participant running balances."""

    def __init__(self, db: Database, config: LedgerConfig | None = None):
        self._db = db
        self._config = config or LedgerConfig()

    # ── Participants ─────────────────────────────────────────────────

    def get_participant(self, participant_id: str) -> ParticipantRecord | None:
        row = self._db.query_one("SELECT * FROM participants WHERE id = ?", (participant_id,))
        return ParticipantRecord(**dict(row)) if row else None

    def get_participant_by_user(self, tournament_id: str, user_id: str) -> ParticipantRecord | None:
        row = self._db.query_one(
            "SELECT * FROM participants WHERE tournament_id = ? AND user_id = ?",
            (tournament_id, user_id),
        )
        return ParticipantRecord(**dict(row)) if row else None

    def list_participants(
        self, tournament_id: str, active_only: bool = False
    ) -> list[ParticipantRecord]:
        sql = "SELECT * FROM participants WHERE tournament_id = ?"
        if active_only:
            sql += " AND is_active = 1 AND disqualified = 0"
        rows = self._db.query(sql + " ORDER BY registered_at ASC, id ASC", (tournament_id,))
        return [ParticipantRecord(**dict(r)) for r in rows]

    def insert_participant(self, conn: sqlite3.Connection, p: ParticipantRecord) -> None:
        conn.execute(
            """
            INSERT INTO participants
                (id, tournament_id, user_id, registered_at, starting_balance,
                 current_balance, realized_pnl, unrealized_pnl, total_pnl,
                 is_active, disqualified, version, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                p.id, p.tournament_id, p.user_id, p.registered_at,
                p.starting_balance, p.current_balance, p.realized_pnl,
                p.unrealized_pnl, p.realized_pnl + p.unrealized_pnl,
                int(p.is_active), int(p.disqualified), p.version, p.updated_at,
            ),
        )

    def update_participant_aggregates(
        self,
        conn: sqlite3.Connection,
        participant: ParticipantRecord,
        changes: dict[str, Any],
    ) -> ParticipantRecord:
        """Compare-and-swap the aggregates read as ``participant``."""
        unknown = set(changes) - set(_AGGREGATE_FIELDS)
        if unknown:
            raise ValueError(f"not aggregate fields: {sorted(unknown)}")

        updated = participant.model_copy(update=changes)
        updated.total_pnl = updated.realized_pnl + updated.unrealized_pnl
        updated.version = participant.version + 1
        updated.updated_at = utc_now_iso()

        cur = conn.execute(
            """
            UPDATE participants SET
                current_balance = ?, realized_pnl = ?, unrealized_pnl = ?,
                total_pnl = ?, total_trades = ?, winning_trades = ?,
                losing_trades = ?, total_volume = ?, last_trade_at = ?,
                last_snapshot_at = ?, version = ?, updated_at = ?
            WHERE id = ? AND version = ?
            """,
            (
                updated.current_balance, updated.realized_pnl, updated.unrealized_pnl,
                updated.total_pnl, updated.total_trades, updated.winning_trades,
                updated.losing_trades, updated.total_volume, updated.last_trade_at,
                updated.last_snapshot_at, updated.version, updated.updated_at,
                participant.id, participant.version,
            ),
        )
        if cur.rowcount != 1:
            raise StaleAggregate(
                f"participant {participant.id} changed since version {participant.version}",
                participant_id=participant.id,
            )
        return updated

    def deactivate_participant(
        self,
        conn: sqlite3.Connection,
        participant_id: str,
        disqualified: bool,
        reason: str = "",
    ) -> None:
        conn.execute(
            """
            UPDATE participants SET is_active = 0, disqualified = ?,
                disqualification_reason = ?, current_rank = NULL,
                version = version + 1, updated_at = ?
            WHERE id = ?
            """,
            (int(disqualified), reason, utc_now_iso(), participant_id),
        )

    def freeze_participants(self, conn: sqlite3.Connection, tournament_id: str) -> int:
        """Write final rank and PnL once the tournament completes."""
        cur = conn.execute(
            """
            UPDATE participants SET final_rank = current_rank, final_pnl = total_pnl,
                updated_at = ?
            WHERE tournament_id = ? AND final_pnl IS NULL
            """,
            (utc_now_iso(), tournament_id),
        )
        return cur.rowcount

    # ── Trades ───────────────────────────────────────────────────────

    def get_trade(self, trade_id: str) -> TradeRecord | None:
        row = self._db.query_one("SELECT * FROM trades WHERE id = ?", (trade_id,))
        return TradeRecord(**dict(row)) if row else None

    def get_trade_by_external_id(
        self, tournament_id: str, external_trade_id: str
    ) -> TradeRecord | None:
        row = self._db.query_one(
            "SELECT * FROM trades WHERE tournament_id = ? AND external_trade_id = ?",
            (tournament_id, external_trade_id),
        )
        return TradeRecord(**dict(row)) if row else None

    def record_trade(self, conn: sqlite3.Connection, trade: TradeRecord) -> TradeRecord:
        """Insert a trade. Raises ``DuplicateEvent`` if its external id exists."""
        try:
            conn.execute(
                """
                INSERT INTO trades
                    (id, tournament_id, participant_id, external_trade_id,
                     symbol, side, quantity, price, notional, commission,
                     net_value, realized_pnl, status, executed_at, settled_at,
                     received_at, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    trade.id, trade.tournament_id, trade.participant_id,
                    trade.external_trade_id, trade.symbol, trade.side.value,
                    trade.quantity, trade.price, trade.notional, trade.commission,
                    trade.net_value, trade.realized_pnl, trade.status.value,
                    trade.executed_at, trade.settled_at, trade.received_at,
                    trade.created_at, trade.updated_at,
                ),
            )
        except sqlite3.IntegrityError as e:
            if "external_trade_id" not in str(e):
                raise
            raise DuplicateEvent(
                f"trade {trade.external_trade_id} already recorded",
                tournament_id=trade.tournament_id,
                external_trade_id=trade.external_trade_id,
            ) from e
        log.info(
            "ledger.trade_recorded",
            trade_id=trade.id,
            participant_id=trade.participant_id,
            symbol=trade.symbol,
            status=trade.status.value,
        )
        return trade

    def transition_trade(
        self,
        conn: sqlite3.Connection,
        trade: TradeRecord,
        new_status: TradeStatus,
        at: dt.datetime | str | None = None,
        realized_pnl: float | None = None,
    ) -> TradeRecord:
        """Move a trade along its status machine.

        Raises ``InvalidTransition`` without touching state on an illegal
        move, ``StaleAggregate`` if the stored status is no longer the one
        read.
        """
        if not can_transition(trade.status, new_status):
            raise InvalidTransition(
                f"trade {trade.external_trade_id}: {trade.status.value} -> {new_status.value}",
                trade_id=trade.id,
                current=trade.status.value,
                requested=new_status.value,
            )
        stamp = to_iso(at) or utc_now_iso()
        update: dict[str, Any] = {"status": new_status, "updated_at": utc_now_iso()}
        if new_status == TradeStatus.EXECUTED:
            update["executed_at"] = stamp
            if realized_pnl is not None:
                update["realized_pnl"] = realized_pnl
        elif new_status == TradeStatus.SETTLED:
            update["settled_at"] = stamp
        updated = trade.model_copy(update=update)

        cur = conn.execute(
            """
            UPDATE trades SET status = ?, executed_at = ?, settled_at = ?,
                realized_pnl = ?, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (
                updated.status.value, updated.executed_at, updated.settled_at,
                updated.realized_pnl, updated.updated_at,
                trade.id, trade.status.value,
            ),
        )
        if cur.rowcount != 1:
            raise StaleAggregate(f"trade {trade.id} status changed concurrently", trade_id=trade.id)
        log.info(
            "ledger.trade_transitioned",
            trade_id=trade.id,
            old=trade.status.value,
            new=new_status.value,
        )
        return updated

    def list_trades(self, filters: TradeFilter | None = None, **kwargs: Any) -> list[TradeRecord]:
        f = filters or TradeFilter(**kwargs)
        where, params = self._where(f, date_column="created_at")
        limit = min(max(1, f.limit), self._config.max_page_size)
        rows = self._db.query(
            f"SELECT * FROM trades {where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
            (*params, limit, max(0, f.offset)),
        )
        return [TradeRecord(**dict(r)) for r in rows]

    def get_recent_trades(self, limit: int = 10, tournament_id: str | None = None) -> list[TradeRecord]:
        sql = "SELECT * FROM trades WHERE status IN ('executed', 'settled')"
        params: tuple[Any, ...] = ()
        if tournament_id:
            sql += " AND tournament_id = ?"
            params = (tournament_id,)
        rows = self._db.query(sql + " ORDER BY executed_at DESC LIMIT ?", (*params, limit))
        return [TradeRecord(**dict(r)) for r in rows]

    def get_trading_statistics(
        self, filters: TradeFilter | None = None, **kwargs: Any
    ) -> TradingStatistics:
        f = filters or TradeFilter(**kwargs)
        where, params = self._where(f, date_column="executed_at")
        filled = "status IN ('executed', 'settled')"
        row = self._db.query_one(
            f"""
            SELECT
                COUNT(*) AS total_trades,
                COALESCE(SUM(CASE WHEN {filled} THEN 1 ELSE 0 END), 0) AS executed_trades,
                COALESCE(SUM(CASE WHEN {filled} THEN notional END), 0) AS total_volume,
                COALESCE(SUM(CASE WHEN {filled} THEN realized_pnl END), 0) AS total_pnl,
                COALESCE(SUM(CASE WHEN {filled} AND realized_pnl > 0 THEN 1 ELSE 0 END), 0) AS winning,
                COALESCE(SUM(CASE WHEN {filled} AND realized_pnl < 0 THEN 1 ELSE 0 END), 0) AS losing,
                COALESCE(AVG(CASE WHEN {filled} THEN notional END), 0) AS avg_size
            FROM trades {where}
            """,
            tuple(params),
        )
        if row is None:
            return TradingStatistics()
        executed = int(row["executed_trades"])
        winning = int(row["winning"])
        return TradingStatistics(
            total_trades=int(row["total_trades"]),
            executed_trades=executed,
            total_volume=float(row["total_volume"]),
            total_pnl=float(row["total_pnl"]),
            winning_trades=winning,
            losing_trades=int(row["losing"]),
            average_trade_size=float(row["avg_size"]),
            win_rate=winning / executed if executed else 0.0,
        )

    def get_top_symbols(
        self, filters: TradeFilter | None = None, limit: int = 10
    ) -> list[dict[str, Any]]:
        """Most traded symbols by executed trade count."""
        f = filters or TradeFilter()
        where, params = self._where(f, date_column="executed_at")
        where = f"{where} AND" if where else "WHERE"
        rows = self._db.query(
            f"""
            SELECT symbol, COUNT(*) AS trade_count, SUM(quantity) AS shares,
                   SUM(notional) AS volume
            FROM trades {where} status IN ('executed', 'settled')
            GROUP BY symbol ORDER BY trade_count DESC, volume DESC LIMIT ?
            """,
            (*params, limit),
        )
        return [
            {
                "symbol": r["symbol"],
                "trade_count": int(r["trade_count"]),
                "total_shares": float(r["shares"] or 0),
                "total_volume": float(r["volume"] or 0),
            }
            for r in rows
        ]

    @staticmethod
    def _where(f: TradeFilter, date_column: str) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if f.tournament_id:
            clauses.append("tournament_id = ?")
            params.append(f.tournament_id)
        if f.participant_id:
            clauses.append("participant_id = ?")
            params.append(f.participant_id)
        if f.status:
            clauses.append("status = ?")
            params.append(f.status.value)
        if f.symbol:
            clauses.append("symbol = ?")
            params.append(f.symbol.upper())
        if f.side:
            clauses.append("side = ?")
            params.append(f.side.value)
        if f.from_date:
            clauses.append(f"{date_column} >= ?")
            params.append(to_iso(f.from_date))
        if f.to_date:
            clauses.append(f"{date_column} <= ?")
            params.append(to_iso(f.to_date))
        return (f"WHERE {' AND '.join(clauses)}" if clauses else ""), params

    # ── Positions ────────────────────────────────────────────────────

    def get_position(self, participant_id: str, symbol: str) -> PositionRecord:
        row = self._db.query_one(
            "SELECT * FROM positions WHERE participant_id = ? AND symbol = ?",
            (participant_id, symbol.upper()),
        )
        if row:
            return PositionRecord(**dict(row))
        return PositionRecord(participant_id=participant_id, symbol=symbol.upper())

    def list_positions(self, participant_id: str, open_only: bool = True) -> list[PositionRecord]:
        sql = "SELECT * FROM positions WHERE participant_id = ?"
        if open_only:
            sql += " AND quantity != 0"
        rows = self._db.query(sql + " ORDER BY symbol", (participant_id,))
        return [PositionRecord(**dict(r)) for r in rows]

    def save_position(self, conn: sqlite3.Connection, pos: PositionRecord) -> None:
        conn.execute(
            """
            INSERT OR REPLACE INTO positions
                (participant_id, symbol, quantity, avg_price, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (pos.participant_id, pos.symbol, pos.quantity, pos.avg_price, utc_now_iso()),
        )
