"""Database models — Pydantic models for storage records."""

from __future__ import annotations

import datetime as dt
import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def to_iso(value: dt.datetime | str | None) -> str | None:
    """Normalise a timestamp to a UTC ISO string with microseconds.

    A fixed width keeps lexical order equal to chronological order, which
    the range queries and tie-breaks rely on.
    """
    if value is None:
        return None
    if isinstance(value, str):
        # fromisoformat only accepts a Z suffix from 3.11 on
        if value[-1:] in ("Z", "z"):
            value = value[:-1] + "+00:00"
        value = dt.datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc).isoformat(timespec="microseconds")


def utc_now_iso() -> str:
    return to_iso(utc_now())  # type: ignore[return-value]


class TournamentStatus(str, Enum):
    DRAFT = "draft"
    REGISTRATION_OPEN = "registration_open"
    REGISTRATION_CLOSED = "registration_closed"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Division(str, Enum):
    LOW_RISK = "low_risk"
    MID_RISK = "mid_risk"
    HIGH_RISK = "high_risk"


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class TradeStatus(str, Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    SETTLED = "settled"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class TournamentRecord(BaseModel):
    """Stored tournament."""
    id: str
    name: str = ""
    division: Division = Division.MID_RISK
    status: TournamentStatus = TournamentStatus.DRAFT
    start_date: str | None = None
    end_date: str | None = None
    registration_start: str | None = None
    registration_end: str | None = None
    symbols: list[str] = Field(default_factory=list)
    starting_balance: float = 100_000.0
    ranking_version: int = 0
    rankings_updated_at: str | None = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)

    @classmethod
    def from_row(cls, row: Any) -> "TournamentRecord":
        data = dict(row)
        data["symbols"] = json.loads(data.pop("symbols_json") or "[]")
        return cls(**data)

    def allows_symbol(self, symbol: str) -> bool:
        return not self.symbols or symbol.upper() in self.symbols


class ParticipantRecord(BaseModel):
    """A user's enrollment in one tournament, with its running aggregates."""
    id: str
    tournament_id: str
    user_id: str
    registered_at: str = Field(default_factory=utc_now_iso)
    starting_balance: float = 0.0
    current_balance: float = 0.0
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    total_pnl: float = 0.0
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    total_volume: float = 0.0
    current_rank: int | None = None
    best_rank: int | None = None
    final_rank: int | None = None
    final_pnl: float | None = None
    is_active: bool = True
    disqualified: bool = False
    disqualification_reason: str = ""
    last_trade_at: str | None = None
    last_snapshot_at: str | None = None
    version: int = 0
    updated_at: str = Field(default_factory=utc_now_iso)

    @property
    def win_rate(self) -> float:
        return self.winning_trades / self.total_trades if self.total_trades else 0.0

    @property
    def average_trade_size(self) -> float:
        return self.total_volume / self.total_trades if self.total_trades else 0.0

    @property
    def return_pct(self) -> float:
        if self.starting_balance <= 0:
            return 0.0
        return self.total_pnl / self.starting_balance * 100

    @property
    def rankable(self) -> bool:
        return self.is_active and not self.disqualified


class TradeRecord(BaseModel):
    """Stored trade execution report."""
    id: str = ""
    tournament_id: str
    participant_id: str
    external_trade_id: str
    symbol: str
    side: TradeSide
    quantity: float
    price: float
    notional: float = 0.0
    commission: float = 0.0
    net_value: float = 0.0
    realized_pnl: float | None = None
    status: TradeStatus = TradeStatus.EXECUTED
    executed_at: str | None = None
    settled_at: str | None = None
    received_at: str | None = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)

    @property
    def cash_delta(self) -> float:
        """Signed balance change when this trade executes."""
        if self.side == TradeSide.BUY:
            return -self.net_value
        return self.net_value


class PositionRecord(BaseModel):
    """Open position per participant and symbol (signed quantity)."""
    participant_id: str
    symbol: str
    quantity: float = 0.0
    avg_price: float = 0.0
    updated_at: str = Field(default_factory=utc_now_iso)


class PerformanceSnapshotRecord(BaseModel):
    """Point-in-time metrics for one participant. Never updated in place."""
    id: str = ""
    tournament_id: str
    participant_id: str
    recorded_at: str
    data_source: str = "broker"
    total_pnl: float = 0.0
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    balance: float = 0.0
    number_of_trades: int = 0
    total_shares_traded: float = 0.0
    number_of_stocks_traded: int = 0
    total_notional_traded: float = 0.0
    win_rate: float | None = None
    best_trade: float | None = None
    worst_trade: float | None = None
    max_drawdown: float | None = None
    volatility: float | None = None
    sharpe_ratio: float | None = None
    positions: list[dict[str, Any]] = Field(default_factory=list)
    position_count: int = 0
    long_positions: int = 0
    short_positions: int = 0
    created_at: str = Field(default_factory=utc_now_iso)

    @classmethod
    def from_row(cls, row: Any) -> "PerformanceSnapshotRecord":
        data = dict(row)
        data["positions"] = json.loads(data.pop("positions_json") or "[]")
        return cls(**data)

