"""Inbound event contracts.

Every event carries {tournament_id, participant_id, idempotency_key,
payload, received_at}. Trade events are keyed by the broker's external trade
id; snapshot events default to "<participant_id>:<recorded_at>".
"""

from __future__ import annotations

import datetime as dt
from typing import Any, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from tourney.errors import InvalidEvent
from tourney.storage.models import TradeSide, TradeStatus, to_iso, utc_now

_PNL_TOLERANCE = 1e-6

E = TypeVar("E", bound=BaseModel)


class TradePayload(BaseModel):
    """A fill report from the brokerage integration."""
    symbol: str = Field(min_length=1)
    side: TradeSide
    quantity: float = Field(gt=0)
    price: float = Field(gt=0)
    commission: float = Field(default=0.0, ge=0)
    status: TradeStatus = TradeStatus.EXECUTED
    realized_pnl: float | None = None
    executed_at: dt.datetime | None = None

    @field_validator("symbol")
    @classmethod
    def _upper_symbol(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("symbol must not be blank")
        return v


class TradeEvent(BaseModel):
    tournament_id: str = Field(min_length=1)
    participant_id: str = Field(min_length=1)
    idempotency_key: str = Field(min_length=1)
    payload: TradePayload
    received_at: dt.datetime = Field(default_factory=utc_now)
    actor: str = "broker"


class PositionPayload(BaseModel):
    symbol: str
    quantity: float
    avg_price: float = 0.0
    current_price: float = 0.0
    unrealized_pnl: float = 0.0
    notional_value: float = 0.0


class SnapshotPayload(BaseModel):
    """Broker-reported account metrics at one instant."""
    recorded_at: dt.datetime
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    total_pnl: float | None = None
    balance: float
    number_of_trades: int = Field(default=0, ge=0)
    total_shares_traded: float = Field(default=0.0, ge=0)
    number_of_stocks_traded: int = Field(default=0, ge=0)
    total_notional_traded: float = Field(default=0.0, ge=0)
    win_rate: float | None = None
    best_trade: float | None = None
    worst_trade: float | None = None
    max_drawdown: float | None = None
    volatility: float | None = None
    sharpe_ratio: float | None = None
    positions: list[PositionPayload] = Field(default_factory=list)
    data_source: str = "broker"

    @model_validator(mode="after")
    def _reconcile_total(self) -> "SnapshotPayload":
        expected = self.realized_pnl + self.unrealized_pnl
        if self.total_pnl is None:
            self.total_pnl = expected
        elif abs(self.total_pnl - expected) > _PNL_TOLERANCE:
            raise ValueError(
                f"total_pnl {self.total_pnl} != realized + unrealized {expected}"
            )
        return self


class SnapshotEvent(BaseModel):
    tournament_id: str = Field(min_length=1)
    participant_id: str = Field(min_length=1)
    idempotency_key: str = ""
    payload: SnapshotPayload
    received_at: dt.datetime = Field(default_factory=utc_now)
    actor: str = "broker"

    @model_validator(mode="after")
    def _default_key(self) -> "SnapshotEvent":
        if not self.idempotency_key:
            self.idempotency_key = f"{self.participant_id}:{to_iso(self.payload.recorded_at)}"
        return self


class PerformanceData(SnapshotPayload):
    """Direct input to the performance recorder."""
    tournament_id: str
    participant_id: str


def parse_event(model: type[E], raw: E | dict[str, Any]) -> E:
    """Validate a raw event, mapping pydantic errors to ``InvalidEvent``."""
    if isinstance(raw, model):
        return raw
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        errors = [
            {"loc": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
            for err in e.errors()
        ]
        raise InvalidEvent(f"invalid {model.__name__}: {errors[0]['msg']}", errors=errors) from e
