"""Tests for inbound event contracts."""

from __future__ import annotations

import datetime as dt

import pytest

from tourney.engine.events import PerformanceData, SnapshotEvent, TradeEvent, parse_event
from tourney.errors import InvalidEvent
from tourney.storage.models import TradeSide, TradeStatus, to_iso


def _trade(**payload_overrides) -> dict:
    payload = {"symbol": "nvda", "side": "sell", "quantity": 3, "price": 880.0}
    payload.update(payload_overrides)
    return {
        "tournament_id": "trn_1",
        "participant_id": "par_1",
        "idempotency_key": "ext-9",
        "payload": payload,
    }


class TestTradeEvent:
    def test_defaults(self) -> None:
        ev = parse_event(TradeEvent, _trade())
        assert ev.payload.symbol == "NVDA"
        assert ev.payload.side == TradeSide.SELL
        assert ev.payload.status == TradeStatus.EXECUTED
        assert ev.payload.commission == 0.0
        assert ev.actor == "broker"
        assert ev.received_at.tzinfo is not None

    def test_model_passes_through(self) -> None:
        ev = parse_event(TradeEvent, _trade())
        assert parse_event(TradeEvent, ev) is ev

    def test_errors_are_listed(self) -> None:
        with pytest.raises(InvalidEvent) as exc:
            parse_event(TradeEvent, _trade(quantity=-1, price=0))
        locs = {e["loc"] for e in exc.value.details["errors"]}
        assert locs == {"payload.quantity", "payload.price"}
        assert exc.value.code == "INVALID_EVENT"
        assert exc.value.to_dict()["retryable"] is False


class TestSnapshotEvent:
    def _raw(self, **payload) -> dict:
        base = {"recorded_at": "2026-03-02T16:00:00Z", "balance": 100_500.0}
        base.update(payload)
        return {"tournament_id": "trn_1", "participant_id": "par_1", "payload": base}

    def test_total_filled_in(self) -> None:
        ev = parse_event(SnapshotEvent, self._raw(realized_pnl=300.0, unrealized_pnl=200.0))
        assert ev.payload.total_pnl == 500.0

    def test_matching_total_accepted(self) -> None:
        ev = parse_event(SnapshotEvent, self._raw(realized_pnl=1.0, unrealized_pnl=2.0, total_pnl=3.0))
        assert ev.payload.total_pnl == 3.0

    def test_mismatched_total_rejected(self) -> None:
        with pytest.raises(InvalidEvent):
            parse_event(SnapshotEvent, self._raw(realized_pnl=1.0, unrealized_pnl=2.0, total_pnl=4.0))

    def test_default_key(self) -> None:
        ev = parse_event(SnapshotEvent, self._raw())
        assert ev.idempotency_key == "par_1:2026-03-02T16:00:00.000000+00:00"

    def test_explicit_key_kept(self) -> None:
        raw = self._raw()
        raw["idempotency_key"] = "report-77"
        assert parse_event(SnapshotEvent, raw).idempotency_key == "report-77"

    def test_negative_counters_rejected(self) -> None:
        with pytest.raises(InvalidEvent):
            parse_event(SnapshotEvent, self._raw(number_of_trades=-1))


class TestPerformanceData:
    def test_flat_shape(self) -> None:
        data = parse_event(PerformanceData, {
            "tournament_id": "trn_1",
            "participant_id": "par_1",
            "recorded_at": dt.datetime(2026, 3, 2, tzinfo=dt.timezone.utc),
            "balance": 99_000.0,
            "realized_pnl": -1_000.0,
        })
        assert data.total_pnl == -1_000.0
        assert data.positions == []


class TestTimestamps:
    @pytest.mark.parametrize("raw", [
        "2026-03-02T16:00:00Z",
        "2026-03-02T16:00:00z",
        "2026-03-02T16:00:00+00:00",
        "2026-03-02T17:00:00+01:00",
    ])
    def test_utc_suffixes_normalised(self, raw: str) -> None:
        assert to_iso(raw) == "2026-03-02T16:00:00.000000+00:00"

    def test_naive_taken_as_utc(self) -> None:
        assert to_iso("2026-03-02T16:00:00") == "2026-03-02T16:00:00.000000+00:00"

    def test_none(self) -> None:
        assert to_iso(None) is None
