"""Shared test fixtures."""

from __future__ import annotations

import datetime as dt
import sys
from pathlib import Path
from typing import Any, Callable

import pytest

# Ensure the tourney package is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from tourney.config import EngineConfig, IngestionConfig, StorageConfig  # noqa: E402
from tourney.engine.app import TournamentEngine  # noqa: E402
from tourney.observability.metrics import metrics  # noqa: E402
from tourney.storage.models import ParticipantRecord, TournamentRecord  # noqa: E402

REGISTRATION_BASE = dt.datetime(2026, 3, 1, 9, 0, tzinfo=dt.timezone.utc)


@pytest.fixture(autouse=True)
def _reset_metrics() -> None:
    metrics.reset()


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig(
        storage=StorageConfig(sqlite_path=":memory:", retry_backoff_secs=0.0),
        ingestion=IngestionConfig(max_cas_retries=100),
    )


@pytest.fixture
def engine(engine_config: EngineConfig) -> TournamentEngine:
    eng = TournamentEngine(engine_config)
    yield eng
    eng.close()


@pytest.fixture
def setup_tournament(
    engine: TournamentEngine,
) -> Callable[..., tuple[TournamentRecord, dict[str, ParticipantRecord]]]:
    """Factory: an active tournament with users registered one minute apart."""

    def _setup(
        users: tuple[str, ...] = ("alice", "bob", "carol"),
        activate: bool = True,
        **overrides: Any,
    ) -> tuple[TournamentRecord, dict[str, ParticipantRecord]]:
        kwargs: dict[str, Any] = {"name": "Spring Open", "starting_balance": 100_000.0}
        kwargs.update(overrides)
        t = engine.tournaments.create_tournament(**kwargs)
        engine.tournaments.transition(t.id, "registration_open")
        participants = {
            user: engine.tournaments.register_participant(
                t.id, user, registered_at=REGISTRATION_BASE + dt.timedelta(minutes=i)
            )
            for i, user in enumerate(users)
        }
        if activate:
            engine.tournaments.transition(t.id, "registration_closed")
            engine.tournaments.transition(t.id, "active")
        t = engine.tournaments.get_tournament(t.id)
        return t, participants

    return _setup


def trade_event(
    tournament: TournamentRecord,
    participant: ParticipantRecord,
    key: str,
    **overrides: Any,
) -> dict[str, Any]:
    """Build a raw trade event; payload fields can be overridden directly."""
    payload: dict[str, Any] = {
        "symbol": "AAPL",
        "side": "buy",
        "quantity": 10,
        "price": 150.0,
        "commission": 1.0,
    }
    envelope: dict[str, Any] = {
        "tournament_id": tournament.id,
        "participant_id": participant.id,
        "idempotency_key": key,
    }
    for k, v in overrides.items():
        if k in ("tournament_id", "participant_id", "idempotency_key", "received_at", "actor"):
            envelope[k] = v
        else:
            payload[k] = v
    envelope["payload"] = payload
    return envelope


def snapshot_event(
    tournament: TournamentRecord,
    participant: ParticipantRecord,
    recorded_at: dt.datetime,
    **overrides: Any,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "recorded_at": recorded_at.isoformat(),
        "realized_pnl": 0.0,
        "unrealized_pnl": 0.0,
        "balance": 100_000.0,
    }
    envelope: dict[str, Any] = {
        "tournament_id": tournament.id,
        "participant_id": participant.id,
    }
    for k, v in overrides.items():
        if k in ("tournament_id", "participant_id", "idempotency_key", "actor"):
            envelope[k] = v
        else:
            payload[k] = v
    envelope["payload"] = payload
    return envelope
