"""Ingestion coordinator — applies broker trade and snapshot events.

Flow for every event:
  1. Validate the envelope and payload (InvalidEvent)
  2. Resolve tournament and participant (UnknownParticipant)
  3. Gate on tournament status (TournamentNotActive); settlement of an
     already-recorded trade is still accepted once the tournament completed
  4. Deduplicate on the idempotency key; a redelivery is a no-op that
     returns the stored result and leaves a ``*.duplicate_ignored`` entry
  5. Write trade, position, aggregates and audit entry in one transaction
  6. Recompute the tournament ranking if aggregates changed

Aggregate writes are optimistic: a concurrent update to the same participant
makes the write fail with ``StaleAggregate`` and the whole attempt is redone
from a fresh read, up to ``ingestion.max_cas_retries`` times.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from tourney.config import IngestionConfig
from tourney.errors import (
    DuplicateEvent,
    EngineError,
    InvalidEvent,
    InvalidTransition,
    PersistenceFailure,
    StaleAggregate,
    TournamentNotActive,
    UnknownParticipant,
    UnknownTournament,
)
from tourney.engine.events import SnapshotEvent, TradeEvent, parse_event
from tourney.engine.ledger import (
    INITIAL_TRADE_STATUSES,
    LedgerStore,
    can_transition,
    executed_trade_changes,
    is_redelivery,
    make_trade,
)
from tourney.engine.performance import PerformanceRecorder
from tourney.engine.positions import apply_fill
from tourney.engine.ranking import RankingEngine
from tourney.engine.tournaments import TournamentService
from tourney.storage.audit import AuditTrail
from tourney.storage.database import Database
from tourney.storage.models import (
    ParticipantRecord,
    PerformanceSnapshotRecord,
    PositionRecord,
    TournamentRecord,
    TournamentStatus,
    TradeRecord,
    TradeStatus,
    to_iso,
)
from tourney.observability.logger import event_context, get_logger
from tourney.observability.metrics import metrics

log = get_logger(__name__)

R = TypeVar("R")

_REJECTABLE = (InvalidEvent, UnknownParticipant, TournamentNotActive, InvalidTransition)


@dataclass
class ApplyResult:
    outcome: str  # "applied" | "duplicate"
    participant: ParticipantRecord
    trade: TradeRecord | None = None
    snapshot: PerformanceSnapshotRecord | None = None
    aggregates_changed: bool = False

    @property
    def duplicate(self) -> bool:
        return self.outcome == "duplicate"

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome,
            "participant_id": self.participant.id,
            "trade": self.trade.model_dump(mode="json") if self.trade else None,
            "snapshot_id": self.snapshot.id if self.snapshot else None,
            "total_pnl": self.participant.total_pnl,
            "current_balance": self.participant.current_balance,
        }


def _envelope(raw: Any) -> dict[str, str]:
    """Best-effort identifiers of an event, for rejection records."""
    get = raw.get if isinstance(raw, dict) else lambda k, d=None: getattr(raw, k, d)
    return {
        "tournament_id": str(get("tournament_id", "") or ""),
        "participant_id": str(get("participant_id", "") or ""),
        "idempotency_key": str(get("idempotency_key", "") or ""),
        "actor": str(get("actor", "") or ""),
    }


class IngestionCoordinator:
    """Entry point for broker events."""

    def __init__(
        self,
        db: Database,
        ledger: LedgerStore,
        performance: PerformanceRecorder,
        ranking: RankingEngine,
        tournaments: TournamentService,
        audit: AuditTrail,
        config: IngestionConfig | None = None,
    ):
        self._db = db
        self._ledger = ledger
        self._performance = performance
        self._ranking = ranking
        self._tournaments = tournaments
        self._audit = audit
        self._config = config or IngestionConfig()

    # ── Trades ───────────────────────────────────────────────────────

    def apply_trade_event(self, event: TradeEvent | dict[str, Any]) -> ApplyResult:
        """Apply one trade execution report.

        Raises InvalidEvent, UnknownParticipant, TournamentNotActive or
        InvalidTransition for rejected events (each audit-logged) and
        PersistenceFailure when storage stays unavailable.
        """
        try:
            ev = parse_event(TradeEvent, event)
        except InvalidEvent as e:
            self._reject("trade", e, _envelope(event))
            raise
        with event_context(
            "trade",
            tournament_id=ev.tournament_id,
            participant_id=ev.participant_id,
            idempotency_key=ev.idempotency_key,
        ):
            try:
                result = self._with_cas("trade", ev.participant_id, lambda: self._apply_trade(ev))
            except _REJECTABLE as e:
                self._reject("trade", e, _envelope(ev))
                raise
            self._after_apply("trade", ev.tournament_id, result)
        return result

    def _apply_trade(self, ev: TradeEvent) -> ApplyResult:
        tournament, participant = self._resolve(ev.tournament_id, ev.participant_id)
        payload = ev.payload
        if not tournament.allows_symbol(payload.symbol):
            raise InvalidEvent(
                f"symbol {payload.symbol} is not traded in tournament {tournament.id}",
                symbol=payload.symbol,
            )

        existing = self._ledger.get_trade_by_external_id(ev.tournament_id, ev.idempotency_key)
        if existing is not None:
            if existing.participant_id != participant.id:
                raise InvalidEvent(
                    f"trade {ev.idempotency_key} belongs to another participant",
                    idempotency_key=ev.idempotency_key,
                )
            if is_redelivery(existing.status, payload.status):
                return self._duplicate_trade(ev, existing, participant)
            return self._transition_trade(ev, tournament, participant, existing)

        self._require_active(tournament)
        self._require_rankable(participant)
        if payload.status not in INITIAL_TRADE_STATUSES:
            raise InvalidTransition(
                f"trade {ev.idempotency_key} cannot be first reported as {payload.status.value}",
                requested=payload.status.value,
            )

        trade = make_trade(
            tournament_id=tournament.id,
            participant_id=participant.id,
            external_trade_id=ev.idempotency_key,
            symbol=payload.symbol,
            side=payload.side,
            quantity=payload.quantity,
            price=payload.price,
            commission=payload.commission,
            status=payload.status,
            realized_pnl=payload.realized_pnl,
            executed_at=payload.executed_at or (
                ev.received_at if payload.status == TradeStatus.EXECUTED else None
            ),
            received_at=ev.received_at,
        )
        position: PositionRecord | None = None
        changes: dict[str, Any] = {}
        if trade.status == TradeStatus.EXECUTED:
            trade, position = self._fill(participant, trade)
            changes = executed_trade_changes(participant, trade)

        def _write(conn: sqlite3.Connection) -> ParticipantRecord:
            self._ledger.record_trade(conn, trade)
            updated = participant
            if position is not None:
                self._ledger.save_position(conn, position)
                updated = self._ledger.update_participant_aggregates(conn, participant, changes)
            self._audit.log_action(
                action="trade.recorded",
                entity_type="trade",
                entity_id=trade.id,
                actor=ev.actor,
                before=self._aggregates(participant) if changes else None,
                after=trade.model_dump(mode="json"),
                metadata={
                    "idempotency_key": ev.idempotency_key,
                    "participant_id": participant.id,
                    "aggregates": self._aggregates(updated) if changes else None,
                },
                conn=conn,
            )
            return updated

        try:
            updated = self._db.write(_write)
        except DuplicateEvent:
            # A concurrent delivery of the same key won the insert
            stored = self._ledger.get_trade_by_external_id(ev.tournament_id, ev.idempotency_key)
            if stored is None:
                raise PersistenceFailure(
                    f"trade {ev.idempotency_key} reported as duplicate but not readable",
                    idempotency_key=ev.idempotency_key,
                )
            return self._duplicate_trade(ev, stored, self._ledger.get_participant(participant.id) or participant)

        return ApplyResult(outcome="applied", participant=updated, trade=trade, aggregates_changed=bool(changes))

    def _transition_trade(
        self,
        ev: TradeEvent,
        tournament: TournamentRecord,
        participant: ParticipantRecord,
        existing: TradeRecord,
    ) -> ApplyResult:
        new_status = ev.payload.status
        if not can_transition(existing.status, new_status):
            raise InvalidTransition(
                f"trade {existing.external_trade_id}: {existing.status.value} -> {new_status.value}",
                trade_id=existing.id,
                current=existing.status.value,
                requested=new_status.value,
            )
        settling = new_status == TradeStatus.SETTLED
        if not (settling and tournament.status == TournamentStatus.COMPLETED):
            self._require_active(tournament)
        if new_status == TradeStatus.EXECUTED:
            self._require_rankable(participant)

        # Status updates reuse the recorded trade's fill values
        realized = existing.realized_pnl if existing.realized_pnl is not None else ev.payload.realized_pnl
        executed = existing.model_copy(update={"status": new_status, "realized_pnl": realized})
        position: PositionRecord | None = None
        changes: dict[str, Any] = {}
        if new_status == TradeStatus.EXECUTED:
            executed, position = self._fill(participant, executed)
            changes = executed_trade_changes(
                participant, executed.model_copy(update={"executed_at": to_iso(ev.payload.executed_at or ev.received_at)})
            )

        def _write(conn: sqlite3.Connection) -> tuple[TradeRecord, ParticipantRecord]:
            trade = self._ledger.transition_trade(
                conn,
                existing,
                new_status,
                at=ev.payload.executed_at or ev.received_at,
                realized_pnl=executed.realized_pnl,
            )
            updated = participant
            if position is not None:
                self._ledger.save_position(conn, position)
                updated = self._ledger.update_participant_aggregates(conn, participant, changes)
            self._audit.log_action(
                action="trade.status_changed",
                entity_type="trade",
                entity_id=existing.id,
                actor=ev.actor,
                before={"status": existing.status.value},
                after={"status": new_status.value, "realized_pnl": trade.realized_pnl},
                metadata={"idempotency_key": ev.idempotency_key, "participant_id": participant.id},
                conn=conn,
            )
            return trade, updated

        trade, updated = self._db.write(_write)
        return ApplyResult(outcome="applied", participant=updated, trade=trade, aggregates_changed=bool(changes))

    def _fill(
        self, participant: ParticipantRecord, trade: TradeRecord
    ) -> tuple[TradeRecord, PositionRecord]:
        """Run an executed trade through the position book."""
        pos = self._ledger.get_position(participant.id, trade.symbol)
        fill = apply_fill(pos.quantity, pos.avg_price, trade.side, trade.quantity, trade.price)
        if trade.realized_pnl is None and fill.realized_pnl is not None:
            trade = trade.model_copy(update={"realized_pnl": fill.realized_pnl})
        return trade, pos.model_copy(update={"quantity": fill.quantity, "avg_price": fill.avg_price})

    def _duplicate_trade(
        self, ev: TradeEvent, existing: TradeRecord, participant: ParticipantRecord
    ) -> ApplyResult:
        self._audit.log_action(
            action="trade.duplicate_ignored",
            entity_type="trade",
            entity_id=existing.id,
            actor=ev.actor,
            metadata={
                "idempotency_key": ev.idempotency_key,
                "participant_id": participant.id,
                "status": existing.status.value,
                "reported_status": ev.payload.status.value,
            },
        )
        metrics.incr("ingestion.duplicate", kind="trade")
        log.info("ingestion.duplicate_ignored", kind="trade", idempotency_key=ev.idempotency_key)
        return ApplyResult(outcome="duplicate", participant=participant, trade=existing)

    # ── Snapshots ────────────────────────────────────────────────────

    def apply_snapshot_event(self, event: SnapshotEvent | dict[str, Any]) -> ApplyResult:
        """Apply a broker performance snapshot.

        The snapshot is always stored; aggregates are overwritten only when
        it is at least as recent as the last applied snapshot.
        """
        try:
            ev = parse_event(SnapshotEvent, event)
        except InvalidEvent as e:
            self._reject("snapshot", e, _envelope(event))
            raise
        with event_context(
            "snapshot",
            tournament_id=ev.tournament_id,
            participant_id=ev.participant_id,
            idempotency_key=ev.idempotency_key,
        ):
            try:
                result = self._with_cas("snapshot", ev.participant_id, lambda: self._apply_snapshot(ev))
            except _REJECTABLE as e:
                self._reject("snapshot", e, _envelope(ev))
                raise
            self._after_apply("snapshot", ev.tournament_id, result)
        return result

    def _apply_snapshot(self, ev: SnapshotEvent) -> ApplyResult:
        tournament, participant = self._resolve(ev.tournament_id, ev.participant_id)
        existing = self._performance.get_snapshot(participant.id, ev.payload.recorded_at)
        if existing is not None:
            return self._duplicate_snapshot(ev, existing, participant)
        self._require_active(tournament)
        self._require_rankable(participant)

        payload = ev.payload
        recorded_at = to_iso(payload.recorded_at)
        in_order = participant.last_snapshot_at is None or recorded_at >= participant.last_snapshot_at
        changes: dict[str, Any] = {}
        if in_order:
            changes = {
                "realized_pnl": payload.realized_pnl,
                "unrealized_pnl": payload.unrealized_pnl,
                "current_balance": payload.balance,
                "last_snapshot_at": recorded_at,
            }

        def _write(conn: sqlite3.Connection) -> tuple[PerformanceSnapshotRecord, ParticipantRecord]:
            snap = self._performance.build_snapshot(conn, participant, payload)
            self._performance.insert_snapshot(conn, snap)
            updated = participant
            if changes:
                updated = self._ledger.update_participant_aggregates(conn, participant, changes)
            self._audit.log_action(
                action="snapshot.recorded",
                entity_type="performance_snapshot",
                entity_id=snap.id,
                actor=ev.actor,
                before=self._aggregates(participant) if changes else None,
                after=self._aggregates(updated) if changes else None,
                metadata={
                    "idempotency_key": ev.idempotency_key,
                    "participant_id": participant.id,
                    "recorded_at": recorded_at,
                    "out_of_order": not in_order,
                },
                conn=conn,
            )
            return snap, updated

        try:
            snap, updated = self._db.write(_write)
        except DuplicateEvent:
            stored = self._performance.get_snapshot(participant.id, payload.recorded_at)
            if stored is None:
                raise PersistenceFailure(
                    f"snapshot {ev.idempotency_key} reported as duplicate but not readable",
                    idempotency_key=ev.idempotency_key,
                )
            return self._duplicate_snapshot(ev, stored, self._ledger.get_participant(participant.id) or participant)
        if not in_order:
            log.info(
                "ingestion.snapshot_out_of_order",
                participant_id=participant.id,
                recorded_at=recorded_at,
                last_snapshot_at=participant.last_snapshot_at,
            )
        return ApplyResult(outcome="applied", participant=updated, snapshot=snap, aggregates_changed=bool(changes))

    def _duplicate_snapshot(
        self, ev: SnapshotEvent, existing: PerformanceSnapshotRecord, participant: ParticipantRecord
    ) -> ApplyResult:
        self._audit.log_action(
            action="snapshot.duplicate_ignored",
            entity_type="performance_snapshot",
            entity_id=existing.id,
            actor=ev.actor,
            metadata={"idempotency_key": ev.idempotency_key, "participant_id": participant.id},
        )
        metrics.incr("ingestion.duplicate", kind="snapshot")
        log.info("ingestion.duplicate_ignored", kind="snapshot", idempotency_key=ev.idempotency_key)
        return ApplyResult(outcome="duplicate", participant=participant, snapshot=existing)

    # ── Helpers ──────────────────────────────────────────────────────

    def _resolve(self, tournament_id: str, participant_id: str) -> tuple[TournamentRecord, ParticipantRecord]:
        tournament = self._tournaments.get_tournament(tournament_id)
        if tournament is None:
            raise UnknownTournament(f"tournament {tournament_id} not found", tournament_id=tournament_id)
        participant = self._ledger.get_participant(participant_id)
        if participant is None or participant.tournament_id != tournament_id:
            raise UnknownParticipant(
                f"participant {participant_id} not in tournament {tournament_id}",
                participant_id=participant_id,
                tournament_id=tournament_id,
            )
        return tournament, participant

    @staticmethod
    def _require_active(tournament: TournamentRecord) -> None:
        if tournament.status != TournamentStatus.ACTIVE:
            raise TournamentNotActive(
                f"tournament {tournament.id} is {tournament.status.value}",
                tournament_id=tournament.id,
                status=tournament.status.value,
            )

    @staticmethod
    def _require_rankable(participant: ParticipantRecord) -> None:
        if not participant.rankable:
            raise UnknownParticipant(
                f"participant {participant.id} is no longer active",
                participant_id=participant.id,
                disqualified=participant.disqualified,
            )

    @staticmethod
    def _aggregates(p: ParticipantRecord) -> dict[str, Any]:
        return {
            "current_balance": p.current_balance,
            "realized_pnl": p.realized_pnl,
            "unrealized_pnl": p.unrealized_pnl,
            "total_pnl": p.total_pnl,
            "total_trades": p.total_trades,
            "winning_trades": p.winning_trades,
            "losing_trades": p.losing_trades,
            "total_volume": p.total_volume,
            "version": p.version,
        }

    def _with_cas(self, kind: str, participant_id: str, attempt: Callable[[], R]) -> R:
        retries = max(1, self._config.max_cas_retries)
        for n in range(1, retries + 1):
            try:
                return attempt()
            except StaleAggregate:
                metrics.incr("ingestion.cas_retry", kind=kind)
                log.debug("ingestion.cas_retry", kind=kind, participant_id=participant_id, attempt=n)
        log.error("ingestion.cas_exhausted", kind=kind, participant_id=participant_id, attempts=retries)
        raise PersistenceFailure(
            f"participant {participant_id} under contention, gave up after {retries} attempts",
            participant_id=participant_id,
        )

    def _after_apply(self, kind: str, tournament_id: str, result: ApplyResult) -> None:
        if result.duplicate:
            return
        metrics.incr(f"ingestion.{kind}.applied")
        log.info(
            "ingestion.applied",
            kind=kind,
            participant_id=result.participant.id,
            total_pnl=result.participant.total_pnl,
            aggregates_changed=result.aggregates_changed,
        )
        if result.aggregates_changed and self._config.recompute_on_event:
            self._ranking.recompute_rankings(tournament_id)
            refreshed = self._ledger.get_participant(result.participant.id)
            if refreshed is not None:
                result.participant = refreshed

    def _reject(self, kind: str, error: EngineError, envelope: dict[str, str]) -> None:
        metrics.incr("ingestion.rejected", kind=kind, code=error.code)
        log.warning(
            "ingestion.rejected",
            kind=kind,
            code=error.code,
            reason=error.message,
            **{k: v for k, v in envelope.items() if v},
        )
        self._audit.log_action(
            action=f"{kind}.rejected",
            entity_type="trade" if kind == "trade" else "performance_snapshot",
            entity_id=envelope["idempotency_key"],
            actor=envelope["actor"] or self._config.default_actor,
            metadata={
                "code": error.code,
                "reason": error.message,
                "tournament_id": envelope["tournament_id"],
                "participant_id": envelope["participant_id"],
            },
        )
