"""Tournament lifecycle and participant registry.

  draft -> registration_open -> registration_closed -> active -> completed
  any non-terminal state -> cancelled

Registration is accepted only while ``registration_open``. Ingestion checks
the tournament status against this service's state; completing a tournament
runs a final ranking pass and then freezes every participant's final rank
and PnL.
"""

from __future__ import annotations

import datetime as dt
import json
import sqlite3
import uuid

from tourney.errors import (
    InvalidEvent,
    InvalidTransition,
    UnknownParticipant,
    UnknownTournament,
)
from tourney.engine.ledger import LedgerStore
from tourney.engine.ranking import RankingEngine
from tourney.storage.audit import AuditTrail
from tourney.storage.database import Database
from tourney.storage.models import (
    Division,
    ParticipantRecord,
    TournamentRecord,
    TournamentStatus,
    to_iso,
    utc_now_iso,
)
from tourney.observability.logger import get_logger

log = get_logger(__name__)

TRANSITIONS: dict[TournamentStatus, frozenset[TournamentStatus]] = {
    TournamentStatus.DRAFT: frozenset({TournamentStatus.REGISTRATION_OPEN, TournamentStatus.CANCELLED}),
    TournamentStatus.REGISTRATION_OPEN: frozenset({TournamentStatus.REGISTRATION_CLOSED, TournamentStatus.CANCELLED}),
    TournamentStatus.REGISTRATION_CLOSED: frozenset({TournamentStatus.ACTIVE, TournamentStatus.CANCELLED}),
    TournamentStatus.ACTIVE: frozenset({TournamentStatus.COMPLETED, TournamentStatus.CANCELLED}),
    TournamentStatus.COMPLETED: frozenset(),
    TournamentStatus.CANCELLED: frozenset(),
}

# Standings are final; ranks and aggregates no longer change
FROZEN_STATUSES = frozenset({TournamentStatus.COMPLETED, TournamentStatus.CANCELLED})


class TournamentService:
    """Creates tournaments, moves them through their lifecycle, enrolls users."""

    def __init__(
        self,
        db: Database,
        ledger: LedgerStore,
        ranking: RankingEngine,
        audit: AuditTrail,
    ):
        self._db = db
        self._ledger = ledger
        self._ranking = ranking
        self._audit = audit

    # ── Tournaments ──────────────────────────────────────────────────

    def create_tournament(
        self,
        name: str,
        division: Division | str = Division.MID_RISK,
        starting_balance: float = 100_000.0,
        symbols: list[str] | None = None,
        start_date: dt.datetime | str | None = None,
        end_date: dt.datetime | str | None = None,
        registration_start: dt.datetime | str | None = None,
        registration_end: dt.datetime | str | None = None,
        actor: str = "admin",
        tournament_id: str | None = None,
    ) -> TournamentRecord:
        if starting_balance <= 0:
            raise InvalidEvent("starting_balance must be positive", starting_balance=starting_balance)
        try:
            division = Division(division)
        except ValueError as e:
            raise InvalidEvent(f"unknown division: {division}") from e
        start, end = to_iso(start_date), to_iso(end_date)
        if start and end and end < start:
            raise InvalidEvent("end_date precedes start_date", start_date=start, end_date=end)

        t = TournamentRecord(
            id=tournament_id or f"trn_{uuid.uuid4().hex[:12]}",
            name=name,
            division=division,
            status=TournamentStatus.DRAFT,
            start_date=start,
            end_date=end,
            registration_start=to_iso(registration_start),
            registration_end=to_iso(registration_end),
            symbols=sorted({s.strip().upper() for s in symbols or [] if s.strip()}),
            starting_balance=starting_balance,
        )

        def _create(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                INSERT INTO tournaments
                    (id, name, division, status, start_date, end_date,
                     registration_start, registration_end, symbols_json,
                     starting_balance, ranking_version, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    t.id, t.name, t.division.value, t.status.value, t.start_date,
                    t.end_date, t.registration_start, t.registration_end,
                    json.dumps(t.symbols), t.starting_balance, t.created_at, t.updated_at,
                ),
            )
            self._audit.log_action(
                action="tournament.created",
                entity_type="tournament",
                entity_id=t.id,
                actor=actor,
                after=t.model_dump(mode="json"),
                conn=conn,
            )

        self._db.write(_create)
        log.info("tournament.created", tournament_id=t.id, name=name, division=t.division.value)
        return t

    def get_tournament(self, tournament_id: str) -> TournamentRecord | None:
        row = self._db.query_one("SELECT * FROM tournaments WHERE id = ?", (tournament_id,))
        return TournamentRecord.from_row(row) if row else None

    def list_tournaments(self, status: TournamentStatus | str | None = None) -> list[TournamentRecord]:
        if status:
            rows = self._db.query(
                "SELECT * FROM tournaments WHERE status = ? ORDER BY created_at DESC",
                (TournamentStatus(status).value,),
            )
        else:
            rows = self._db.query("SELECT * FROM tournaments ORDER BY created_at DESC")
        return [TournamentRecord.from_row(r) for r in rows]

    def require_tournament(self, tournament_id: str) -> TournamentRecord:
        t = self.get_tournament(tournament_id)
        if t is None:
            raise UnknownTournament(f"tournament {tournament_id} not found", tournament_id=tournament_id)
        return t

    def transition(
        self,
        tournament_id: str,
        new_status: TournamentStatus | str,
        actor: str = "admin",
    ) -> TournamentRecord:
        """Move a tournament to ``new_status``.

        Raises ``InvalidTransition`` if the move is not allowed from the
        current state; the rejection is audit-logged.
        """
        t = self.require_tournament(tournament_id)
        new_status = TournamentStatus(new_status)
        if new_status not in TRANSITIONS[t.status]:
            self._audit.log_action(
                action="tournament.rejected",
                entity_type="tournament",
                entity_id=tournament_id,
                actor=actor,
                metadata={"current": t.status.value, "requested": new_status.value},
            )
            raise InvalidTransition(
                f"tournament {tournament_id}: {t.status.value} -> {new_status.value}",
                tournament_id=tournament_id,
                current=t.status.value,
                requested=new_status.value,
            )

        if new_status == TournamentStatus.COMPLETED:
            # Final standings are taken while the tournament is still active
            self._ranking.recompute_rankings(tournament_id, actor=actor)

        def _apply(conn: sqlite3.Connection) -> int:
            cur = conn.execute(
                "UPDATE tournaments SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (new_status.value, utc_now_iso(), tournament_id, t.status.value),
            )
            if cur.rowcount != 1:
                raise InvalidTransition(
                    f"tournament {tournament_id} status changed concurrently",
                    tournament_id=tournament_id,
                )
            self._audit.log_action(
                action="tournament.status_changed",
                entity_type="tournament",
                entity_id=tournament_id,
                actor=actor,
                before={"status": t.status.value},
                after={"status": new_status.value},
                conn=conn,
            )
            if new_status != TournamentStatus.COMPLETED:
                return 0
            frozen = self._ledger.freeze_participants(conn, tournament_id)
            self._audit.log_action(
                action="participant.frozen",
                entity_type="tournament",
                entity_id=tournament_id,
                actor=actor,
                metadata={"frozen": frozen},
                conn=conn,
            )
            return frozen

        frozen = self._db.write(_apply)
        log.info(
            "tournament.status_changed",
            tournament_id=tournament_id,
            old=t.status.value,
            new=new_status.value,
            frozen=frozen,
        )
        if new_status == TournamentStatus.ACTIVE:
            self._ranking.recompute_rankings(tournament_id, actor=actor)
        return self.require_tournament(tournament_id)

    # ── Participants ─────────────────────────────────────────────────

    def register_participant(
        self,
        tournament_id: str,
        user_id: str,
        registered_at: dt.datetime | str | None = None,
        starting_balance: float | None = None,
        actor: str = "admin",
    ) -> ParticipantRecord:
        t = self.require_tournament(tournament_id)
        if t.status != TournamentStatus.REGISTRATION_OPEN:
            raise InvalidTransition(
                f"tournament {tournament_id} is not open for registration ({t.status.value})",
                tournament_id=tournament_id,
                status=t.status.value,
            )
        balance = starting_balance if starting_balance is not None else t.starting_balance
        if balance <= 0:
            raise InvalidEvent("starting_balance must be positive", starting_balance=balance)

        p = ParticipantRecord(
            id=f"par_{uuid.uuid4().hex[:12]}",
            tournament_id=tournament_id,
            user_id=user_id,
            registered_at=to_iso(registered_at) or utc_now_iso(),
            starting_balance=balance,
            current_balance=balance,
        )

        def _register(conn: sqlite3.Connection) -> None:
            try:
                self._ledger.insert_participant(conn, p)
            except sqlite3.IntegrityError as e:
                raise InvalidEvent(
                    f"user {user_id} already registered in {tournament_id}",
                    tournament_id=tournament_id,
                    user_id=user_id,
                ) from e
            self._audit.log_action(
                action="participant.registered",
                entity_type="participant",
                entity_id=p.id,
                actor=actor,
                after=p.model_dump(mode="json"),
                metadata={"tournament_id": tournament_id, "user_id": user_id},
                conn=conn,
            )

        self._db.write(_register)
        log.info("participant.registered", participant_id=p.id, tournament_id=tournament_id, user_id=user_id)
        return p

    def disqualify_participant(self, participant_id: str, reason: str, actor: str = "admin") -> ParticipantRecord:
        return self._deactivate(participant_id, disqualified=True, reason=reason, actor=actor)

    def withdraw_participant(self, participant_id: str, actor: str = "admin") -> ParticipantRecord:
        return self._deactivate(participant_id, disqualified=False, reason="", actor=actor)

    def _deactivate(
        self, participant_id: str, disqualified: bool, reason: str, actor: str
    ) -> ParticipantRecord:
        p = self._ledger.get_participant(participant_id)
        if p is None:
            raise UnknownParticipant(f"participant {participant_id} not found", participant_id=participant_id)
        action = "participant.disqualified" if disqualified else "participant.withdrawn"
        t = self.require_tournament(p.tournament_id)
        if t.status in FROZEN_STATUSES:
            self._audit.log_action(
                action="participant.rejected",
                entity_type="participant",
                entity_id=participant_id,
                actor=actor,
                metadata={
                    "requested": action,
                    "tournament_id": t.id,
                    "tournament_status": t.status.value,
                },
            )
            raise InvalidTransition(
                f"participant {participant_id} is frozen, tournament {t.id} is {t.status.value}",
                participant_id=participant_id,
                tournament_id=t.id,
                status=t.status.value,
            )
        if not p.rankable:
            raise InvalidTransition(f"participant {participant_id} is already inactive", participant_id=participant_id)

        def _apply(conn: sqlite3.Connection) -> None:
            self._ledger.deactivate_participant(conn, participant_id, disqualified, reason)
            self._audit.log_action(
                action=action,
                entity_type="participant",
                entity_id=participant_id,
                actor=actor,
                before={"is_active": p.is_active, "disqualified": p.disqualified, "current_rank": p.current_rank},
                after={"is_active": False, "disqualified": disqualified, "current_rank": None},
                metadata={"reason": reason} if reason else {},
                conn=conn,
            )

        self._db.write(_apply)
        log.info(action, participant_id=participant_id, reason=reason)
        self._ranking.recompute_rankings(p.tournament_id, actor=actor)
        updated = self._ledger.get_participant(participant_id)
        if updated is None:
            raise UnknownParticipant(f"participant {participant_id} not found", participant_id=participant_id)
        return updated
