"""Ranking engine — leaderboard computation and read models.

Ranking is a pure function over an immutable read of every active
participant's aggregates:
  1. Sort by total PnL, highest first
  2. Break ties by earlier registration, then by participant id
  3. Assign dense ranks 1..N
  4. best_rank = min(previous best, new rank)

The result is written to the ``current_rank`` / ``best_rank`` columns in the
same transaction as the read, and ``tournaments.ranking_version`` is bumped.
Recomputation never raises; on failure the previous ranking stays in place.

Each recompute resorts the whole field, which is fine for tens to low
hundreds of participants. Larger fields want an order-statistics structure
updated per event instead.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from typing import Any, Iterable

from tourney.config import RankingConfig
from tourney.storage.audit import AuditTrail
from tourney.storage.database import Database
from tourney.storage.models import TournamentStatus, utc_now_iso
from tourney.observability.logger import get_logger
from tourney.observability.metrics import metrics

log = get_logger(__name__)

_FROZEN = frozenset({TournamentStatus.COMPLETED.value, TournamentStatus.CANCELLED.value})


@dataclass(frozen=True)
class Standing:
    """One participant's position-relevant state at read time."""
    participant_id: str
    total_pnl: float
    registered_at: str
    best_rank: int | None = None
    current_rank: int | None = None


@dataclass(frozen=True)
class RankAssignment:
    participant_id: str
    rank: int
    best_rank: int


def compute_rankings(standings: Iterable[Standing]) -> list[RankAssignment]:
    """Order standings into dense ranks. Deterministic for equal inputs."""
    ordered = sorted(
        standings,
        key=lambda s: (-s.total_pnl, s.registered_at, s.participant_id),
    )
    result: list[RankAssignment] = []
    for rank, s in enumerate(ordered, start=1):
        best = rank if s.best_rank is None else min(s.best_rank, rank)
        result.append(RankAssignment(participant_id=s.participant_id, rank=rank, best_rank=best))
    return result


@dataclass
class RecomputeResult:
    tournament_id: str
    ranking_version: int
    ranked: int
    changed: int
    assignments: list[RankAssignment] = field(default_factory=list)


@dataclass
class LeaderboardEntry:
    rank: int
    participant_id: str
    user_id: str
    total_pnl: float
    realized_pnl: float
    unrealized_pnl: float
    current_balance: float
    total_trades: int
    win_rate: float
    best_rank: int | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "rank": self.rank,
            "participant_id": self.participant_id,
            "user_id": self.user_id,
            "total_pnl": round(self.total_pnl, 2),
            "realized_pnl": round(self.realized_pnl, 2),
            "unrealized_pnl": round(self.unrealized_pnl, 2),
            "current_balance": round(self.current_balance, 2),
            "total_trades": self.total_trades,
            "win_rate": round(self.win_rate, 4),
            "best_rank": self.best_rank,
        }


@dataclass
class Leaderboard:
    tournament_id: str
    tournament_name: str
    entries: list[LeaderboardEntry]
    total_participants: int
    ranking_version: int
    last_updated: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tournament_id": self.tournament_id,
            "tournament_name": self.tournament_name,
            "entries": [e.to_dict() for e in self.entries],
            "total_participants": self.total_participants,
            "ranking_version": self.ranking_version,
            "last_updated": self.last_updated,
        }


@dataclass
class ParticipantRank:
    participant_id: str
    tournament_id: str
    user_id: str
    current_rank: int | None
    best_rank: int | None
    final_rank: int | None
    total_pnl: float
    total_participants: int
    ranking_version: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "participant_id": self.participant_id,
            "tournament_id": self.tournament_id,
            "user_id": self.user_id,
            "current_rank": self.current_rank,
            "best_rank": self.best_rank,
            "final_rank": self.final_rank,
            "total_pnl": round(self.total_pnl, 2),
            "total_participants": self.total_participants,
            "ranking_version": self.ranking_version,
        }


def _entry(row: sqlite3.Row) -> LeaderboardEntry:
    trades = int(row["total_trades"] or 0)
    return LeaderboardEntry(
        rank=int(row["current_rank"]),
        participant_id=row["id"],
        user_id=row["user_id"],
        total_pnl=float(row["total_pnl"] or 0),
        realized_pnl=float(row["realized_pnl"] or 0),
        unrealized_pnl=float(row["unrealized_pnl"] or 0),
        current_balance=float(row["current_balance"] or 0),
        total_trades=trades,
        win_rate=int(row["winning_trades"] or 0) / trades if trades else 0.0,
        best_rank=row["best_rank"],
    )


class RankingEngine:
    """Materializes tournament rankings and serves leaderboard reads."""

    def __init__(
        self,
        db: Database,
        audit: AuditTrail,
        config: RankingConfig | None = None,
    ):
        self._db = db
        self._audit = audit
        self._config = config or RankingConfig()

    # ── Recompute ────────────────────────────────────────────────────

    def recompute_rankings(self, tournament_id: str, actor: str = "system") -> RecomputeResult | None:
        """Recompute and publish the ranking of one tournament.

        Returns None when the tournament is unknown, frozen, or the
        recomputation failed.
        """
        try:
            with metrics.timer("ranking.recompute_ms"):
                result = self._db.write(lambda conn: self._recompute(conn, tournament_id, actor))
        except Exception as e:
            metrics.incr("ranking.recompute_failed")
            log.error("ranking.recompute_failed", tournament_id=tournament_id, error=str(e))
            return None
        if result is not None:
            log.info(
                "ranking.recomputed",
                tournament_id=tournament_id,
                ranking_version=result.ranking_version,
                ranked=result.ranked,
                changed=result.changed,
            )
        return result

    def _recompute(
        self, conn: sqlite3.Connection, tournament_id: str, actor: str
    ) -> RecomputeResult | None:
        t = conn.execute(
            "SELECT status, ranking_version FROM tournaments WHERE id = ?", (tournament_id,)
        ).fetchone()
        if t is None:
            log.warning("ranking.unknown_tournament", tournament_id=tournament_id)
            return None
        if t["status"] in _FROZEN:
            log.debug("ranking.frozen", tournament_id=tournament_id, status=t["status"])
            return None

        rows = conn.execute(
            """
            SELECT id, total_pnl, registered_at, best_rank, current_rank
            FROM participants
            WHERE tournament_id = ? AND is_active = 1 AND disqualified = 0
            """,
            (tournament_id,),
        ).fetchall()
        standings = [
            Standing(
                participant_id=r["id"],
                total_pnl=float(r["total_pnl"] or 0),
                registered_at=r["registered_at"],
                best_rank=r["best_rank"],
                current_rank=r["current_rank"],
            )
            for r in rows
        ]
        previous = {s.participant_id: s.current_rank for s in standings}
        assignments = compute_rankings(standings)

        for a in assignments:
            conn.execute(
                "UPDATE participants SET current_rank = ?, best_rank = ? WHERE id = ?",
                (a.rank, a.best_rank, a.participant_id),
            )
        conn.execute(
            """
            UPDATE participants SET current_rank = NULL
            WHERE tournament_id = ? AND (is_active = 0 OR disqualified = 1)
            """,
            (tournament_id,),
        )

        version = int(t["ranking_version"] or 0) + 1
        conn.execute(
            "UPDATE tournaments SET ranking_version = ?, rankings_updated_at = ? WHERE id = ?",
            (version, utc_now_iso(), tournament_id),
        )
        changed = sum(1 for a in assignments if previous.get(a.participant_id) != a.rank)
        self._audit.log_action(
            action="rankings.recomputed",
            entity_type="tournament",
            entity_id=tournament_id,
            actor=actor,
            metadata={"ranking_version": version, "ranked": len(assignments), "changed": changed},
            conn=conn,
        )
        return RecomputeResult(
            tournament_id=tournament_id,
            ranking_version=version,
            ranked=len(assignments),
            changed=changed,
            assignments=assignments,
        )

    # ── Reads ────────────────────────────────────────────────────────

    def get_leaderboard(
        self, tournament_id: str, limit: int | None = None, offset: int = 0
    ) -> Leaderboard | None:
        t = self._db.query_one(
            "SELECT name, ranking_version, rankings_updated_at FROM tournaments WHERE id = ?",
            (tournament_id,),
        )
        if t is None:
            return None
        limit = limit if limit and limit > 0 else self._config.default_page_size
        limit = min(limit, self._config.max_page_size)

        rows = self._db.query(
            """
            SELECT * FROM participants
            WHERE tournament_id = ? AND current_rank IS NOT NULL
            ORDER BY current_rank ASC LIMIT ? OFFSET ?
            """,
            (tournament_id, limit, max(0, offset)),
        )
        return Leaderboard(
            tournament_id=tournament_id,
            tournament_name=t["name"] or "",
            entries=[_entry(r) for r in rows],
            total_participants=self._count_active(tournament_id),
            ranking_version=int(t["ranking_version"] or 0),
            last_updated=t["rankings_updated_at"],
        )

    def get_top_performers(self, tournament_id: str, limit: int = 10) -> list[LeaderboardEntry]:
        board = self.get_leaderboard(tournament_id, limit=limit)
        return board.entries if board else []

    def get_participant_rank(self, participant_id: str) -> ParticipantRank | None:
        row = self._db.query_one(
            """
            SELECT p.*, t.ranking_version AS t_ranking_version
            FROM participants p JOIN tournaments t ON t.id = p.tournament_id
            WHERE p.id = ?
            """,
            (participant_id,),
        )
        if row is None:
            return None
        return ParticipantRank(
            participant_id=row["id"],
            tournament_id=row["tournament_id"],
            user_id=row["user_id"],
            current_rank=row["current_rank"],
            best_rank=row["best_rank"],
            final_rank=row["final_rank"],
            total_pnl=float(row["total_pnl"] or 0),
            total_participants=self._count_active(row["tournament_id"]),
            ranking_version=int(row["t_ranking_version"] or 0),
        )

    def _count_active(self, tournament_id: str) -> int:
        row = self._db.query_one(
            """
            SELECT COUNT(*) AS n FROM participants
            WHERE tournament_id = ? AND is_active = 1 AND disqualified = 0
            """,
            (tournament_id,),
        )
        return int(row["n"]) if row else 0
