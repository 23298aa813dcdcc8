"""Audit trail — append-only log of every state-changing action.

Records, for each logical action across the engine:
  - Who did it (actor: broker feed, admin, system)
  - What happened (action, entity type and id)
  - State before and after
  - Free-form metadata (idempotency key, rejection reason, ...)

Entries carry a checksum so tampering can be detected. They are never
updated; the only deletion path is the retention purge.
"""

from __future__ import annotations

import datetime as dt
import hashlib
import json
import sqlite3
import uuid
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel

from tourney.config import AuditConfig, RetentionConfig
from tourney.storage.database import Database
from tourney.storage.models import to_iso, utc_now, utc_now_iso
from tourney.observability.logger import get_logger

log = get_logger(__name__)


def _normalise(data: Any) -> Any:
    """Round-trip through JSON so stored and in-memory checksums agree."""
    if data is None:
        return None
    return json.loads(json.dumps(data, default=str))


@dataclass
class AuditEntry:
    """An immutable audit trail entry."""
    audit_id: str
    timestamp: str
    actor: str
    action: str
    entity_type: str
    entity_id: str = ""
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    # Integrity
    checksum: str = ""

    def __post_init__(self):
        if not self.checksum:
            self.checksum = self._compute_checksum()

    def _compute_checksum(self) -> str:
        """Compute SHA-256 checksum for integrity verification."""
        content = json.dumps({
            "audit_id": self.audit_id,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "before": self.before,
            "after": self.after,
            "metadata": self.metadata,
        }, sort_keys=True, default=str)
        return hashlib.sha256(content.encode()).hexdigest()[:16]

    def verify_integrity(self) -> bool:
        """Verify the entry hasn't been tampered with."""
        return self.checksum == self._compute_checksum()

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AuditEntry":
        return cls(
            audit_id=row["id"],
            timestamp=row["timestamp"],
            actor=row["actor"] or "",
            action=row["action"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"] or "",
            before=json.loads(row["before_json"]) if row["before_json"] else None,
            after=json.loads(row["after_json"]) if row["after_json"] else None,
            metadata=json.loads(row["metadata_json"]) if row["metadata_json"] else {},
            checksum=row["checksum"] or "",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "audit_id": self.audit_id,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "before": self.before,
            "after": self.after,
            "metadata": self.metadata,
            "checksum": self.checksum,
        }


class AuditFilter(BaseModel):
    """Query filters; every field is optional and combined with AND."""
    actor: str | None = None
    action: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    start: dt.datetime | str | None = None
    end: dt.datetime | str | None = None
    limit: int | None = None
    offset: int = 0


class AuditTrail:
    """Persistent audit trail backed by the ``audit_log`` table."""

    def __init__(
        self,
        db: Database,
        config: AuditConfig | None = None,
        retention: RetentionConfig | None = None,
    ):
        self._db = db
        self._config = config or AuditConfig()
        self._retention = retention or RetentionConfig()

    def log_action(
        self,
        action: str,
        entity_type: str,
        entity_id: str = "",
        actor: str = "system",
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        conn: sqlite3.Connection | None = None,
    ) -> AuditEntry:
        """Record an audit entry.

        Pass ``conn`` to write inside the caller's transaction so the entry
        commits or rolls back together with the change it describes.
        """
        entry = AuditEntry(
            audit_id=f"audit_{uuid.uuid4().hex}",
            timestamp=utc_now_iso(),
            actor=actor,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            before=_normalise(before),
            after=_normalise(after),
            metadata=_normalise(metadata) or {},
        )
        if conn is not None:
            self._insert(conn, entry)
        else:
            self._db.write(lambda c: self._insert(c, entry))

        log.debug(
            "audit.recorded",
            audit_id=entry.audit_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        return entry

    @staticmethod
    def _insert(conn: sqlite3.Connection, entry: AuditEntry) -> None:
        conn.execute(
            """
            INSERT INTO audit_log
                (id, timestamp, actor, action, entity_type, entity_id,
                 before_json, after_json, metadata_json, checksum)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.audit_id, entry.timestamp, entry.actor, entry.action,
                entry.entity_type, entry.entity_id,
                json.dumps(entry.before) if entry.before is not None else None,
                json.dumps(entry.after) if entry.after is not None else None,
                json.dumps(entry.metadata),
                entry.checksum,
            ),
        )

    def get_audit_logs(self, filters: AuditFilter | None = None, **kwargs: Any) -> list[AuditEntry]:
        """Query audit entries, newest first, with a bounded page size."""
        f = filters or AuditFilter(**kwargs)
        clauses: list[str] = []
        params: list[Any] = []
        if f.actor:
            clauses.append("actor = ?")
            params.append(f.actor)
        if f.action:
            clauses.append("action = ?")
            params.append(f.action)
        if f.entity_type:
            clauses.append("entity_type = ?")
            params.append(f.entity_type)
        if f.entity_id:
            clauses.append("entity_id = ?")
            params.append(f.entity_id)
        if f.start:
            clauses.append("timestamp >= ?")
            params.append(to_iso(f.start))
        if f.end:
            clauses.append("timestamp <= ?")
            params.append(to_iso(f.end))

        limit = f.limit if f.limit and f.limit > 0 else self._config.default_page_size
        limit = min(limit, self._config.max_page_size)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._db.query(
            f"SELECT * FROM audit_log {where} "
            "ORDER BY timestamp DESC, rowid DESC LIMIT ? OFFSET ?",
            (*params, limit, max(0, f.offset)),
        )
        return [AuditEntry.from_row(r) for r in rows]

    def verify_integrity(self) -> tuple[int, int]:
        """Verify integrity of all stored entries. Returns (valid, invalid)."""
        rows = self._db.query("SELECT * FROM audit_log")
        valid = sum(1 for r in rows if AuditEntry.from_row(r).verify_integrity())
        return valid, len(rows) - valid

    def get_actor_activity_summary(self, actor: str, days: int = 30) -> dict[str, Any]:
        """Counts per action for one actor over a trailing window."""
        since = to_iso(utc_now() - dt.timedelta(days=days))
        rows = self._db.query(
            """
            SELECT action, COUNT(*) AS cnt FROM audit_log
            WHERE actor = ? AND timestamp >= ?
            GROUP BY action ORDER BY cnt DESC
            """,
            (actor, since),
        )
        by_action = {r["action"]: int(r["cnt"]) for r in rows}
        recent = self.get_audit_logs(AuditFilter(actor=actor, start=since, limit=10))
        return {
            "actor": actor,
            "days": days,
            "total_actions": sum(by_action.values()),
            "actions_by_type": by_action,
            "recent_actions": [e.to_dict() for e in recent],
        }

    def cleanup_old_logs(self, days_to_keep: int | None = None) -> int:
        """Retention purge. Returns the number of deleted entries."""
        days = days_to_keep if days_to_keep is not None else self._retention.audit_days
        cutoff = to_iso(utc_now() - dt.timedelta(days=days))

        def _purge(conn: sqlite3.Connection) -> int:
            cur = conn.execute("DELETE FROM audit_log WHERE timestamp < ?", (cutoff,))
            self.log_action(
                action="audit.purged",
                entity_type="audit_log",
                metadata={"cutoff": cutoff, "deleted": cur.rowcount, "days_to_keep": days},
                conn=conn,
            )
            return cur.rowcount

        deleted = self._db.write(_purge)
        log.info("audit.purged", deleted=deleted, cutoff=cutoff)
        return deleted
