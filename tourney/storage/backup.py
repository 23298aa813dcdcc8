"""Ledger snapshots on disk.

The live database runs in WAL mode and keeps ingesting while a copy is
taken, so copies go through SQLite's online backup API rather than a file
copy. Every copy is checked before older ones are pruned: a corrupt or
schema-less backup must never be the reason a good one got deleted.
"""

from __future__ import annotations

import datetime as dt
import sqlite3
from pathlib import Path

from tourney.config import StorageConfig
from tourney.errors import PersistenceFailure
from tourney.observability.logger import get_logger

log = get_logger(__name__)

_PREFIX = "tourney_"


def list_backups(backup_dir: str) -> list[Path]:
    """Backups in ``backup_dir``, newest first (names sort by timestamp)."""
    d = Path(backup_dir)
    if not d.is_dir():
        return []
    return sorted(d.glob(f"{_PREFIX}*.db"), key=lambda p: p.name, reverse=True)


def _verify(path: Path) -> dict[str, int]:
    """Integrity-check a copy and count what it holds."""
    conn = sqlite3.connect(str(path))
    try:
        status = conn.execute("PRAGMA integrity_check").fetchone()[0]
        if status != "ok":
            raise PersistenceFailure(f"backup {path.name} failed integrity check: {status}", path=str(path))
        version = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()[0]
        return {
            "schema_version": int(version or 0),
            "tournaments": conn.execute("SELECT COUNT(*) FROM tournaments").fetchone()[0],
            "trades": conn.execute("SELECT COUNT(*) FROM trades").fetchone()[0],
            "audit_entries": conn.execute("SELECT COUNT(*) FROM audit_log").fetchone()[0],
        }
    except sqlite3.DatabaseError as e:
        raise PersistenceFailure(f"backup {path.name} is not a ledger database: {e}", path=str(path)) from e
    finally:
        conn.close()


def backup_database(
    source_path: str = "data/tourney.db",
    backup_dir: str = "data/backups",
    max_backups: int = 10,
) -> str:
    """Copy the ledger database, verify the copy, then prune old copies.

    At least one backup, the new one, is always kept. Returns its path.
    """
    src = Path(source_path)
    if not src.exists():
        raise FileNotFoundError(f"Source database not found: {source_path}")

    dest_dir = Path(backup_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / f"{_PREFIX}{dt.datetime.now().strftime('%Y%m%d_%H%M%S_%f')}.db"

    src_conn = sqlite3.connect(str(src))
    dst_conn = sqlite3.connect(str(dest))
    try:
        src_conn.backup(dst_conn)
    finally:
        dst_conn.close()
        src_conn.close()

    try:
        counts = _verify(dest)
    except PersistenceFailure:
        dest.unlink(missing_ok=True)
        raise
    log.info("backup.created", path=str(dest), size_kb=round(dest.stat().st_size / 1024, 1), **counts)

    for old in list_backups(backup_dir)[max(1, max_backups):]:
        old.unlink()
        log.info("backup.pruned", path=str(old))
    return str(dest)


def backup_from_config(config: StorageConfig) -> str:
    return backup_database(config.sqlite_path, config.backup_dir, config.max_backups)
