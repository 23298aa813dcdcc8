"""Database migrations — create and upgrade schema."""

from __future__ import annotations

import sqlite3

from tourney.observability.logger import get_logger

log = get_logger(__name__)

SCHEMA_VERSION = 2

_MIGRATIONS: dict[int, list[str]] = {
    1: [
        """
        CREATE TABLE IF NOT EXISTS tournaments (
            id TEXT PRIMARY KEY,
            name TEXT,
            division TEXT NOT NULL,
            status TEXT NOT NULL,
            start_date TEXT,
            end_date TEXT,
            registration_start TEXT,
            registration_end TEXT,
            symbols_json TEXT DEFAULT '[]',
            starting_balance REAL NOT NULL,
            ranking_version INTEGER DEFAULT 0,
            rankings_updated_at TEXT,
            created_at TEXT,
            updated_at TEXT
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS participants (
            id TEXT PRIMARY KEY,
            tournament_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            registered_at TEXT NOT NULL,
            starting_balance REAL NOT NULL,
            current_balance REAL NOT NULL,
            realized_pnl REAL DEFAULT 0,
            unrealized_pnl REAL DEFAULT 0,
            total_pnl REAL DEFAULT 0,
            total_trades INTEGER DEFAULT 0,
            winning_trades INTEGER DEFAULT 0,
            losing_trades INTEGER DEFAULT 0,
            total_volume REAL DEFAULT 0,
            current_rank INTEGER,
            best_rank INTEGER,
            final_rank INTEGER,
            final_pnl REAL,
            is_active INTEGER DEFAULT 1,
            disqualified INTEGER DEFAULT 0,
            disqualification_reason TEXT DEFAULT '',
            last_trade_at TEXT,
            last_snapshot_at TEXT,
            version INTEGER DEFAULT 0,
            updated_at TEXT,
            UNIQUE (tournament_id, user_id),
            FOREIGN KEY (tournament_id) REFERENCES tournaments(id)
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS trades (
            id TEXT PRIMARY KEY,
            tournament_id TEXT NOT NULL,
            participant_id TEXT NOT NULL,
            external_trade_id TEXT NOT NULL,
            symbol TEXT NOT NULL,
            side TEXT NOT NULL,
            quantity REAL NOT NULL,
            price REAL NOT NULL,
            notional REAL NOT NULL,
            commission REAL DEFAULT 0,
            net_value REAL NOT NULL,
            realized_pnl REAL,
            status TEXT NOT NULL,
            executed_at TEXT,
            settled_at TEXT,
            received_at TEXT,
            created_at TEXT,
            updated_at TEXT,
            UNIQUE (tournament_id, external_trade_id),
            FOREIGN KEY (participant_id) REFERENCES participants(id)
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS positions (
            participant_id TEXT NOT NULL,
            symbol TEXT NOT NULL,
            quantity REAL DEFAULT 0,
            avg_price REAL DEFAULT 0,
            updated_at TEXT,
            PRIMARY KEY (participant_id, symbol),
            FOREIGN KEY (participant_id) REFERENCES participants(id)
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_participants_tournament ON participants(tournament_id);
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_participants_rank ON participants(tournament_id, current_rank);
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_trades_participant ON trades(participant_id);
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_trades_executed ON trades(tournament_id, executed_at);
        """,
    ],
    2: [
        # Performance time series
        """
        CREATE TABLE IF NOT EXISTS performance_snapshots (
            id TEXT PRIMARY KEY,
            tournament_id TEXT NOT NULL,
            participant_id TEXT NOT NULL,
            recorded_at TEXT NOT NULL,
            data_source TEXT,
            total_pnl REAL,
            realized_pnl REAL,
            unrealized_pnl REAL,
            balance REAL,
            number_of_trades INTEGER DEFAULT 0,
            total_shares_traded REAL DEFAULT 0,
            number_of_stocks_traded INTEGER DEFAULT 0,
            total_notional_traded REAL DEFAULT 0,
            win_rate REAL,
            best_trade REAL,
            worst_trade REAL,
            max_drawdown REAL,
            volatility REAL,
            sharpe_ratio REAL,
            positions_json TEXT DEFAULT '[]',
            position_count INTEGER DEFAULT 0,
            long_positions INTEGER DEFAULT 0,
            short_positions INTEGER DEFAULT 0,
            created_at TEXT,
            UNIQUE (participant_id, recorded_at),
            FOREIGN KEY (participant_id) REFERENCES participants(id)
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_snapshots_tournament ON performance_snapshots(tournament_id, recorded_at);
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_snapshots_recorded ON performance_snapshots(recorded_at);
        """,

        # Audit trail
        """
        CREATE TABLE IF NOT EXISTS audit_log (
            id TEXT PRIMARY KEY,
            timestamp TEXT NOT NULL,
            actor TEXT,
            action TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            entity_id TEXT,
            before_json TEXT,
            after_json TEXT,
            metadata_json TEXT,
            checksum TEXT
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp);
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_log(entity_type, entity_id);
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_log(action);
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_audit_actor ON audit_log(actor);
        """,
    ],
}


def run_migrations(conn: sqlite3.Connection) -> None:
    """Run all pending migrations."""
    conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)")

    current = _get_current_version(conn)

    for version in sorted(_MIGRATIONS.keys()):
        if version <= current:
            continue
        log.info("migrations.running", version=version)
        conn.execute("BEGIN")
        try:
            for sql in _MIGRATIONS[version]:
                conn.execute(sql)
            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (version,),
            )
        except sqlite3.Error:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
        log.info("migrations.applied", version=version)

    final = _get_current_version(conn)
    log.info("migrations.complete", version=final)


def _get_current_version(conn: sqlite3.Connection) -> int:
    try:
        row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        return row[0] if row and row[0] else 0
    except sqlite3.OperationalError:
        return 0
