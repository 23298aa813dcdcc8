"""Engine wiring — builds every component over one database."""

from __future__ import annotations

from pathlib import Path

from tourney.config import EngineConfig, load_config
from tourney.engine.ingestion import IngestionCoordinator
from tourney.engine.ledger import LedgerStore
from tourney.engine.performance import PerformanceRecorder
from tourney.engine.ranking import RankingEngine
from tourney.engine.tournaments import TournamentService
from tourney.storage.audit import AuditTrail
from tourney.storage.database import Database
from tourney.observability.logger import get_logger

log = get_logger(__name__)


class TournamentEngine:
    """All engine components sharing a single connected database."""

    def __init__(self, config: EngineConfig | None = None, db: Database | None = None):
        self.config = config or EngineConfig()
        if db is None:
            db = Database(self.config.storage)
            db.connect()
        self.db = db

        self.audit = AuditTrail(db, self.config.audit, self.config.retention)
        self.ledger = LedgerStore(db, self.config.ledger)
        self.ranking = RankingEngine(db, self.audit, self.config.ranking)
        self.tournaments = TournamentService(db, self.ledger, self.ranking, self.audit)
        self.performance = PerformanceRecorder(db, self.ledger, self.audit, self.config.retention)
        self.ingestion = IngestionCoordinator(
            db,
            self.ledger,
            self.performance,
            self.ranking,
            self.tournaments,
            self.audit,
            self.config.ingestion,
        )
        log.info("engine.ready", sqlite_path=self.config.storage.sqlite_path)

    @classmethod
    def from_config(cls, path: str | Path | None = None) -> "TournamentEngine":
        return cls(load_config(path))

    def close(self) -> None:
        self.db.close()

    def __enter__(self) -> "TournamentEngine":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
