"""Engine error taxonomy.

Every error raised across the ingestion / ledger / ranking boundary derives
from ``EngineError``. ``retryable`` tells the delivery side whether a
redelivery of the same event may succeed later.

  InvalidEvent         malformed or out-of-range event data, not retried
  DuplicateEvent       idempotency key already applied, reported as success
  UnknownParticipant   participant missing, foreign or inactive, not retried
  TournamentNotActive  tournament not accepting events, not retried
  InvalidTransition    trade or tournament state-machine violation
  PersistenceFailure   storage unavailable after bounded retries, retryable
"""

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base class for engine errors."""

    retryable: bool = False
    code: str = "ENGINE_ERROR"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class InvalidEvent(EngineError):
    code = "INVALID_EVENT"


class DuplicateEvent(EngineError):
    """Raised by the ledger when an idempotency key is already stored.

    The ingestion coordinator converts it into a successful no-op result.
    """
    code = "DUPLICATE_EVENT"


class UnknownParticipant(EngineError):
    code = "UNKNOWN_PARTICIPANT"


class UnknownTournament(UnknownParticipant):
    code = "UNKNOWN_TOURNAMENT"


class TournamentNotActive(EngineError):
    code = "TOURNAMENT_NOT_ACTIVE"


class InvalidTransition(EngineError):
    code = "INVALID_TRANSITION"


class PersistenceFailure(EngineError):
    code = "PERSISTENCE_FAILURE"
    retryable = True


class StaleAggregate(EngineError):
    """Optimistic version check failed; re-read and retry."""
    code = "STALE_AGGREGATE"
    retryable = True
