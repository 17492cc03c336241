"""Error taxonomy for the progression engine.

Every error carries a stable ``code`` that the HTTP boundary and callers
use to classify it. Component errors propagate to the facade unchanged.
"""

from __future__ import annotations

from dataclasses import dataclass


class ProgressionError(Exception):
    code = "progression_error"


class InputValidationError(ProgressionError):
    """Malformed or out-of-range input, rejected before any write."""

    code = "invalid_input"


class PlayerBannedError(InputValidationError):
    code = "player_banned"


class NotInRaceError(InputValidationError):
    """The player was not seated in the lobby when the race started."""

    code = "not_in_race"


class ConflictError(ProgressionError):
    """The write would violate a uniqueness or capacity rule; nothing was applied."""

    code = "conflict"


class DuplicateMembershipError(ConflictError):
    code = "already_in_lobby"


class LobbyFullError(ConflictError):
    code = "lobby_full"


class LobbyClosedError(ConflictError):
    code = "lobby_closed"


class DuplicateResultError(ConflictError):
    code = "duplicate_result"


class RaceFinalizedError(ConflictError):
    code = "race_finalized"


class PositionTakenError(ConflictError):
    code = "position_taken"


class InvalidTransitionError(ConflictError):
    code = "invalid_transition"


class DuplicateUsernameError(ConflictError):
    code = "username_taken"


class DanglingReferenceError(ProgressionError):
    """The referenced player, race, lobby or achievement does not exist."""

    code = "not_found"


class ConcurrencyRetryError(ProgressionError):
    """Lost a compare-and-swap on a per-entity update. Retrying the same call is safe."""

    code = "concurrency_retry"


class TransientStoreError(ProgressionError):
    """The store timed out or was unavailable. Retry with backoff."""

    code = "store_unavailable"


@dataclass(frozen=True)
class ResultFailure:
    player_id: str
    code: str
    message: str


class SubmissionRejectedError(ProgressionError):
    """A result batch was rejected as a whole; ``failures`` names each failed result."""

    code = "submission_rejected"

    def __init__(self, race_id: str, failures: list[ResultFailure]) -> None:
        self.race_id = race_id
        self.failures = failures
        reasons = "; ".join(f"{f.player_id}: {f.message}" for f in failures)
        super().__init__(f"Results for race {race_id} rejected ({reasons})")

    @property
    def codes(self) -> set[str]:
        return {f.code for f in self.failures}
