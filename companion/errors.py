"""Error taxonomy for the companion core.

None of these leave the ledger or the mission store half-written: every
operation that raises one has either not touched the database or rolled its
transaction back.
"""


class CompanionError(Exception):
    """Base class for every error the core raises on purpose."""


class ValidationError(CompanionError):
    """Malformed input: unknown label, bad duration, bad status, bad rating."""


class MissionNotFound(ValidationError):
    def __init__(self, mission_id):
        super().__init__(f"Mission {mission_id} not found")
        self.mission_id = mission_id


class StateTransitionError(CompanionError):
    """Illegal status edge, or a second mission trying to become active."""


class InsufficientBalance(CompanionError):
    def __init__(self, requested, balance):
        super().__init__(f"Not enough points: requested {requested}, balance {balance}")
        self.requested = requested
        self.balance = balance


class GenerationFailed(CompanionError):
    """The content generator errored, timed out or returned an unusable draft."""


class GenerationBlocked(CompanionError):
    """The rest period after the last completion has not elapsed yet."""

    def __init__(self, gate):
        super().__init__(gate.notice)
        self.gate = gate


class PersistenceError(CompanionError):
    """The store is unavailable or rejected a write. Not retried here."""
