class BattleArenaError(Exception):
    """Base class for errors raised by the battle service."""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(BattleArenaError):
    """Malformed or missing input."""

    status_code = 400


class NotFound(BattleArenaError):
    status_code = 404


class StateViolation(BattleArenaError):
    """A lifecycle transition the battle state machine does not allow."""

    status_code = 400


class AlreadyCompleted(StateViolation):
    pass


class NotCompleted(StateViolation):
    pass


class StorageDegraded(BattleArenaError):
    """Durable store unreachable. Logged only; the call continues in memory."""


class JudgingUnavailable(BattleArenaError):
    """Backing judge unreachable. Logged only; a synthetic result is used."""
