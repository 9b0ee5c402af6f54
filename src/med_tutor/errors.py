"""Error types raised by the progression engine."""


class EngineError(Exception):
    """Base class for every error the engine raises on purpose."""


class ValidationError(EngineError):
    """Malformed input: grade out of range, negative time, bad counts."""


class OwnershipError(EngineError):
    """A card or profile was touched on behalf of a different learner."""


class NotFoundError(EngineError):
    """Referenced content, card or domain does not exist."""


class PersistenceError(EngineError):
    """The profile store could not load or save."""


class StateConflictError(EngineError):
    """The requested transition is not allowed from the current state."""
