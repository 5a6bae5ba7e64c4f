"""Exception hierarchy for dude-memory."""


class DudeError(Exception):
    """Base class for all store errors."""


class NotInitializedError(DudeError):
    """Store used before it was opened and migrated."""


class NotFoundError(DudeError):
    """A write targeted a record or project that does not exist."""


class ValidationError(DudeError):
    """Malformed input: unknown kind/status, empty title, bad vector."""


class StorageError(DudeError):
    """Underlying SQLite or LanceDB failure."""


class MigrationError(DudeError):
    """Schema upgrade failed and was rolled back."""


class EmbeddingError(DudeError):
    """Embedding could not be computed."""
