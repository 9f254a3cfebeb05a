from typing import Optional


class PanopticonError(Exception):
    """Base exception for all Panopticon errors."""
    pass

class RecoverableError(PanopticonError):
    """An error that can be recovered from without data loss."""
    pass

class FatalError(PanopticonError):
    """An error that requires application termination or major intervention."""
    pass

class CommandError(RecoverableError):
    """A command was rejected before any event was created for it."""
    pass

class ValidationError(CommandError):
    """Illegal status transition or malformed command."""
    pass

class NotFoundError(CommandError):
    """A referenced project, milestone or task does not exist."""

    def __init__(self, kind: str, entity_id: str):
        super().__init__(f"{kind} not found: {entity_id}")
        self.kind = kind
        self.entity_id = entity_id

class CycleError(CommandError):
    """Adding a dependency edge would close a cycle."""

    def __init__(self, message: str, path: Optional[list] = None):
        super().__init__(message)
        self.path = path or []

class FileOperationError(RecoverableError):
    """File operation failed but can be retried."""
    pass

class CorruptionError(RecoverableError):
    """A data file is unreadable; derived files can be rebuilt from the log."""
    pass

class CorruptRecordError(CorruptionError):
    """A log line could not be parsed; it is skipped during replay."""

    def __init__(self, message: str, line_number: int = 0, raw: str = ""):
        super().__init__(message)
        self.line_number = line_number
        self.raw = raw

class ConfigError(RecoverableError):
    """Configuration file is unreadable or does not match the schema."""
    pass

class PersistenceError(FatalError):
    """A durable write failed; the triggering operation was aborted."""
    pass

class UnknownEventError(FatalError):
    """Well-formed record with an event type or version this build cannot apply."""
    pass

class MigrationError(FatalError):
    """An event payload migration failed - data may be corrupted."""
    pass
