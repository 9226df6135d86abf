"""
Error taxonomy for the reconciliation engine.

Record-level errors (validation, duplicates, conflicting state) are raised by the
code that examines a single record and caught by the loop that owns it, which logs
and skips that record. Mutation errors propagate and stop the run.
"""


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class RecordValidationError(SyncError):
    """Raised when a single directory or platform record is malformed."""
    pass


class DuplicateEntityError(SyncError):
    """Raised when a record resolves to a key already claimed by another record."""
    pass


class ConflictingStateError(SyncError):
    """Raised when a platform entity is in a state that forbids the intended action."""
    pass


class MutationError(SyncError):
    """Raised when a create, update, block, unblock, membership or delete call fails."""

    def __init__(self, action: str, cause: Exception):
        self.action = action
        self.cause = cause
        super().__init__(f"{action} failed: {cause}")


class EmailCollisionError(MutationError):
    """Raised when a user cannot be created because the e-mail address is already registered."""
    pass
