"""Exception types raised by the sync engine."""


class MenuSyncError(Exception):
    """Base class for sync engine errors."""


class OperationInProgressError(MenuSyncError):
    """Another caller holds the idempotency record for this scope and key."""

    def __init__(self, scope_id: str, key: str):
        self.scope_id = scope_id
        self.key = key
        super().__init__(f"Operation already in progress for scope '{scope_id}' (key {key})")


class DeltaNotFoundError(MenuSyncError):
    """Raised when a delta id does not exist."""


class DeltaValidationError(MenuSyncError):
    """Delta payload failed validation and must not be submitted."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__(f"Delta validation failed: {'; '.join(self.errors)}")


class CircuitOpenError(MenuSyncError):
    """Downstream circuit is open, calls are short-circuited until the cool-down ends."""


class ReplayHandlerError(MenuSyncError):
    """A DLQ replay handler could not complete the operation."""


class SyncCancelledError(MenuSyncError):
    """Cancellation was requested between orchestration phases."""


class SubmissionRejectedError(MenuSyncError):
    """The delivery platform answered but refused the delta."""


class SyncRunNotFoundError(MenuSyncError):
    """Raised when a sync run id does not exist."""
