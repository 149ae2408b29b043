from enum import Enum


class ChangeType(str, Enum):
    ADDED = "Added"
    MODIFIED = "Modified"
    SOFT_DELETED = "SoftDeleted"
    RESTORED = "Restored"


class EntityType(str, Enum):
    PRODUCT = "Product"
    CATEGORY = "Category"
    MODIFIER = "Modifier"
    MODIFIER_OPTION = "ModifierOption"


class DetectionType(str, Enum):
    FIRST_SYNC = "FirstSync"
    NO_CHANGE = "NoChange"
    CHANGED = "Changed"


class DeltaType(str, Enum):
    FIRST_SYNC = "FirstSync"
    INCREMENTAL = "Incremental"
    FULL_RESYNC = "FullResync"


class GenerationStatus(str, Enum):
    GENERATED = "Generated"
    FAILED = "Failed"


class SubmissionStatus(str, Enum):
    PENDING = "Pending"
    IN_PROGRESS = "InProgress"
    SENT = "Sent"
    FAILED = "Failed"


class DeletionSyncStatus(str, Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"


class SyncType(str, Enum):
    MANUAL = "Manual"
    SCHEDULED = "Scheduled"
    WEBHOOK = "Webhook"
    RETRY = "Retry"


class SyncRunStatus(str, Enum):
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"


class SyncResult(str, Enum):
    SUCCESS = "Success"
    FAILED = "Failed"
    NO_CHANGES = "NoChanges"


class SyncPhase(str, Enum):
    INITIALIZATION = "Initialization"
    CHANGE_DETECTION = "ChangeDetection"
    DELTA_GENERATION = "DeltaGeneration"
    DATA_VALIDATION = "DataValidation"
    SOFT_DELETE_PROCESSING = "SoftDeleteProcessing"
    DOWNSTREAM_SUBMISSION = "DownstreamSubmission"
    FINALIZATION = "Finalization"
    COMPLETED = "Completed"
    FAILED = "Failed"


# Progress percentage reported when a phase starts
PHASE_PROGRESS = {
    SyncPhase.INITIALIZATION: 0,
    SyncPhase.CHANGE_DETECTION: 10,
    SyncPhase.DELTA_GENERATION: 30,
    SyncPhase.DATA_VALIDATION: 40,
    SyncPhase.SOFT_DELETE_PROCESSING: 60,
    SyncPhase.DOWNSTREAM_SUBMISSION: 80,
    SyncPhase.FINALIZATION: 95,
    SyncPhase.COMPLETED: 100,
}


class IdempotencyStatus(str, Enum):
    STARTED = "Started"
    SUCCEEDED = "Succeeded"
    FAILED_PERMANENT = "FailedPermanent"


class IdempotencyOutcome(str, Enum):
    PROCEED = "Proceed"
    ALREADY_IN_PROGRESS = "AlreadyInProgress"
    ALREADY_SUCCEEDED = "AlreadySucceeded"
    ALREADY_FAILED_PERMANENT = "AlreadyFailedPermanent"
