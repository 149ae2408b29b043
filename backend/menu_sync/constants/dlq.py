from enum import Enum
from typing import Dict


class DlqEventType(str, Enum):
    DELTA_SYNC = "DeltaSync"
    DELTA_GENERATION = "DeltaGeneration"
    DELTA_VALIDATION = "DeltaValidation"


class DlqFailureType(str, Enum):
    TRANSIENT = "Transient"
    PERMANENT = "Permanent"


class DlqPriority(str, Enum):
    CRITICAL = "Critical"
    HIGH = "High"
    NORMAL = "Normal"
    LOW = "Low"


class ReplayOutcome(str, Enum):
    SUCCESS = "Success"
    FAILED = "Failed"


class ReplayStrategy(str, Enum):
    CRITICAL = "Critical"
    CHRONOLOGICAL = "Chronological"
    REVERSE_CHRONOLOGICAL = "ReverseChronological"


class WorkflowStatus(str, Enum):
    COMPLETED = "Completed"
    PARTIALLY_COMPLETED = "PartiallyCompleted"
    CANCELLED = "Cancelled"
    ABORTED = "Aborted"
    FAILED = "Failed"


class RiskLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


PRIORITY_RANK = {
    DlqPriority.CRITICAL: 4,
    DlqPriority.HIGH: 3,
    DlqPriority.NORMAL: 2,
    DlqPriority.LOW: 1,
}

# Auto-retry ceiling, reaching it flips a message to Permanent
MAX_AUTO_RETRY_ATTEMPTS = 5
AUTO_RETRY_BATCH_LIMIT = 50

ALREADY_REPLAYED_ERROR = "Message has already been replayed"


class RecommendationCode(Enum):
    NO_PENDING = "NO_PENDING"
    CRITICAL_FIRST = "CRITICAL_FIRST"
    OLD_MESSAGES = "OLD_MESSAGES"
    LARGE_BACKLOG = "LARGE_BACKLOG"
    LOW_SUCCESS_RATE = "LOW_SUCCESS_RATE"
    PERMANENT_FAILURES = "PERMANENT_FAILURES"
    MULTIPLE_DELTA_SYNCS = "MULTIPLE_DELTA_SYNCS"


def explain_recommendation(code: RecommendationCode, context: Dict) -> str:
    templates = {
        RecommendationCode.NO_PENDING: "No pending messages to replay.",
        RecommendationCode.CRITICAL_FIRST: "{count} critical message(s) pending, replay them first.",
        RecommendationCode.OLD_MESSAGES: "{count} message(s) are older than {days} days and may reference stale menu data.",
        RecommendationCode.LARGE_BACKLOG: "Large backlog of {count} messages, replay in small batches during off-peak hours.",
        RecommendationCode.LOW_SUCCESS_RATE: "Historic replay success rate is {rate:.1f}%, investigate the root cause before replaying.",
        RecommendationCode.PERMANENT_FAILURES: "{count} permanent failure(s) need manual review and may fail again on replay.",
        RecommendationCode.MULTIPLE_DELTA_SYNCS: "{count} delta sync messages pending, replaying them out of order may overwrite newer menus.",
    }
    return templates[code].format(**context)
