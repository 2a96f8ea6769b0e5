from enum import Enum


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class LogStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    AWAITING_VALIDATION = "awaiting_validation"


class ValidationType(str, Enum):
    NONE = "none"
    MANUAL = "manual"
    REGEX = "regex"


class ValidationOutcome(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    AWAITING_VALIDATION = "awaiting_validation"


class SnapshotType(str, Enum):
    WORKFLOW = "workflow"


ACTIVE_LOG_STATUSES = {LogStatus.PENDING.value, LogStatus.RUNNING.value}
