import enum


class QueueStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"


class LogStatus(str, enum.Enum):
    COMPLETED = "COMPLETED"


class IdempotencyStatus(str, enum.Enum):
    COMPLETED = "COMPLETED"
