from .schema import (
    RUN_COUNTER_FIELDS,
    RunLedgerClosedError,
    ScheduledTask,
    SchemaInfo,
    SyncCheckpoint,
    SyncCursor,
    SyncFailure,
    SyncRun,
    SyncRunStatus,
    TaskLock,
    TaskRunHistory,
)

__all__ = [
    "RUN_COUNTER_FIELDS",
    "RunLedgerClosedError",
    "ScheduledTask",
    "SchemaInfo",
    "SyncCheckpoint",
    "SyncCursor",
    "SyncFailure",
    "SyncRun",
    "SyncRunStatus",
    "TaskLock",
    "TaskRunHistory",
]
