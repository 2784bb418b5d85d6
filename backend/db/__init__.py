from .history_store import (
    ACTION_REBUILD,
    ACTION_REORGANIZE,
    CatalogMaintenanceLog,
    HistoryRecord,
    HistoryStore,
    close_history_store,
    get_history_store,
)
from .run_lock import MaintenanceRunLock, MaintenanceRunLocked

__all__ = [
    "ACTION_REBUILD",
    "ACTION_REORGANIZE",
    "CatalogMaintenanceLog",
    "HistoryRecord",
    "HistoryStore",
    "MaintenanceRunLock",
    "MaintenanceRunLocked",
    "close_history_store",
    "get_history_store",
]
