# Domain Package
from .models import (
    CardSetProgress,
    CardState,
    FlushResult,
    MigrationResult,
    Rating,
    ReviewStats,
    SessionPhase,
    SessionState,
    SyncEvent,
    SyncFailure,
    SyncStatus,
    UserProgressProfile,
)
from .ports import CardSetSource, DocumentStore, LastCardSetStore

__all__ = [
    "CardState",
    "CardSetProgress",
    "UserProgressProfile",
    "Rating",
    "ReviewStats",
    "SessionPhase",
    "SessionState",
    "SyncEvent",
    "SyncFailure",
    "SyncStatus",
    "FlushResult",
    "MigrationResult",
    "DocumentStore",
    "CardSetSource",
    "LastCardSetStore",
]
