# Application Sync Package
from .cache import CacheEntry, SyncCache
from .migration import ProgressMigrator
from .retry import RetryPolicy, call_with_timeout, retry_async
from .status import SyncStatusChannel

__all__ = [
    "CacheEntry",
    "SyncCache",
    "ProgressMigrator",
    "RetryPolicy",
    "SyncStatusChannel",
    "call_with_timeout",
    "retry_async",
]
