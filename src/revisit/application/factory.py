"""
Service Factory
Centralizes the selection and wiring of store adapters and the sync cache.
"""

from revisit.application.config import AppConfig
from revisit.application.sync import RetryPolicy, SyncCache
from revisit.domain.ports import CardSetSource, DocumentStore, LastCardSetStore
from revisit.infrastructure.adapters.bundled_cards import DirectoryCardSetSource
from revisit.infrastructure.adapters.http_store import HttpDocumentStore
from revisit.infrastructure.adapters.last_card_set import FileLastCardSetStore
from revisit.infrastructure.adapters.memory_store import InMemoryDocumentStore

LOCAL_STORE_FILE = "documents.json"


def get_document_store(config: AppConfig) -> DocumentStore:
    """
    Returns the DocumentStore implementation selected by config.backend.
    """
    if config.backend == "http":
        return HttpDocumentStore(
            url=config.store_url,
            api_token=config.api_token,
            timeout=config.request_timeout,
        )
    return InMemoryDocumentStore(snapshot_path=config.state_dir / LOCAL_STORE_FILE)


def get_card_source(config: AppConfig) -> CardSetSource:
    return DirectoryCardSetSource(config.data_dir)


def get_last_card_set_store(config: AppConfig) -> LastCardSetStore:
    return FileLastCardSetStore(config.state_dir)


def build_cache(config: AppConfig, store: DocumentStore | None = None) -> SyncCache:
    """
    Wire a SyncCache from config. The store is created from config unless given.
    """
    return SyncCache.create(
        store or get_document_store(config),
        user_id=config.user_id,
        card_source=get_card_source(config),
        debounce_seconds=config.debounce_seconds,
        request_timeout=config.request_timeout,
        retry_policy=RetryPolicy(
            max_attempts=config.retry_max_attempts,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        ),
        strict_invariants=config.strict_invariants,
    )
