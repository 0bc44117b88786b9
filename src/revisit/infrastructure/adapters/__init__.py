# Infrastructure Adapters
from .bundled_cards import DirectoryCardSetSource
from .http_store import HttpDocumentStore
from .last_card_set import FileLastCardSetStore
from .memory_store import InMemoryDocumentStore

__all__ = [
    "DirectoryCardSetSource",
    "FileLastCardSetStore",
    "HttpDocumentStore",
    "InMemoryDocumentStore",
]
