"""
Ports (interfaces) for the external collaborators of the sync engine.

These define the contract that infrastructure adapters must implement.
Application services depend on these abstractions, not concrete implementations.
"""

from abc import ABC, abstractmethod
from typing import Any

from .models import DocumentSnapshot


class DocumentStore(ABC):
    """
    Port for the remote key-value document store.

    Implementations:
        - HttpDocumentStore: JSON REST API over httpx.
        - InMemoryDocumentStore: Process-local dict (offline backend, tests).

    Implementations raise RemoteUnavailable for retryable failures and
    RemoteRejected for permission/validation failures.
    """

    @abstractmethod
    async def get_document(self, path: str) -> DocumentSnapshot:
        """
        Read a single document.

        Returns:
            DocumentSnapshot with exists=False if the document is absent.
        """
        pass

    @abstractmethod
    async def set_document(self, path: str, data: dict[str, Any], merge: bool = False) -> None:
        """
        Write a document.

        Args:
            path: Document path, e.g. "users/{uid}".
            data: Document body.
            merge: Deep-merge nested maps into the existing document instead of
                replacing it.
        """
        pass

    @abstractmethod
    async def delete_document(self, path: str) -> None:
        """Delete a document. Deleting an absent document succeeds."""
        pass

    @abstractmethod
    async def list_documents(self, collection_path: str) -> list[DocumentSnapshot]:
        """List every document directly under a collection path."""
        pass

    async def close(self) -> None:
        """Release network resources. No-op by default."""
        return None


class CardSetSource(ABC):
    """Port for the bundled default card datasets."""

    @abstractmethod
    def load_card_set(self, card_set_id: str) -> list[dict[str, Any]] | None:
        """
        Load raw card data for a card set.

        Returns:
            List of {"id": ..., <content fields>} dicts, or None if the
            dataset does not exist.
        """
        pass

    @abstractmethod
    def available_card_sets(self) -> list[str]:
        pass


class LastCardSetStore(ABC):
    """Port for persisting the last-selected card set id (guest mode)."""

    @abstractmethod
    def save_last_card_set(self, card_set_id: str) -> None:
        pass

    @abstractmethod
    def load_last_card_set(self) -> str | None:
        pass

    @abstractmethod
    def clear_last_card_set(self) -> None:
        pass
