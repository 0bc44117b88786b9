import asyncio
import copy
import json
import logging
from pathlib import Path
from typing import Any

from revisit.domain.errors import RemoteUnavailable
from revisit.domain.models import DocumentSnapshot
from revisit.domain.ports import DocumentStore


def deep_merge(base: dict[str, Any], update: dict[str, Any]) -> dict[str, Any]:
    """Merge nested maps the way a merge write does; non-map values are replaced."""
    merged = dict(base)
    for key, value in update.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class InMemoryDocumentStore(DocumentStore):
    """
    Process-local document store.

    Used as the offline backend (optionally persisted to a JSON file) and as
    the store double in tests. Every call is logged in `calls` as
    (operation, path, merge).
    """

    def __init__(self, snapshot_path: Path | None = None, latency: float = 0.0):
        self.logger = logging.getLogger(__name__)
        self.snapshot_path = snapshot_path
        self.latency = latency
        self.documents: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str, bool | None]] = []
        self._failures: list[tuple[str, str | None, Exception]] = []

        if snapshot_path and snapshot_path.exists():
            try:
                self.documents = json.loads(snapshot_path.read_text(encoding="utf-8"))
                self.logger.debug(f"Loaded {len(self.documents)} documents from {snapshot_path}")
            except (OSError, json.JSONDecodeError) as e:
                raise RemoteUnavailable(f"Could not read local store: {e}", path=str(snapshot_path)) from e

    @property
    def reads(self) -> int:
        return sum(1 for op, _, _ in self.calls if op in ("get", "list"))

    @property
    def writes(self) -> int:
        return sum(1 for op, _, _ in self.calls if op == "set")

    @property
    def deletes(self) -> int:
        return sum(1 for op, _, _ in self.calls if op == "delete")

    def writes_to(self, path: str) -> int:
        return sum(1 for op, p, _ in self.calls if op == "set" and p == path)

    def fail_next(self, operation: str, error: Exception, path: str | None = None, times: int = 1) -> None:
        """Make the next `times` calls of `operation` (optionally on `path`) raise `error`."""
        self._failures.extend([(operation, path, error)] * times)

    async def _enter(self, operation: str, path: str, merge: bool | None = None) -> None:
        self.calls.append((operation, path, merge))
        if self.latency:
            await asyncio.sleep(self.latency)
        for i, (op, fail_path, error) in enumerate(self._failures):
            if op == operation and (fail_path is None or fail_path == path):
                del self._failures[i]
                raise error

    async def get_document(self, path: str) -> DocumentSnapshot:
        await self._enter("get", path)
        data = self.documents.get(path)
        if data is None:
            return DocumentSnapshot(path=path, exists=False)
        return DocumentSnapshot(path=path, exists=True, data=copy.deepcopy(data))

    async def set_document(self, path: str, data: dict[str, Any], merge: bool = False) -> None:
        await self._enter("set", path, merge)
        if merge and path in self.documents:
            self.documents[path] = deep_merge(self.documents[path], data)
        else:
            self.documents[path] = copy.deepcopy(data)

    async def delete_document(self, path: str) -> None:
        await self._enter("delete", path)
        self.documents.pop(path, None)

    async def list_documents(self, collection_path: str) -> list[DocumentSnapshot]:
        await self._enter("list", collection_path)
        prefix = collection_path.rstrip("/") + "/"
        return [
            DocumentSnapshot(path=path, exists=True, data=copy.deepcopy(data))
            for path, data in sorted(self.documents.items())
            if path.startswith(prefix) and "/" not in path[len(prefix):]
        ]

    async def close(self) -> None:
        if self.snapshot_path is None:
            return
        self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
        self.snapshot_path.write_text(json.dumps(self.documents, indent=2, sort_keys=True), encoding="utf-8")
        self.logger.debug(f"Saved {len(self.documents)} documents to {self.snapshot_path}")
