"""
One-time migration from per-card-set progress documents to the consolidated
per-user profile.

Legacy layout:       users/{uid}/cardSetProgress/{cardSetId}
Consolidated layout: users/{uid}.cardSetsProgress[{cardSetId}]

The migration is safe to re-run. Legacy documents are deleted only after the
consolidated write succeeded, and a legacy document whose card set is already
in the consolidated map is a leftover from an interrupted run: it is deleted
without being folded again.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

from revisit.domain.constants import MIGRATION_VERSION, REQUEST_TIMEOUT
from revisit.domain.errors import MigrationItemError, NotAuthenticated, RemoteError
from revisit.domain.models import CardSetProgress, MigrationResult, UserProgressProfile, utc_now
from revisit.domain.ports import DocumentStore

from .documents import (
    LegacyProgressDoc,
    decode_profile,
    decode_progress,
    encode_progress,
    legacy_collection_path,
    parse_stored_progress,
    user_doc_path,
)
from .retry import RetryPolicy, retry_async

logger = logging.getLogger(__name__)


class ProgressMigrator:
    def __init__(
        self,
        store: DocumentStore,
        retry_policy: RetryPolicy | None = None,
        timeout: float | None = REQUEST_TIMEOUT,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._store = store
        self._retry = retry_policy or RetryPolicy()
        self._timeout = timeout
        self._clock = clock
        self._sleep = sleep

    async def _call(self, operation, path: str):
        return await retry_async(operation, self._retry, self._timeout, path, self._sleep)

    async def migrate(self, user_id: str | None) -> tuple[MigrationResult, UserProgressProfile | None]:
        """
        Fold legacy progress documents into the user's consolidated profile.

        Returns:
            The migration result and the resulting profile. The profile is
            None if the consolidated document could not be read.
        """
        result = MigrationResult()
        if not user_id:
            result.errors.append(NotAuthenticated())
            return result, None

        now = self._clock()
        user_path = user_doc_path(user_id)
        collection = legacy_collection_path(user_id)

        try:
            snapshot = await self._call(lambda: self._store.get_document(user_path), user_path)
            result.read_operations += 1
            profile = decode_profile(user_id, user_path, snapshot.data if snapshot.exists else None, now)
            legacy_docs = await self._call(lambda: self._store.list_documents(collection), collection)
            result.read_operations += max(len(legacy_docs), 1)
        except RemoteError as e:
            logger.error(f"Migration for user {user_id} could not read progress: {e}")
            result.errors.append(e)
            return result, None

        folded: dict[str, CardSetProgress] = {}
        to_delete: list[str] = []
        for doc in legacy_docs:
            try:
                parsed = parse_stored_progress(doc.path, doc.data or {})
                if not isinstance(parsed, LegacyProgressDoc):
                    raise MigrationItemError(doc.path, "consolidated profile found in legacy collection")
            except MigrationItemError as e:
                logger.warning(str(e))
                result.errors.append(e)
                continue

            card_set_id = parsed.card_set_id
            if card_set_id in profile.card_sets_progress or card_set_id in folded:
                result.skipped_card_sets.append(card_set_id)
            else:
                folded[card_set_id] = decode_progress(parsed, now)
                result.migrated_card_sets.append(card_set_id)
            to_delete.append(doc.path)

        if folded or profile.migration_version != MIGRATION_VERSION:
            payload = {
                "cardSetsProgress": {key: encode_progress(value) for key, value in folded.items()},
                "migrationVersion": MIGRATION_VERSION,
                "migratedAt": now.isoformat(),
            }
            try:
                await self._call(
                    lambda: self._store.set_document(user_path, payload, merge=True), user_path
                )
                result.write_operations += 1
            except RemoteError as e:
                logger.error(f"Migration for user {user_id} failed to write consolidated profile: {e}")
                result.errors.append(e)
                return result, profile

            profile.card_sets_progress.update(folded)
            profile.migration_version = MIGRATION_VERSION

        remote_failed = False
        for path in to_delete:
            try:
                await self._call(lambda path=path: self._store.delete_document(path), path)
            except RemoteError as e:
                logger.warning(f"Failed to delete legacy progress document {path}: {e}")
                result.errors.append(e)
                remote_failed = True
                continue
            result.write_operations += 1
            result.deleted_documents.append(path)

        result.success = not remote_failed
        if folded or to_delete:
            logger.info(
                f"Migrated {len(folded)} card sets for user {user_id} "
                f"({len(result.skipped_card_sets)} already consolidated, "
                f"{len(result.deleted_documents)} legacy documents deleted)"
            )
        return result, profile
