"""
In-memory card set cache with debounced, coalesced remote sync.

Reads are served from memory; mutations are applied optimistically and become
visible immediately. Remote writes happen in the background:

    record_mutation -> debounce timer -> flush -> cards document -> progress

At most one flush per card set is in flight. A flush requested while another
is running waits for it and then re-checks whether new mutations arrived.
Remote failures never roll back local state; they are reported through
FlushResult, SyncFailure and the status channel.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ulid import ULID

from revisit.application.progress import MasteryPolicy, aggregate, apply_pending
from revisit.application.progress.aggregator import DEFAULT_POLICY
from revisit.application.scheduler import new_card_state, reset_card_state
from revisit.domain.constants import DEBOUNCE_SECONDS, REQUEST_TIMEOUT
from revisit.domain.errors import (
    CardSetNotFound,
    CardSetNotLoaded,
    NotAuthenticated,
    RemoteError,
    RetriesExhausted,
    UnknownCard,
)
from revisit.domain.models import (
    CARD_FIELD_NAMES,
    IMMUTABLE_CARD_FIELDS,
    CardSetProgress,
    CardState,
    FlushResult,
    MigrationResult,
    PendingMutation,
    SyncEvent,
    SyncFailure,
    SyncStatus,
    UserProgressProfile,
    utc_now,
)
from revisit.domain.ports import CardSetSource, DocumentStore, LastCardSetStore

from .documents import (
    card_set_doc_path,
    decode_card_set,
    encode_card_set,
    encode_progress,
    user_doc_path,
)
from .migration import ProgressMigrator
from .retry import RetryPolicy, call_with_timeout
from .status import SyncStatusChannel

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """
    Per card set state owned by the SyncCache.

    `cards` is the baseline as last confirmed by (or loaded from) the remote
    store; `pending` holds the local mutations not yet written. `progress` is
    always the aggregate over baseline plus pending.

    `needs_reload` marks a baseline that did not come from the user's stored
    cards (a failed read, or cards carried over from guest mode). Such an entry
    is rebased onto the stored cards before its first write.
    """

    card_set_id: str
    cards: list[CardState]
    progress: CardSetProgress
    pending: PendingMutation = field(default_factory=dict)
    seed_pending: bool = False
    progress_stale: bool = False
    last_sync_time: datetime | None = None
    source: str = "remote"
    attempts: int = 0
    failure: SyncFailure | None = None
    epoch: int = 0
    needs_reload: bool = False

    @property
    def dirty(self) -> bool:
        return bool(self.pending) or self.seed_pending or self.progress_stale

    @property
    def card_ids(self) -> list[str]:
        return [card.card_id for card in self.cards]

    def current_cards(self) -> list[CardState]:
        """Cards with pending mutations applied."""
        return apply_pending(self.cards, self.pending)

    def find_card(self, card_id: str) -> CardState | None:
        for card in self.current_cards():
            if card.card_id == card_id:
                return card
        return None


class SyncCache:
    """
    Explicit cache service; one instance per application shell.

    Use `SyncCache.create(...)` to build one, `clear_for_user` on identity
    changes and `dispose` on shutdown.
    """

    def __init__(
        self,
        store: DocumentStore,
        user_id: str | None = None,
        card_source: CardSetSource | None = None,
        *,
        debounce_seconds: float = DEBOUNCE_SECONDS,
        request_timeout: float | None = REQUEST_TIMEOUT,
        retry_policy: RetryPolicy | None = None,
        strict_invariants: bool = False,
        mastery_policy: MasteryPolicy = DEFAULT_POLICY,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        status: SyncStatusChannel | None = None,
    ):
        self._store = store
        self._user_id = user_id
        self._card_source = card_source
        self._debounce_seconds = debounce_seconds
        self._timeout = request_timeout
        self._retry = retry_policy or RetryPolicy()
        self._strict = strict_invariants
        self._policy = mastery_policy
        self._clock = clock
        self._migrator = ProgressMigrator(store, self._retry, request_timeout, clock, sleep)
        self.status = status or SyncStatusChannel()

        self._entries: dict[str, CacheEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._debounce_timers: dict[str, asyncio.TimerHandle] = {}
        self._retry_timers: dict[str, asyncio.TimerHandle] = {}
        self._background: set[asyncio.Task] = set()
        self._failures: list[SyncFailure] = []

        self._profile: UserProgressProfile | None = None
        self._prepared_for: str | None = None
        self._prepare_lock = asyncio.Lock()
        self._migration_result: MigrationResult | None = None
        self._generation = 0
        self._disposed = False

        self._reads = 0
        self._writes = 0
        self._deletes = 0
        self._last_sync_time: datetime | None = None

    @classmethod
    def create(
        cls,
        store: DocumentStore,
        user_id: str | None = None,
        card_source: CardSetSource | None = None,
        **kwargs: Any,
    ) -> "SyncCache":
        """Build a cache. Performs no I/O; data is loaded lazily on first access."""
        cache = cls(store, user_id, card_source, **kwargs)
        logger.debug(f"SyncCache created for user={user_id or '<guest>'}")
        return cache

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def failures(self) -> list[SyncFailure]:
        return list(self._failures)

    @property
    def migration_result(self) -> MigrationResult | None:
        return self._migration_result

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, card_set_id: str) -> CacheEntry:
        """
        Return the entry for a card set, loading it on first access.

        A loaded entry is returned without suspending. Concurrent cold loads
        of the same card set are serialized; the second caller gets the entry
        the first one installed.

        Raises:
            CardSetNotFound: If neither the remote store nor the bundled
                datasets have the card set.
        """
        entry = self._entries.get(card_set_id)
        if entry is not None:
            return entry

        lock = self._locks.setdefault(card_set_id, asyncio.Lock())
        async with lock:
            entry = self._entries.get(card_set_id)
            if entry is not None:
                return entry

            generation = self._generation
            entry = await self._load(card_set_id)
            if generation != self._generation:
                logger.debug(f"Discarding load of '{card_set_id}' from a previous session")
                return entry

            self._entries[card_set_id] = entry
            if entry.dirty:
                self._schedule_debounce(card_set_id)
                self._publish(SyncStatus.IDLE, entry)
            return entry

    def peek(self, card_set_id: str) -> CacheEntry | None:
        return self._entries.get(card_set_id)

    def is_loaded(self, card_set_id: str) -> bool:
        return card_set_id in self._entries

    def is_dirty(self, card_set_id: str) -> bool:
        entry = self._entries.get(card_set_id)
        return entry is not None and entry.dirty

    def get_progress(self, card_set_id: str) -> CardSetProgress:
        """
        Current progress for a card set, pending mutations included.

        Falls back to the consolidated profile for card sets that are not
        loaded. Never touches the remote store.

        Raises:
            CardSetNotLoaded: If the card set is neither loaded nor known
                from the profile.
        """
        entry = self._entries.get(card_set_id)
        if entry is not None:
            return entry.progress
        if self._profile and card_set_id in self._profile.card_sets_progress:
            return self._profile.card_sets_progress[card_set_id]
        raise CardSetNotLoaded(card_set_id)

    def all_progress(self) -> dict[str, CardSetProgress]:
        snapshots = dict(self._profile.card_sets_progress) if self._profile else {}
        for card_set_id, entry in self._entries.items():
            snapshots[card_set_id] = entry.progress
        return snapshots

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def prepare_user(self) -> MigrationResult | None:
        """
        Run the legacy migration and load the consolidated profile.

        Runs once per user; a failed run is retried on the next call.
        """
        user_id = self._user_id
        if user_id is None:
            return None
        if self._prepared_for == user_id:
            return self._migration_result

        async with self._prepare_lock:
            if self._prepared_for == user_id:
                return self._migration_result

            result, profile = await self._migrator.migrate(user_id)
            self._reads += result.read_operations
            self._writes += result.write_operations - len(result.deleted_documents)
            self._deletes += len(result.deleted_documents)

            if user_id != self._user_id:
                return result

            self._migration_result = result
            if profile is not None:
                self._profile = profile
            if result.success:
                self._prepared_for = user_id
            else:
                logger.error(
                    f"Progress migration for user {user_id} incomplete: "
                    + "; ".join(str(e) for e in result.errors)
                )
            return result

    async def _load(self, card_set_id: str) -> CacheEntry:
        now = self._clock()
        user_id = self._user_id

        if user_id is None:
            cards = self._bundled_cards(card_set_id, now)
            logger.info(f"Loaded '{card_set_id}' from bundled data ({len(cards)} cards, guest)")
            return self._new_entry(card_set_id, cards, now, source="bundled")

        await self.prepare_user()

        path = card_set_doc_path(user_id, card_set_id)
        try:
            self._reads += 1
            snapshot = await call_with_timeout(lambda: self._store.get_document(path), self._timeout, path)
            cards = decode_card_set(path, snapshot.data or {}, card_set_id, now) if snapshot.exists else None
        except RemoteError as e:
            logger.warning(f"Could not read '{card_set_id}' from remote, using bundled data: {e}")
            self.status.publish(
                SyncEvent(SyncStatus.OFFLINE, card_set_id, error=str(e), timestamp=self._clock())
            )
            cards = self._bundled_cards(card_set_id, now)
            entry = self._new_entry(card_set_id, cards, now, source="bundled")
            entry.needs_reload = True
            return entry

        if cards is not None:
            logger.info(f"Loaded '{card_set_id}' from remote ({len(cards)} cards)")
            return self._new_entry(card_set_id, cards, now, source="remote")

        cards = self._bundled_cards(card_set_id, now)
        logger.info(f"Seeding '{card_set_id}' from bundled data ({len(cards)} cards)")
        return self._new_entry(card_set_id, cards, now, source="bundled", seed=True)

    def _bundled_cards(self, card_set_id: str, now: datetime) -> list[CardState]:
        raw_cards = self._card_source.load_card_set(card_set_id) if self._card_source else None
        if raw_cards is None:
            raise CardSetNotFound(card_set_id)
        return [
            new_card_state(
                str(raw["id"]),
                card_set_id,
                {key: value for key, value in raw.items() if key != "id"},
                now,
            )
            for raw in raw_cards
        ]

    def _new_entry(
        self,
        card_set_id: str,
        cards: list[CardState],
        now: datetime,
        source: str,
        seed: bool = False,
    ) -> CacheEntry:
        stored = self._profile.card_sets_progress.get(card_set_id) if self._profile else None
        progress = self._aggregate(cards, {}, card_set_id, now, stored)
        # The profile snapshot lags behind the cards document after an
        # interrupted flush; rewrite it on the next flush.
        stale = self._user_id is not None and source == "remote" and not _same_counts(stored, progress)
        return CacheEntry(
            card_set_id=card_set_id,
            cards=cards,
            progress=progress,
            seed_pending=seed,
            progress_stale=stale,
            source=source,
        )

    def _aggregate(
        self,
        cards: list[CardState],
        pending: PendingMutation,
        card_set_id: str,
        now: datetime,
        previous: CardSetProgress | None,
    ) -> CardSetProgress:
        return aggregate(
            cards,
            pending,
            card_set_id,
            now=now,
            previous=previous,
            policy=self._policy,
            strict=self._strict,
        )

    async def preload(self, card_set_ids: Iterable[str]) -> list[str]:
        """Warm several card sets concurrently. Returns the ids that loaded."""
        ids = list(card_set_ids)
        results = await asyncio.gather(*(self.get(cid) for cid in ids), return_exceptions=True)
        loaded = []
        for card_set_id, outcome in zip(ids, results):
            if isinstance(outcome, CardSetNotFound):
                logger.warning(str(outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                loaded.append(card_set_id)
        return loaded

    async def warm_start(self, last_store: LastCardSetStore) -> CacheEntry | None:
        """Load the last selected card set, forgetting it if it no longer exists."""
        card_set_id = last_store.load_last_card_set()
        if not card_set_id:
            return None
        try:
            return await self.get(card_set_id)
        except CardSetNotFound:
            logger.warning(f"Last card set '{card_set_id}' no longer exists")
            last_store.clear_last_card_set()
            return None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def record_mutation(
        self, card_set_id: str, card_id: str, update: dict[str, Any] | CardState
    ) -> CardSetProgress:
        """
        Record a card update locally and schedule a debounced flush.

        No I/O. Returns the card set's progress with the update applied.

        Raises:
            CardSetNotLoaded: If the card set has not been loaded.
            UnknownCard: If the card is not part of the card set.
        """
        entry = self._require(card_set_id)
        if card_id not in entry.card_ids:
            raise UnknownCard(card_set_id, card_id)

        if isinstance(update, CardState):
            changes = update.scheduling_fields()
        else:
            changes = {
                key: value
                for key, value in update.items()
                if key in CARD_FIELD_NAMES and key not in IMMUTABLE_CARD_FIELDS
            }

        was_dirty = entry.dirty
        # A new dict per mutation so an in-flight flush can tell which
        # updates it wrote.
        entry.pending[card_id] = {**entry.pending.get(card_id, {}), **changes}
        entry.progress = self._aggregate(
            entry.cards, entry.pending, card_set_id, self._clock(), entry.progress
        )

        if entry.failure is not None or entry.attempts:
            entry.failure = None
            entry.attempts = 0
        self._cancel_timer(self._retry_timers, card_set_id)
        self._schedule_debounce(card_set_id)

        if not was_dirty:
            self._publish(SyncStatus.IDLE, entry)
        return entry.progress

    async def reset_card_set(self, card_set_id: str) -> CardSetProgress:
        """Reset every card's scheduling state and schedule a full rewrite."""
        entry = await self.get(card_set_id)
        now = self._clock()
        entry.cards = [reset_card_state(card, now) for card in entry.cards]
        entry.epoch += 1
        entry.pending = {}
        entry.seed_pending = True
        entry.needs_reload = False
        entry.failure = None
        entry.attempts = 0
        entry.progress = self._aggregate(entry.cards, {}, card_set_id, now, entry.progress)
        self._cancel_timer(self._retry_timers, card_set_id)
        self._schedule_debounce(card_set_id)
        self._publish(SyncStatus.IDLE, entry)
        logger.info(f"Reset progress for '{card_set_id}'")
        return entry.progress

    def _require(self, card_set_id: str) -> CacheEntry:
        entry = self._entries.get(card_set_id)
        if entry is None:
            raise CardSetNotLoaded(card_set_id)
        return entry

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    async def flush(self, card_set_id: str) -> FlushResult:
        """
        Write a card set's pending state to the remote store.

        A clean card set is a no-op. If a flush for the same card set is in
        flight, wait for it; if it failed, return its result, otherwise flush
        whatever accumulated meanwhile.
        """
        while (inflight := self._inflight.get(card_set_id)) is not None:
            await asyncio.wait({inflight})
            if inflight.cancelled():
                return FlushResult(card_set_id, success=False, error=RemoteError("Flush cancelled"))
            result = inflight.result()
            if not result.success:
                return result

        entry = self._entries.get(card_set_id)
        if entry is None or not entry.dirty:
            return FlushResult(card_set_id, success=True, skipped=True)

        task = asyncio.ensure_future(self._flush_entry(entry))
        self._inflight[card_set_id] = task

        def _done(t: asyncio.Task) -> None:
            if self._inflight.get(card_set_id) is t:
                del self._inflight[card_set_id]

        task.add_done_callback(_done)
        # Issued writes are never cancelled half-way.
        return await asyncio.shield(task)

    async def force_sync_now(self) -> dict[str, FlushResult]:
        """Flush every dirty card set concurrently."""
        dirty = [cid for cid, entry in self._entries.items() if entry.dirty]
        if not dirty:
            return {}
        results = await asyncio.gather(*(self.flush(cid) for cid in dirty))
        return dict(zip(dirty, results))

    async def _flush_entry(self, entry: CacheEntry) -> FlushResult:
        card_set_id = entry.card_set_id
        self._cancel_timer(self._debounce_timers, card_set_id)

        user_id = self._user_id
        if user_id is None:
            error = NotAuthenticated()
            logger.debug(f"Not flushing '{card_set_id}': {error}")
            self._publish(SyncStatus.OFFLINE, entry, error)
            return FlushResult(card_set_id, success=False, stage="cards", error=error)

        self._publish(SyncStatus.SYNCING, entry)
        stage = "cards"
        try:
            if entry.needs_reload:
                await self._rebase(entry, user_id)
            now = self._clock()
            snapshot = dict(entry.pending)
            epoch = entry.epoch
            if snapshot or entry.seed_pending:
                cards = apply_pending(entry.cards, snapshot)
                path = card_set_doc_path(user_id, card_set_id)
                document = encode_card_set(card_set_id, cards, now)
                await self._write(path, document, merge=False)
                if entry.epoch != epoch:
                    # Reset while the write was in flight; the reset cards go out next.
                    self._schedule_debounce(card_set_id)
                    return FlushResult(card_set_id, success=True)

                entry.cards = cards
                entry.seed_pending = False
                for card_id, update in snapshot.items():
                    if entry.pending.get(card_id) is update:
                        del entry.pending[card_id]
                entry.progress_stale = True

            stage = "progress"
            progress = self._aggregate(entry.cards, {}, card_set_id, now, entry.progress)
            path = user_doc_path(user_id)
            await self._write(path, {"cardSetsProgress": {card_set_id: encode_progress(progress)}}, merge=True)
        except (NotAuthenticated, RemoteError) as e:
            return self._handle_failure(entry, stage, e)

        entry.progress_stale = False
        if self._profile is not None and self._profile.user_id == user_id:
            self._profile.card_sets_progress[card_set_id] = progress
        entry.progress = (
            self._aggregate(entry.cards, entry.pending, card_set_id, now, progress)
            if entry.pending
            else progress
        )
        entry.last_sync_time = now
        entry.attempts = 0
        entry.failure = None
        self._last_sync_time = now
        logger.info(f"Synced '{card_set_id}' ({len(snapshot)} card updates)")

        self._publish(SyncStatus.IDLE, entry)
        if entry.dirty:
            self._schedule_debounce(card_set_id)
        return FlushResult(card_set_id, success=True)

    async def _rebase(self, entry: CacheEntry, user_id: str) -> None:
        """
        Replace an entry's baseline with the user's stored cards and replay
        its pending updates on top.

        A pending update is dropped when the stored card was changed after it.
        Without a stored document the entry is written out as a seed.
        """
        await self.prepare_user()
        card_set_id = entry.card_set_id
        path = card_set_doc_path(user_id, card_set_id)
        epoch = entry.epoch
        self._reads += 1
        snapshot = await call_with_timeout(lambda: self._store.get_document(path), self._timeout, path)
        now = self._clock()
        if entry.epoch != epoch:
            entry.needs_reload = False
            return

        if not snapshot.exists:
            entry.seed_pending = True
        else:
            stored = {card.card_id: card for card in decode_card_set(path, snapshot.data or {}, card_set_id, now)}
            kept = {}
            for card_id, update in entry.pending.items():
                card = stored.get(card_id)
                changed_at = update.get("updated_at")
                if card is not None and (changed_at is None or card.updated_at <= changed_at):
                    kept[card_id] = update
            dropped = len(entry.pending) - len(kept)
            if dropped:
                logger.info(f"Kept stored state of {dropped} cards in '{card_set_id}' changed after the local update")
            entry.cards = list(stored.values())
            entry.pending = kept
            entry.seed_pending = False
            entry.source = "remote"
            entry.progress_stale = True

        entry.needs_reload = False
        entry.progress = self._aggregate(entry.cards, entry.pending, card_set_id, now, entry.progress)
        logger.info(f"Rebased '{card_set_id}' onto {'stored' if entry.source == 'remote' else 'bundled'} cards")

    async def _write(self, path: str, data: dict[str, Any], merge: bool) -> None:
        self._writes += 1
        await call_with_timeout(lambda: self._store.set_document(path, data, merge=merge), self._timeout, path)

    def _handle_failure(self, entry: CacheEntry, stage: str, error: Exception) -> FlushResult:
        card_set_id = entry.card_set_id
        if isinstance(error, NotAuthenticated):
            logger.warning(f"Sync of '{card_set_id}' needs a signed-in user: {error}")
            self._publish(SyncStatus.OFFLINE, entry, error)
            return FlushResult(card_set_id, success=False, stage=stage, error=error)

        entry.attempts += 1
        if getattr(error, "retryable", False) and self._retry.should_retry(entry.attempts):
            delay = self._retry.delay_for(entry.attempts)
            logger.warning(
                f"Sync of '{card_set_id}' failed at {stage} "
                f"(attempt {entry.attempts}/{self._retry.max_attempts}), retrying in {delay:.1f}s: {error}"
            )
            self._schedule_retry(card_set_id, delay)
            self._publish(SyncStatus.OFFLINE, entry, error)
            return FlushResult(card_set_id, success=False, stage=stage, error=error, will_retry=True)

        if getattr(error, "retryable", False):
            error = RetriesExhausted(entry.attempts, error, path=getattr(error, "path", None))

        failure = SyncFailure(
            operation_id=str(ULID()),
            card_set_id=card_set_id,
            stage=stage,
            error=error,
            attempts=entry.attempts,
            timestamp=self._clock(),
        )
        entry.failure = failure
        self._failures.append(failure)
        logger.error(f"Sync of '{card_set_id}' failed at {stage} [{failure.operation_id}]: {error}")
        self._publish(SyncStatus.ERROR, entry, error)
        return FlushResult(
            card_set_id,
            success=False,
            stage=stage,
            error=error,
            exhausted=isinstance(error, RetriesExhausted),
        )

    # ------------------------------------------------------------------
    # Timers and background tasks
    # ------------------------------------------------------------------

    def _schedule_debounce(self, card_set_id: str) -> None:
        self._cancel_timer(self._debounce_timers, card_set_id)
        loop = asyncio.get_running_loop()
        self._debounce_timers[card_set_id] = loop.call_later(
            self._debounce_seconds, self._on_timer, self._debounce_timers, card_set_id
        )

    def _schedule_retry(self, card_set_id: str, delay: float) -> None:
        self._cancel_timer(self._retry_timers, card_set_id)
        loop = asyncio.get_running_loop()
        self._retry_timers[card_set_id] = loop.call_later(
            delay, self._on_timer, self._retry_timers, card_set_id
        )

    def _on_timer(self, timers: dict[str, asyncio.TimerHandle], card_set_id: str) -> None:
        timers.pop(card_set_id, None)
        if self._disposed:
            return
        task = asyncio.ensure_future(self.flush(card_set_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @staticmethod
    def _cancel_timer(timers: dict[str, asyncio.TimerHandle], card_set_id: str) -> None:
        handle = timers.pop(card_set_id, None)
        if handle is not None:
            handle.cancel()

    def _cancel_all_timers(self) -> None:
        for timers in (self._debounce_timers, self._retry_timers):
            for handle in timers.values():
                handle.cancel()
            timers.clear()

    def _publish(self, status: SyncStatus, entry: CacheEntry | None, error: Exception | None = None) -> None:
        self.status.publish(
            SyncEvent(
                status=status,
                card_set_id=entry.card_set_id if entry else None,
                dirty=entry.dirty if entry else False,
                error=str(error) if error else None,
                timestamp=self._clock(),
            )
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def clear_for_user(self, user_id: str | None) -> None:
        """
        Drop all cached state and switch identity (None signs out).

        Signing in from guest mode carries over every card set the guest has
        reviewed cards in; those entries are rebased onto the user's stored
        cards and flushed after the debounce delay. Any other unflushed
        mutations are discarded. In-flight writes complete against the
        previous user's documents.
        """
        carried: dict[str, CacheEntry] = {}
        if self._user_id is None and user_id is not None:
            carried = {
                cid: entry
                for cid, entry in self._entries.items()
                if any(card.total_reviews > 0 for card in entry.current_cards())
            }
        dropped = [cid for cid, entry in self._entries.items() if entry.dirty and cid not in carried]
        if dropped:
            logger.warning(f"Discarding unsynced changes for: {', '.join(sorted(dropped))}")
        self._cancel_all_timers()
        self._entries.clear()
        self._locks.clear()
        self._profile = None
        self._prepared_for = None
        self._migration_result = None
        self._generation += 1
        self._user_id = user_id
        logger.info(f"Cache cleared; active user is now {user_id or '<guest>'}")

        for card_set_id, entry in carried.items():
            entry.needs_reload = True
            entry.seed_pending = False
            entry.progress_stale = False
            entry.failure = None
            entry.attempts = 0
            self._entries[card_set_id] = entry
            self._schedule_debounce(card_set_id)
        if carried:
            logger.info(f"Carrying guest progress for {', '.join(sorted(carried))} over to user {user_id}")
        self._publish(SyncStatus.IDLE, None)

    async def dispose(self, flush: bool = True) -> dict[str, FlushResult]:
        """Flush dirty entries (unless flush=False), then stop timers and background work."""
        results = await self.force_sync_now() if flush else {}
        self._disposed = True
        self._cancel_all_timers()
        if self._inflight:
            await asyncio.wait(set(self._inflight.values()))
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()
        self.status.clear()
        return results

    def stats(self) -> dict[str, Any]:
        return {
            "user_id": self._user_id,
            "cached_card_sets": len(self._entries),
            "dirty_card_sets": sum(1 for entry in self._entries.values() if entry.dirty),
            "inflight_flushes": len(self._inflight),
            "remote_reads": self._reads,
            "remote_writes": self._writes,
            "remote_deletes": self._deletes,
            "failures": len(self._failures),
            "last_sync_time": self._last_sync_time,
        }


def _same_counts(stored: CardSetProgress | None, current: CardSetProgress) -> bool:
    if stored is None:
        return False
    return (
        stored.total_cards == current.total_cards
        and stored.reviewed_cards == current.reviewed_cards
        and stored.mastered_cards == current.mastered_cards
        and stored.need_practice_cards == current.need_practice_cards
    )
