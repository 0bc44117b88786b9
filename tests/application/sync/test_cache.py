import asyncio
from datetime import timedelta

import pytest

from revisit.application.progress import aggregate
from revisit.application.scheduler import new_card_state, schedule
from revisit.application.sync import RetryPolicy
from revisit.application.sync.documents import ProgressDocument, decode_progress, encode_card_set
from revisit.domain.errors import (
    CardSetNotFound,
    CardSetNotLoaded,
    NotAuthenticated,
    RemoteRejected,
    RemoteUnavailable,
    RetriesExhausted,
    UnknownCard,
)
from revisit.domain.models import SyncStatus
from tests.helpers import FIXED_NOW, FakeLastCardSetStore

CARDS_DOC = "users/u1/cardSets/basics"
USER_DOC = "users/u1"


def card_writes(store, path=CARDS_DOC):
    return store.writes_to(path)


async def loaded_clean(cache, card_set_id="basics"):
    """Load a card set and flush its seed write so the entry starts clean."""
    entry = await cache.get(card_set_id)
    result = await cache.flush(card_set_id)
    assert result.success
    assert not entry.dirty
    return entry


# --- Loading ---


@pytest.mark.asyncio
async def test_cold_load_seeds_from_bundled_data(make_cache, store, card_source):
    cache = make_cache()

    entry = await cache.get("basics")

    assert entry.source == "bundled"
    assert len(entry.cards) == 10
    assert all(card.is_new for card in entry.cards)
    assert entry.cards[0].content["front"]["title"] == "Q1"
    assert entry.seed_pending and entry.dirty
    assert card_writes(store) == 0
    assert card_source.loads == ["basics"]

    result = await cache.flush("basics")

    assert result.success
    assert store.documents[CARDS_DOC]["totalCards"] == 10
    assert store.documents[USER_DOC]["cardSetsProgress"]["basics"]["totalCards"] == 10
    assert not entry.dirty
    assert entry.last_sync_time == FIXED_NOW
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_cold_load_from_remote_document(make_cache, store, card_source, clock):
    cards = [schedule(new_card_state("r1", "basics", {"front": "x"}, FIXED_NOW), 5, FIXED_NOW)]
    store.documents[CARDS_DOC] = encode_card_set("basics", cards, FIXED_NOW)
    cache = make_cache()

    entry = await cache.get("basics")

    assert entry.source == "remote"
    assert entry.cards == cards
    assert not entry.seed_pending
    assert card_source.loads == []
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_concurrent_cold_loads_share_one_read(make_cache, store):
    cache = make_cache()

    first, second = await asyncio.gather(cache.get("basics"), cache.get("basics"))

    assert first is second
    assert sum(1 for op, path, _ in store.calls if op == "get" and path == CARDS_DOC) == 1
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_warm_get_issues_no_reads(make_cache, store):
    cache = make_cache()
    entry = await cache.get("basics")
    calls = len(store.calls)

    assert await cache.get("basics") is entry
    assert cache.peek("basics") is entry
    assert cache.is_loaded("basics")
    assert not cache.is_loaded("small")
    assert len(store.calls) == calls
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_unknown_card_set(make_cache):
    cache = make_cache()
    with pytest.raises(CardSetNotFound):
        await cache.get("nope")
    assert cache.peek("nope") is None


async def store_reviews(make_cache, count):
    """Persist `count` reviewed cards for u1 through a separate cache."""
    writer = make_cache()
    entry = await loaded_clean(writer)
    for card in entry.cards[:count]:
        writer.record_mutation("basics", card.card_id, schedule(card, 5, FIXED_NOW))
    assert (await writer.flush("basics")).success
    await writer.dispose(flush=False)


def reviewed_in(document):
    return [card["id"] for card in document["cards"] if card["totalReviews"] > 0]


@pytest.mark.asyncio
async def test_remote_read_failure_falls_back_to_bundled(make_cache, store):
    await store_reviews(make_cache, 5)
    cache = make_cache()
    store.fail_next("get", RemoteUnavailable("offline"), path=CARDS_DOC)

    entry = await cache.get("basics")

    assert entry.source == "bundled"
    assert entry.needs_reload
    assert not entry.seed_pending
    assert cache.status.status == SyncStatus.OFFLINE

    card = entry.cards[5]
    cache.record_mutation("basics", card.card_id, schedule(card, 4, FIXED_NOW))
    result = await cache.flush("basics")

    assert result.success
    assert reviewed_in(store.documents[CARDS_DOC]) == [f"b-{i:02d}" for i in range(1, 7)]
    assert store.documents[USER_DOC]["cardSetsProgress"]["basics"]["reviewedCards"] == 6
    assert entry.source == "remote"
    assert not entry.needs_reload
    assert cache.get_progress("basics").reviewed_cards == 6
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_failed_reload_writes_nothing(make_cache, store):
    await store_reviews(make_cache, 5)
    cache = make_cache()
    store.fail_next("get", RemoteUnavailable("offline"), path=CARDS_DOC, times=2)
    entry = await cache.get("basics")
    cache.record_mutation("basics", entry.cards[5].card_id, {"repetitions": 1})
    writes = card_writes(store)

    result = await cache.flush("basics")

    assert result.will_retry
    assert result.stage == "cards"
    assert card_writes(store) == writes
    assert len(reviewed_in(store.documents[CARDS_DOC])) == 5
    assert entry.needs_reload and entry.dirty
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_first_access_runs_migration_once(make_cache, store):
    store.documents["users/u1/cardSetProgress/legacy"] = {"cardSetId": "legacy", "totalCards": 4}
    cache = make_cache()

    await cache.get("basics")
    await cache.get("small")

    assert sum(1 for op, _, _ in store.calls if op == "list") == 1
    assert "users/u1/cardSetProgress/legacy" not in store.documents
    assert cache.migration_result.migrated_card_sets == ["legacy"]
    assert cache.get_progress("legacy").total_cards == 4
    assert set(cache.all_progress()) == {"legacy", "basics", "small"}
    await cache.dispose(flush=False)


# --- Mutations ---


@pytest.mark.asyncio
async def test_mutation_is_visible_immediately_without_io(make_cache, store):
    cache = make_cache()
    entry = await loaded_clean(cache)
    calls = len(store.calls)
    card = entry.cards[0]

    progress = cache.record_mutation("basics", card.card_id, schedule(card, 5, FIXED_NOW))

    assert progress.reviewed_cards == 1
    assert cache.get_progress("basics").reviewed_cards == 1
    assert entry.find_card(card.card_id).total_reviews == 1
    assert entry.cards[0].total_reviews == 0
    assert cache.is_dirty("basics")
    assert len(store.calls) == calls
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_partial_mutations_merge(make_cache):
    cache = make_cache()
    entry = await cache.get("basics")
    card_id = entry.cards[0].card_id

    cache.record_mutation("basics", card_id, {"repetitions": 2})
    cache.record_mutation("basics", card_id, {"interval": 6, "card_id": "evil"})

    assert entry.pending[card_id] == {"repetitions": 2, "interval": 6}
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_mutation_requires_loaded_set_and_known_card(make_cache):
    cache = make_cache()
    with pytest.raises(CardSetNotLoaded):
        cache.record_mutation("basics", "b-01", {"repetitions": 1})

    await cache.get("basics")
    with pytest.raises(UnknownCard):
        cache.record_mutation("basics", "zzz", {"repetitions": 1})
    await cache.dispose(flush=False)


def test_get_progress_of_unknown_set(make_cache):
    with pytest.raises(CardSetNotLoaded):
        make_cache().get_progress("basics")


# --- Flushing ---


@pytest.mark.asyncio
async def test_flush_of_clean_entry_is_a_no_op(make_cache, store):
    cache = make_cache()
    await loaded_clean(cache)
    writes = store.writes

    result = await cache.flush("basics")

    assert result.success and result.skipped
    assert store.writes == writes
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_two_flushes_produce_one_card_write(make_cache, store):
    cache = make_cache()
    entry = await loaded_clean(cache)
    cache.record_mutation("basics", entry.cards[0].card_id, schedule(entry.cards[0], 4, FIXED_NOW))
    before = card_writes(store)

    first, second = await asyncio.gather(cache.flush("basics"), cache.flush("basics"))

    assert first.success and second.success
    assert card_writes(store) - before == 1
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_progress_round_trip_after_flush(make_cache, store):
    cache = make_cache()
    entry = await loaded_clean(cache)
    for card in entry.cards[:4]:
        cache.record_mutation("basics", card.card_id, schedule(card, 5, FIXED_NOW))

    await cache.flush("basics")

    expected = aggregate(entry.cards, {}, "basics", now=FIXED_NOW)
    stored = ProgressDocument.model_validate(store.documents[USER_DOC]["cardSetsProgress"]["basics"])
    assert decode_progress(stored) == expected
    assert expected.reviewed_cards == 4
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_mutation_during_flush_is_kept(make_cache, store):
    cache = make_cache()
    entry = await loaded_clean(cache)
    first, second = entry.cards[0], entry.cards[1]
    cache.record_mutation("basics", first.card_id, schedule(first, 5, FIXED_NOW))
    store.latency = 0.05

    flushing = asyncio.create_task(cache.flush("basics"))
    await asyncio.sleep(0.01)
    cache.record_mutation("basics", second.card_id, schedule(second, 5, FIXED_NOW))
    result = await flushing

    assert result.success
    assert list(entry.pending) == [second.card_id]
    assert entry.dirty
    assert cache.get_progress("basics").reviewed_cards == 2
    written = store.documents[CARDS_DOC]["cards"]
    assert [c["totalReviews"] for c in written[:2]] == [1, 0]
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_card_write_failure_skips_progress_write(make_cache, store):
    cache = make_cache()
    entry = await loaded_clean(cache)
    cache.record_mutation("basics", entry.cards[0].card_id, {"repetitions": 1})
    user_writes = store.writes_to(USER_DOC)
    store.fail_next("set", RemoteUnavailable("offline"), path=CARDS_DOC)

    result = await cache.flush("basics")

    assert not result.success
    assert result.stage == "cards"
    assert result.will_retry
    assert store.writes_to(USER_DOC) == user_writes
    assert entry.pending
    assert cache.status.status == SyncStatus.OFFLINE
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_progress_failure_retries_only_progress(make_cache, store):
    cache = make_cache()
    entry = await loaded_clean(cache)
    cache.record_mutation("basics", entry.cards[0].card_id, {"repetitions": 1})
    store.fail_next("set", RemoteUnavailable("offline"), path=USER_DOC)

    failed = await cache.flush("basics")

    assert failed.stage == "progress"
    assert not entry.pending
    assert entry.progress_stale and entry.dirty
    card_write_count = card_writes(store)

    retried = await cache.flush("basics")

    assert retried.success
    assert card_writes(store) == card_write_count
    assert not entry.dirty
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_rejected_write_is_a_durable_failure(make_cache, store):
    cache = make_cache()
    entry = await loaded_clean(cache)
    cache.record_mutation("basics", entry.cards[0].card_id, schedule(entry.cards[0], 4, FIXED_NOW))
    store.fail_next("set", RemoteRejected("permission denied"), path=CARDS_DOC)

    result = await cache.flush("basics")

    assert not result.success and not result.will_retry
    assert entry.failure is not None
    assert isinstance(entry.failure.error, RemoteRejected)
    assert cache.status.status == SyncStatus.ERROR
    assert cache.get_progress("basics").reviewed_cards == 1
    assert entry.pending
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_retries_exhausted(make_cache, store):
    cache = make_cache(retry_policy=RetryPolicy(max_attempts=2, base_delay=3600))
    entry = await loaded_clean(cache)
    cache.record_mutation("basics", entry.cards[0].card_id, {"repetitions": 1})
    store.fail_next("set", RemoteUnavailable("offline"), path=CARDS_DOC, times=2)

    first = await cache.flush("basics")
    second = await cache.flush("basics")

    assert first.will_retry
    assert second.exhausted and not second.will_retry
    assert isinstance(second.error, RetriesExhausted)
    [failure] = cache.failures
    assert failure.card_set_id == "basics"
    assert failure.attempts == 2
    assert len(failure.operation_id) == 26
    assert cache.status.status == SyncStatus.ERROR

    cache.record_mutation("basics", entry.cards[1].card_id, {"repetitions": 1})

    assert entry.failure is None
    assert entry.attempts == 0
    assert (await cache.flush("basics")).success
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_guest_mode_keeps_data_in_memory(make_cache, store, card_source):
    cache = make_cache(user_id=None)

    entry = await cache.get("basics")
    cache.record_mutation("basics", entry.cards[0].card_id, schedule(entry.cards[0], 5, FIXED_NOW))
    result = await cache.flush("basics")

    assert entry.source == "bundled"
    assert not result.success
    assert isinstance(result.error, NotAuthenticated)
    assert cache.status.status == SyncStatus.OFFLINE
    assert entry.pending
    assert store.calls == []
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_debounce_timer_flushes(make_cache, store):
    cache = make_cache(debounce_seconds=0.01)
    entry = await cache.get("basics")
    await asyncio.sleep(0.1)
    assert not entry.dirty

    cache.record_mutation("basics", entry.cards[0].card_id, {"repetitions": 1})
    cache.record_mutation("basics", entry.cards[1].card_id, {"repetitions": 1})
    await asyncio.sleep(0.1)

    assert not entry.dirty
    assert card_writes(store) == 2
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_retry_timer_flushes_after_backoff(make_cache, store):
    cache = make_cache(retry_policy=RetryPolicy(max_attempts=3, base_delay=0.01))
    entry = await loaded_clean(cache)
    cache.record_mutation("basics", entry.cards[0].card_id, {"repetitions": 1})
    store.fail_next("set", RemoteUnavailable("offline"), path=CARDS_DOC)

    assert (await cache.flush("basics")).will_retry
    await asyncio.sleep(0.1)

    assert not entry.dirty
    assert cache.status.status == SyncStatus.IDLE
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_force_sync_now_flushes_every_dirty_set(make_cache, store):
    cache = make_cache()
    await cache.get("basics")
    await cache.get("small")

    results = await cache.force_sync_now()

    assert set(results) == {"basics", "small"}
    assert all(r.success for r in results.values())
    assert store.writes_to("users/u1/cardSets/small") == 1
    assert await cache.force_sync_now() == {}
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_status_events(make_cache):
    cache = make_cache()
    events = []
    cache.status.subscribe(events.append)

    await loaded_clean(cache)

    statuses = [e.status for e in events]
    assert SyncStatus.SYNCING in statuses
    assert statuses[-1] == SyncStatus.IDLE
    assert events[-1].dirty is False
    await cache.dispose(flush=False)


# --- Lifecycle ---


@pytest.mark.asyncio
async def test_clear_for_user_drops_state(make_cache, store):
    cache = make_cache()
    entry = await cache.get("basics")
    cache.record_mutation("basics", entry.cards[0].card_id, {"repetitions": 1})

    cache.clear_for_user("u2")

    assert cache.user_id == "u2"
    assert cache.peek("basics") is None
    assert not cache.is_loaded("basics")
    assert cache.all_progress() == {}

    await cache.get("basics")
    assert ("get", "users/u2/cardSets/basics", None) in store.calls
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_sign_in_carries_guest_reviews(make_cache, store):
    cache = make_cache(user_id=None)
    entry = await cache.get("basics")
    await cache.get("small")
    for card in entry.cards[:2]:
        cache.record_mutation("basics", card.card_id, schedule(card, 5, FIXED_NOW))

    cache.clear_for_user("u1")

    assert cache.user_id == "u1"
    assert cache.peek("basics") is entry
    assert entry.needs_reload
    assert not cache.is_loaded("small")
    assert cache.get_progress("basics").reviewed_cards == 2

    result = await cache.flush("basics")

    assert result.success
    assert reviewed_in(store.documents[CARDS_DOC]) == ["b-01", "b-02"]
    assert store.documents[CARDS_DOC]["totalCards"] == 10
    assert store.documents[USER_DOC]["cardSetsProgress"]["basics"]["reviewedCards"] == 2
    assert store.documents[USER_DOC]["migrationVersion"] == 1
    assert not entry.dirty
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_sign_in_keeps_newer_stored_cards(make_cache, store):
    later = FIXED_NOW + timedelta(days=1)
    stored = [new_card_state(f"b-{i:02d}", "basics", {}, FIXED_NOW) for i in range(1, 11)]
    for _ in range(3):
        stored[0] = schedule(stored[0], 5, later)
    store.documents[CARDS_DOC] = encode_card_set("basics", stored, later)

    cache = make_cache(user_id=None)
    entry = await cache.get("basics")
    for card in entry.cards[:2]:
        cache.record_mutation("basics", card.card_id, schedule(card, 3, FIXED_NOW))

    cache.clear_for_user("u1")
    result = await cache.flush("basics")

    assert result.success
    totals = {card["id"]: card["totalReviews"] for card in store.documents[CARDS_DOC]["cards"]}
    assert totals["b-01"] == 3
    assert totals["b-02"] == 1
    assert entry.source == "remote"
    assert cache.get_progress("basics").reviewed_cards == 2
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_sign_in_drops_untouched_guest_sets(make_cache, store):
    cache = make_cache(user_id=None)
    await cache.get("basics")

    cache.clear_for_user("u1")

    assert not cache.is_loaded("basics")
    assert await cache.force_sync_now() == {}
    assert store.calls == []
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_dispose_flushes_dirty_entries(make_cache, store):
    cache = make_cache()
    await cache.get("basics")

    results = await cache.dispose()

    assert results["basics"].success
    assert CARDS_DOC in store.documents
    assert cache.stats()["dirty_card_sets"] == 0


@pytest.mark.asyncio
async def test_reset_card_set(make_cache, store):
    cache = make_cache()
    entry = await loaded_clean(cache)
    for card in entry.cards[:3]:
        cache.record_mutation("basics", card.card_id, schedule(card, 5, FIXED_NOW))
    await cache.flush("basics")
    assert cache.get_progress("basics").reviewed_cards == 3

    progress = await cache.reset_card_set("basics")

    assert progress.reviewed_cards == 0
    assert entry.seed_pending
    assert all(card.is_new for card in entry.cards)
    await cache.flush("basics")
    assert all(c["totalReviews"] == 0 for c in store.documents[CARDS_DOC]["cards"])
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_preload_and_warm_start(make_cache):
    cache = make_cache()

    loaded = await cache.preload(["basics", "small", "missing"])
    assert loaded == ["basics", "small"]

    last = FakeLastCardSetStore("small")
    assert (await cache.warm_start(last)).card_set_id == "small"

    gone = FakeLastCardSetStore("missing")
    assert await cache.warm_start(gone) is None
    assert gone.value is None
    await cache.dispose(flush=False)


@pytest.mark.asyncio
async def test_stats(make_cache):
    cache = make_cache()
    await loaded_clean(cache)

    stats = cache.stats()

    assert stats["user_id"] == "u1"
    assert stats["cached_card_sets"] == 1
    assert stats["dirty_card_sets"] == 0
    assert stats["remote_reads"] >= 3
    assert stats["remote_writes"] == 3
    assert stats["last_sync_time"] == FIXED_NOW
    await cache.dispose(flush=False)
