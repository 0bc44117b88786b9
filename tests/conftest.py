import pytest

from revisit.application.sync import RetryPolicy, SyncCache
from revisit.domain.models import CardState
from revisit.infrastructure.adapters.memory_store import InMemoryDocumentStore
from tests.helpers import FIXED_NOW, FakeCardSource, FrozenClock, raw_cards


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def card_source():
    return FakeCardSource(
        {
            "basics": raw_cards("b", 10),
            "small": raw_cards("s", 3),
            "empty": [],
        }
    )


@pytest.fixture
def make_card():
    """Factory for CardState with sensible defaults."""

    def _make(card_id: str = "c1", card_set_id: str = "basics", **overrides) -> CardState:
        fields = {
            "card_id": card_id,
            "card_set_id": card_set_id,
            "content": {"front": {"title": card_id}},
            "next_review_date": FIXED_NOW,
            "created_at": FIXED_NOW,
            "updated_at": FIXED_NOW,
        }
        fields.update(overrides)
        return CardState(**fields)

    return _make


@pytest.fixture
def make_cache(store, card_source, clock):
    """Factory for a SyncCache whose debounce timer never fires during a test."""

    def _make(user_id: str | None = "u1", **overrides) -> SyncCache:
        options = {
            "debounce_seconds": 3600,
            "request_timeout": 1.0,
            "retry_policy": RetryPolicy(max_attempts=3, base_delay=3600, max_delay=3600),
            "strict_invariants": True,
            "clock": clock,
        }
        options.update(overrides)
        return SyncCache.create(store, user_id=user_id, card_source=card_source, **options)

    return _make


@pytest.fixture
def mock_home(tmp_path, monkeypatch):
    """Points HOME at a temp dir so no real config or state is touched."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    return home
