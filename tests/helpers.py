"""Shared test doubles and constants."""

from datetime import datetime, timedelta, timezone
from typing import Any

from revisit.domain.ports import CardSetSource, LastCardSetStore

FIXED_NOW = datetime(2025, 3, 14, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeCardSource(CardSetSource):
    def __init__(self, card_sets: dict[str, list[dict[str, Any]]]):
        self.card_sets = card_sets
        self.loads: list[str] = []

    def load_card_set(self, card_set_id: str) -> list[dict[str, Any]] | None:
        self.loads.append(card_set_id)
        cards = self.card_sets.get(card_set_id)
        return [dict(card) for card in cards] if cards is not None else None

    def available_card_sets(self) -> list[str]:
        return list(self.card_sets)


class FakeLastCardSetStore(LastCardSetStore):
    def __init__(self, value: str | None = None):
        self.value = value

    def save_last_card_set(self, card_set_id: str) -> None:
        self.value = card_set_id

    def load_last_card_set(self) -> str | None:
        return self.value

    def clear_last_card_set(self) -> None:
        self.value = None


def raw_cards(prefix: str, count: int) -> list[dict[str, Any]]:
    return [
        {
            "id": f"{prefix}-{i:02d}",
            "front": {"icon": "❓", "title": f"Q{i}", "description": f"Question {i}"},
            "back": {"icon": "💡", "title": f"A{i}", "description": f"Answer {i}"},
        }
        for i in range(1, count + 1)
    ]
