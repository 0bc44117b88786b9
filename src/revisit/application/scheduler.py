"""
SM-2 scheduler.

Pure computation: (card, quality) -> new card. No I/O, no shared state.
"""

import math
from dataclasses import replace
from datetime import datetime, timedelta
from numbers import Real
from typing import Any

from revisit.domain.constants import (
    DEFAULT_EASINESS_FACTOR,
    FIRST_INTERVAL_DAYS,
    MAX_QUALITY,
    MIN_EASINESS_FACTOR,
    MIN_QUALITY,
    PASSING_QUALITY,
    SECOND_INTERVAL_DAYS,
)
from revisit.domain.errors import InvalidRating
from revisit.domain.models import CardState, Rating, utc_now


def quality_for(rating: Rating | str | float) -> float:
    """
    Resolve a rating label or raw number to a validated quality in [0, 5].
    """
    if isinstance(rating, Rating):
        return rating.quality
    if isinstance(rating, str):
        try:
            return Rating(rating.lower()).quality
        except ValueError:
            raise InvalidRating(rating) from None
    _validate_quality(rating)
    return rating


def _validate_quality(quality: Any) -> None:
    if isinstance(quality, bool) or not isinstance(quality, Real):
        raise InvalidRating(quality)
    if math.isnan(quality) or not (MIN_QUALITY <= quality <= MAX_QUALITY):
        raise InvalidRating(quality)


def next_easiness_factor(current: float, quality: float) -> float:
    """
    EF' = EF + (0.1 - (5-q) * (0.08 + (5-q) * 0.02)), floored at 1.3.
    """
    miss = MAX_QUALITY - quality
    return max(MIN_EASINESS_FACTOR, current + (0.1 - miss * (0.08 + miss * 0.02)))


def next_interval(repetitions: int, previous_interval: int, easiness_factor: float) -> int:
    if repetitions <= 1:
        return FIRST_INTERVAL_DAYS
    if repetitions == 2:
        return SECOND_INTERVAL_DAYS
    return max(1, round(previous_interval * easiness_factor))


def running_average(current: float, count: int, value: float) -> float:
    if count == 0:
        return float(value)
    return (current * count + value) / (count + 1)


def schedule(card: CardState, quality: float, now: datetime | None = None) -> CardState:
    """
    Apply one review to a card.

    Args:
        card: Current card state.
        quality: Rating in [0, 5]; below 3 is a failed recall.
        now: Review time (defaults to current UTC time).

    Returns:
        A new CardState. The input is not modified.

    Raises:
        InvalidRating: If quality is out of range; nothing should be applied.
    """
    _validate_quality(quality)
    now = now or utc_now()

    easiness_factor = next_easiness_factor(card.easiness_factor, quality)

    if quality < PASSING_QUALITY:
        repetitions = 0
        interval = FIRST_INTERVAL_DAYS
        correct_streak = 0
    else:
        repetitions = card.repetitions + 1
        interval = next_interval(repetitions, card.interval, easiness_factor)
        correct_streak = card.correct_streak + 1

    return replace(
        card,
        easiness_factor=easiness_factor,
        repetitions=repetitions,
        interval=interval,
        next_review_date=now + timedelta(days=interval),
        last_review_date=now,
        total_reviews=card.total_reviews + 1,
        correct_streak=correct_streak,
        average_quality=running_average(card.average_quality, card.total_reviews, quality),
        is_new=False,
        updated_at=now,
    )


def is_due(card: CardState, now: datetime | None = None) -> bool:
    return card.is_new or card.next_review_date <= (now or utc_now())


def new_card_state(
    card_id: str,
    card_set_id: str,
    content: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> CardState:
    """Create a never-reviewed card that is due immediately."""
    now = now or utc_now()
    return CardState(
        card_id=card_id,
        card_set_id=card_set_id,
        content=dict(content or {}),
        easiness_factor=DEFAULT_EASINESS_FACTOR,
        next_review_date=now,
        created_at=now,
        updated_at=now,
    )


def reset_card_state(card: CardState, now: datetime | None = None) -> CardState:
    """Return the card with fresh scheduling parameters. Identity and content are kept."""
    fresh = new_card_state(card.card_id, card.card_set_id, card.content, now)
    return replace(fresh, created_at=card.created_at)
