"""
Review session controller.

Idle -> InProgress -> Complete. Ratings are scheduled immediately, recorded
as pending mutations in the SyncCache, and the session only reports itself
complete after the final flush has resolved (successfully or not).
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from revisit.application.scheduler import is_due, quality_for, schedule
from revisit.application.sync.cache import SyncCache
from revisit.domain.constants import DEFAULT_SESSION_SIZE
from revisit.domain.models import (
    CardSetProgress,
    CardState,
    Rating,
    SessionPhase,
    SessionState,
    utc_now,
)
from revisit.domain.ports import LastCardSetStore

logger = logging.getLogger(__name__)


def select_due_cards(
    cards: list[CardState], now: datetime, limit: int | None = DEFAULT_SESSION_SIZE
) -> list[CardState]:
    """
    Pick the cards for a session.

    Reviewed cards that are due come first, most overdue first (ties: lower
    easiness factor first), followed by new cards in collection order.
    """
    due = sorted(
        (card for card in cards if not card.is_new and is_due(card, now)),
        key=lambda card: (card.next_review_date, card.easiness_factor),
    )
    fresh = [card for card in cards if card.is_new]
    queue = due + fresh
    return queue if limit is None else queue[:limit]


@dataclass(frozen=True)
class RatingOutcome:
    card: CardState
    rating: Rating
    quality: float
    progress: CardSetProgress
    is_complete: bool


class SessionController:
    def __init__(
        self,
        cache: SyncCache,
        session_size: int = DEFAULT_SESSION_SIZE,
        requeue_again: bool = True,
        last_store: LastCardSetStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._cache = cache
        self.session_size = session_size
        self.requeue_again = requeue_again
        self._last_store = last_store
        self._clock = clock
        self.state: SessionState | None = None
        self._completing = False

    @property
    def phase(self) -> SessionPhase:
        if self.state is None:
            return SessionPhase.IDLE
        if self.state.is_complete:
            return SessionPhase.COMPLETE
        return SessionPhase.IN_PROGRESS

    @property
    def current_card(self) -> CardState | None:
        state = self.state
        if state is None or state.is_complete or state.position >= len(state.queue):
            return None
        return state.queue[state.position]

    @property
    def remaining(self) -> int:
        if self.state is None:
            return 0
        return max(len(self.state.queue) - self.state.position, 0)

    async def start(self, card_set_id: str) -> SessionState:
        """
        Start a session over the due cards of a card set.

        Any previous session is discarded. An empty due queue completes the
        session immediately.

        Raises:
            CardSetNotFound: If the card set cannot be loaded.
        """
        entry = await self._cache.get(card_set_id)
        now = self._clock()
        queue = select_due_cards(entry.current_cards(), now, self.session_size)

        self._completing = False
        self.state = SessionState(
            card_set_id=card_set_id,
            queue=queue,
            start_time=now,
            progress_before=self._cache.get_progress(card_set_id),
        )
        if self._last_store is not None:
            self._last_store.save_last_card_set(card_set_id)

        logger.info(f"Started session on '{card_set_id}' with {len(queue)} due cards")
        if not queue:
            await self._complete()
        return self.state

    async def rate(self, rating: Rating | str) -> RatingOutcome | None:
        """
        Rate the current card and advance.

        Returns None when there is no active session or it is already
        complete (or completing).

        Raises:
            InvalidRating: If the rating is not a known label. Nothing is
                applied in that case.
        """
        state = self.state
        if state is None or state.is_complete or self._completing:
            return None

        quality = quality_for(rating)
        rating = rating if isinstance(rating, Rating) else Rating(rating.lower())

        card = state.queue[state.position]
        entry = self._cache.peek(state.card_set_id)
        latest = (entry.find_card(card.card_id) if entry else None) or card
        updated = schedule(latest, quality, self._clock())
        progress = self._cache.record_mutation(state.card_set_id, card.card_id, updated)

        if rating is Rating.AGAIN:
            state.again_count += 1
        elif rating is Rating.HARD:
            state.hard_count += 1
        else:
            state.easy_count += 1

        if rating is Rating.AGAIN and self.requeue_again:
            state.queue.append(updated)
        else:
            state.reviewed_card_ids.add(card.card_id)
            state.reviewed_cards = len(state.reviewed_card_ids)

        state.position += 1
        if state.position >= len(state.queue):
            await self._complete()
            progress = self._cache.get_progress(state.card_set_id)

        return RatingOutcome(
            card=updated,
            rating=rating,
            quality=quality,
            progress=progress,
            is_complete=state.is_complete,
        )

    async def _complete(self) -> None:
        state = self.state
        self._completing = True
        try:
            state.flush_result = await self._cache.flush(state.card_set_id)
        finally:
            self._completing = False
        state.is_complete = True
        if not state.flush_result.success:
            logger.warning(
                f"Session on '{state.card_set_id}' completed but sync failed: {state.flush_result.error}"
            )
        logger.info(
            f"Session complete: {state.reviewed_cards} reviewed "
            f"(easy={state.easy_count}, hard={state.hard_count}, again={state.again_count})"
        )

    def reset(self) -> None:
        """Discard the current session."""
        self.state = None
        self._completing = False


def session_accuracy(state: SessionState) -> int:
    """Share of completed cards rated good or easy, as a whole percentage."""
    if state.reviewed_cards == 0:
        return 0
    return round(state.easy_count / state.reviewed_cards * 100)


def describe_session(
    before: CardSetProgress | None, after: CardSetProgress, state: SessionState
) -> str:
    before_reviewed = before.reviewed_cards if before else 0
    increase = after.progress_percentage - (before.progress_percentage if before else 0.0)
    return (
        f"{state.reviewed_cards} cards reviewed, "
        f"{after.reviewed_cards - before_reviewed} new cards learned, "
        f"progress increased by {increase:.1f}% "
        f"({before_reviewed} -> {after.reviewed_cards}/{after.total_cards})"
    )
