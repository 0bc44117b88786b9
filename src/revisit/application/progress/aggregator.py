"""
Progress aggregation for card sets.

This is a pure computation module with no I/O. It folds uncommitted per-card
mutations over the baseline card collection and derives CardSetProgress.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime

from revisit.domain.constants import (
    DIFFICULT_EASINESS_FACTOR,
    MASTERY_MIN_EASINESS_FACTOR,
    MASTERY_MIN_REPETITIONS,
)
from revisit.domain.errors import AggregationInvariantViolation
from revisit.domain.models import (
    CARD_FIELD_NAMES,
    IMMUTABLE_CARD_FIELDS,
    CardSetProgress,
    CardState,
    PendingMutation,
    ReviewStats,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MasteryPolicy:
    """
    Thresholds for calling a reviewed card mastered.

    A card is mastered when it has been reviewed at least once, its easiness
    factor is at least `min_easiness_factor`, and it has at least
    `min_repetitions` consecutive successful recalls.
    """

    min_easiness_factor: float = MASTERY_MIN_EASINESS_FACTOR
    min_repetitions: int = MASTERY_MIN_REPETITIONS

    def is_mastered(self, card: CardState) -> bool:
        return (
            card.total_reviews > 0
            and card.easiness_factor >= self.min_easiness_factor
            and card.repetitions >= self.min_repetitions
        )


DEFAULT_POLICY = MasteryPolicy()


def apply_pending(cards: list[CardState], pending: PendingMutation) -> list[CardState]:
    """
    Overlay pending mutations on the baseline cards.

    Keys missing from a mutation keep their baseline value. Identity, content
    and creation time are never overwritten; unknown keys are ignored.
    """
    if not pending:
        return list(cards)

    merged = []
    for card in cards:
        update = pending.get(card.card_id)
        if not update:
            merged.append(card)
            continue
        changes = {
            key: value
            for key, value in update.items()
            if key in CARD_FIELD_NAMES and key not in IMMUTABLE_CARD_FIELDS
        }
        merged.append(replace(card, **changes))
    return merged


def aggregate(
    cards: list[CardState],
    pending: PendingMutation | None,
    card_set_id: str,
    now: datetime | None = None,
    previous: CardSetProgress | None = None,
    policy: MasteryPolicy = DEFAULT_POLICY,
    strict: bool = True,
) -> CardSetProgress:
    """
    Recompute a card set's progress from its cards plus pending mutations.

    Args:
        cards: Baseline card collection.
        pending: card_id -> partial update, applied before counting.
        card_set_id: The card set being summarized.
        now: Reference time for "reviewed today" and updated_at.
        previous: Prior snapshot; its created_at is carried over.
        policy: Mastery thresholds.
        strict: Raise on invariant violations instead of clamping.

    Raises:
        AggregationInvariantViolation: In strict mode, if the counts are
            inconsistent.
    """
    now = now or utc_now()
    current = apply_pending(cards, pending or {})

    total_cards = len(current)
    reviewed = [card for card in current if card.total_reviews > 0]
    reviewed_cards = len(reviewed)
    mastered_cards = sum(1 for card in reviewed if policy.is_mastered(card))
    reviewed_today = sum(
        1
        for card in reviewed
        if card.last_review_date is not None and _same_day(card.last_review_date, now)
    )
    percentage = (reviewed_cards / total_cards * 100) if total_cards else 0.0

    progress = CardSetProgress(
        card_set_id=card_set_id,
        total_cards=total_cards,
        reviewed_cards=reviewed_cards,
        progress_percentage=percentage,
        mastered_cards=mastered_cards,
        need_practice_cards=reviewed_cards - mastered_cards,
        reviewed_today=reviewed_today,
        created_at=previous.created_at if previous else now,
        updated_at=now,
    )
    return check_invariants(progress, strict)


def _same_day(moment: datetime, now: datetime) -> bool:
    if moment.tzinfo is not None and now.tzinfo is not None:
        moment = moment.astimezone(now.tzinfo)
    return moment.date() == now.date()


def check_invariants(progress: CardSetProgress, strict: bool = True) -> CardSetProgress:
    """Enforce 0 <= reviewed <= total and 0 <= percentage <= 100 on a snapshot."""
    problems = []
    if not 0 <= progress.reviewed_cards <= progress.total_cards:
        problems.append(
            f"reviewed_cards={progress.reviewed_cards} outside [0, {progress.total_cards}]"
        )
    if not 0 <= progress.progress_percentage <= 100:
        problems.append(f"progress_percentage={progress.progress_percentage} outside [0, 100]")
    if not problems:
        return progress

    message = f"Invalid progress for '{progress.card_set_id}': " + "; ".join(problems)
    if strict:
        raise AggregationInvariantViolation(message)

    logger.error(message)
    reviewed = min(max(progress.reviewed_cards, 0), progress.total_cards)
    return replace(
        progress,
        reviewed_cards=reviewed,
        progress_percentage=min(max(progress.progress_percentage, 0.0), 100.0),
        need_practice_cards=max(reviewed - progress.mastered_cards, 0),
    )


def validate_progress(
    progress: CardSetProgress,
    pending: PendingMutation,
    original_cards: list[CardState],
) -> list[str]:
    """
    Cross-check an aggregated snapshot against the cards it was built from.

    Returns:
        Human-readable problems; empty if the snapshot is consistent.
    """
    errors = []
    originally_reviewed = sum(1 for card in original_cards if card.total_reviews > 0)

    if progress.total_cards != len(original_cards):
        errors.append(
            f"Total cards mismatch: expected {len(original_cards)}, got {progress.total_cards}"
        )
    if progress.reviewed_cards < originally_reviewed:
        errors.append(
            f"Reviewed cards decreased: was {originally_reviewed}, now {progress.reviewed_cards}"
        )
    if not 0 <= progress.progress_percentage <= 100:
        errors.append(f"Invalid progress percentage: {progress.progress_percentage}%")

    known = {card.card_id for card in original_cards}
    unknown = sorted(card_id for card_id in pending if card_id not in known)
    if unknown:
        errors.append(f"Pending updates for unknown cards: {', '.join(unknown)}")
    return errors


def review_stats(
    cards: list[CardState],
    now: datetime | None = None,
    policy: MasteryPolicy = DEFAULT_POLICY,
) -> ReviewStats:
    """Dashboard statistics: due, overdue, mastered and difficult counts plus averages."""
    now = now or utc_now()
    if not cards:
        return ReviewStats(0, 0, 0, 0, 0, 0, 0.0, 0, 0.0)

    due = overdue = mastered = difficult = reviewed_today = 0
    total_reviews = 0
    quality_sum = 0.0

    for card in cards:
        if card.is_new or card.next_review_date <= now:
            due += 1
            if not card.is_new and card.next_review_date.date() < now.date():
                overdue += 1
        if policy.is_mastered(card):
            mastered += 1
        if card.total_reviews > 0 and card.easiness_factor < DIFFICULT_EASINESS_FACTOR:
            difficult += 1
        if (
            card.total_reviews > 0
            and card.last_review_date is not None
            and _same_day(card.last_review_date, now)
        ):
            reviewed_today += 1
        total_reviews += card.total_reviews
        quality_sum += card.average_quality * card.total_reviews

    return ReviewStats(
        total_cards=len(cards),
        due_cards=due,
        overdue_cards=overdue,
        mastered_cards=mastered,
        difficult_cards=difficult,
        reviewed_today=reviewed_today,
        average_easiness_factor=sum(card.easiness_factor for card in cards) / len(cards),
        total_reviews=total_reviews,
        average_quality=quality_sum / total_reviews if total_reviews else 0.0,
    )
