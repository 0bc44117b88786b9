"""
Domain models for scheduling, sessions and progress.

These are pure data structures with no I/O or external dependencies.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .constants import DEFAULT_EASINESS_FACTOR, RATING_QUALITY


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Rating(str, Enum):
    """User-facing review judgments."""

    AGAIN = "again"
    HARD = "hard"
    GOOD = "good"
    EASY = "easy"

    @property
    def quality(self) -> int:
        return RATING_QUALITY[self.value]


@dataclass(frozen=True)
class CardState:
    """
    A card plus its SM-2 memory parameters.

    Attributes:
        card_id: Unique id within the card set.
        card_set_id: The containing card set.
        content: Front/back payload, opaque to scheduling.
        easiness_factor: E-Factor, never below 1.3.
        repetitions: Consecutive successful recalls.
        interval: Days until the next review.
        next_review_date: When the card becomes due.
        last_review_date: When the card was last rated (None if never).
        total_reviews: Number of ratings ever applied.
        correct_streak: Current run of passing ratings.
        average_quality: Running mean of quality ratings (0-5).
        is_new: True until the first review.
    """

    card_id: str
    card_set_id: str
    content: dict[str, Any] = field(default_factory=dict)
    easiness_factor: float = DEFAULT_EASINESS_FACTOR
    repetitions: int = 0
    interval: int = 1
    next_review_date: datetime = field(default_factory=utc_now)
    last_review_date: datetime | None = None
    total_reviews: int = 0
    correct_streak: int = 0
    average_quality: float = 0.0
    is_new: bool = True
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def scheduling_fields(self) -> dict[str, Any]:
        """Mutable fields, i.e. everything except identity, content and creation time."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in IMMUTABLE_CARD_FIELDS
        }


IMMUTABLE_CARD_FIELDS = frozenset({"card_id", "card_set_id", "content", "created_at"})
CARD_FIELD_NAMES = frozenset(f.name for f in fields(CardState))

# card_id -> partial CardState field update
PendingMutation = dict[str, dict[str, Any]]


@dataclass(frozen=True)
class CardSetProgress:
    """Aggregate snapshot for one card set. Derived, never hand-edited."""

    card_set_id: str
    total_cards: int
    reviewed_cards: int
    progress_percentage: float
    mastered_cards: int
    need_practice_cards: int
    reviewed_today: int
    created_at: datetime
    updated_at: datetime


@dataclass
class UserProgressProfile:
    """Consolidated per-user progress: card_set_id -> CardSetProgress."""

    user_id: str
    card_sets_progress: dict[str, CardSetProgress] = field(default_factory=dict)
    migration_version: int | None = None


class SessionPhase(str, Enum):
    IDLE = "idle"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"


@dataclass
class SessionState:
    """
    State of one review session, owned by the SessionController.

    `queue` holds the due cards in review order; `position` points at the
    card currently shown.
    """

    card_set_id: str
    queue: list[CardState]
    start_time: datetime
    position: int = 0
    reviewed_cards: int = 0
    easy_count: int = 0
    hard_count: int = 0
    again_count: int = 0
    is_complete: bool = False
    reviewed_card_ids: set[str] = field(default_factory=set)
    progress_before: CardSetProgress | None = None
    flush_result: "FlushResult | None" = None

    @property
    def total_cards(self) -> int:
        return len({card.card_id for card in self.queue})


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"
    OFFLINE = "offline"


@dataclass(frozen=True)
class SyncEvent:
    """Published on dirty-flag and sync-status transitions."""

    status: SyncStatus
    card_set_id: str | None = None
    dirty: bool = False
    error: str | None = None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class SyncFailure:
    """A remote operation that will not be retried automatically."""

    operation_id: str
    card_set_id: str
    stage: str  # "cards" or "progress"
    error: Exception
    attempts: int
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class FlushResult:
    card_set_id: str
    success: bool
    skipped: bool = False
    stage: str | None = None
    error: Exception | None = None
    will_retry: bool = False
    exhausted: bool = False


@dataclass
class MigrationResult:
    """Outcome of folding legacy progress documents into the consolidated profile."""

    success: bool = False
    migrated_card_sets: list[str] = field(default_factory=list)
    skipped_card_sets: list[str] = field(default_factory=list)
    deleted_documents: list[str] = field(default_factory=list)
    errors: list[Exception] = field(default_factory=list)
    read_operations: int = 0
    write_operations: int = 0


@dataclass(frozen=True)
class ReviewStats:
    """Dashboard statistics over a card collection."""

    total_cards: int
    due_cards: int
    overdue_cards: int
    mastered_cards: int
    difficult_cards: int
    reviewed_today: int
    average_easiness_factor: float
    total_reviews: int
    average_quality: float


@dataclass(frozen=True)
class DocumentSnapshot:
    """Result of a remote document read."""

    path: str
    exists: bool
    data: dict[str, Any] | None = None
