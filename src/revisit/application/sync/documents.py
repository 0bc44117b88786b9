"""
Remote document shapes and their conversion to domain models.

Remote documents use camelCase keys and ISO-8601 timestamps. Progress
documents come in two shapes: the legacy one-document-per-card-set layout and
the consolidated per-user profile. They are represented as a tagged variant
here and normalized to UserProgressProfile / CardSetProgress before anything
else sees them.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from revisit.domain.constants import (
    CARD_SET_DOC,
    DEFAULT_EASINESS_FACTOR,
    LEGACY_PROGRESS_COLLECTION,
    MIN_EASINESS_FACTOR,
    USER_DOC,
)
from revisit.domain.errors import MigrationItemError, RemoteRejected
from revisit.domain.models import CardSetProgress, CardState, UserProgressProfile, utc_now


class _Document(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    @field_validator("*", mode="after")
    @classmethod
    def _assume_utc(cls, v: Any) -> Any:
        if isinstance(v, datetime) and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class CardDocument(_Document):
    """One card inside a card set document. Content fields (front, back, ...) are extras."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str
    card_set_id: str | None = None
    easiness_factor: float = DEFAULT_EASINESS_FACTOR
    repetitions: int = Field(default=0, ge=0)
    interval: int = Field(default=1, ge=1)
    next_review_date: datetime | None = None
    last_review_date: datetime | None = None
    total_reviews: int = Field(default=0, ge=0)
    correct_streak: int = Field(default=0, ge=0)
    average_quality: float = Field(default=0.0, ge=0, le=5)
    is_new: bool | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("easiness_factor")
    @classmethod
    def _floor_easiness(cls, v: float) -> float:
        return max(MIN_EASINESS_FACTOR, v)


class CardSetDocument(_Document):
    card_set_id: str | None = None
    cards: list[CardDocument] = Field(default_factory=list)
    total_cards: int | None = None
    updated_at: datetime | None = None


class ProgressDocument(_Document):
    card_set_id: str = Field(min_length=1)
    total_cards: int = Field(ge=0)
    reviewed_cards: int = Field(default=0, ge=0)
    progress_percentage: float = Field(default=0.0, ge=0, le=100)
    mastered_cards: int = Field(default=0, ge=0)
    need_practice_cards: int = Field(default=0, ge=0)
    reviewed_today: int = Field(default=0, ge=0)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class LegacyProgressDoc(ProgressDocument):
    """users/{uid}/cardSetProgress/{cardSetId}: read and deleted during migration only."""

    kind: Literal["legacy"] = "legacy"


class ConsolidatedProfileDoc(_Document):
    """users/{uid}: the single per-user progress document."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    kind: Literal["consolidated"] = "consolidated"
    card_sets_progress: dict[str, ProgressDocument] = Field(default_factory=dict)
    migration_version: int | None = None


StoredProgressDoc = Annotated[
    Union[LegacyProgressDoc, ConsolidatedProfileDoc], Field(discriminator="kind")
]
_stored_progress = TypeAdapter(StoredProgressDoc)


def parse_stored_progress(path: str, data: dict[str, Any]) -> LegacyProgressDoc | ConsolidatedProfileDoc:
    """
    Classify and validate a raw progress document.

    Raises:
        MigrationItemError: If the document matches neither shape or fails
            validation.
    """
    if "cardSetsProgress" in data or "migrationVersion" in data:
        kind = "consolidated"
    elif "cardSetId" in data or "totalCards" in data:
        kind = "legacy"
    else:
        raise MigrationItemError(path, "missing required fields")

    try:
        return _stored_progress.validate_python({**data, "kind": kind})
    except ValidationError as e:
        reason = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'][1:]) or 'document'}: {err['msg']}"
            for err in e.errors()
        )
        raise MigrationItemError(path, reason) from e


# ---------------------------------------------------------------------------
# Cards
# ---------------------------------------------------------------------------


def encode_card(card: CardState) -> dict[str, Any]:
    doc = CardDocument(
        id=card.card_id,
        card_set_id=card.card_set_id,
        easiness_factor=card.easiness_factor,
        repetitions=card.repetitions,
        interval=card.interval,
        next_review_date=card.next_review_date,
        last_review_date=card.last_review_date,
        total_reviews=card.total_reviews,
        correct_streak=card.correct_streak,
        average_quality=card.average_quality,
        is_new=card.is_new,
        created_at=card.created_at,
        updated_at=card.updated_at,
    )
    return {**card.content, **doc.model_dump(mode="json", by_alias=True)}


def decode_card(doc: CardDocument, card_set_id: str, now: datetime | None = None) -> CardState:
    now = now or utc_now()
    return CardState(
        card_id=doc.id,
        card_set_id=card_set_id,
        content=dict(doc.model_extra or {}),
        easiness_factor=doc.easiness_factor,
        repetitions=doc.repetitions,
        interval=doc.interval,
        next_review_date=doc.next_review_date or now,
        last_review_date=doc.last_review_date if doc.total_reviews > 0 else None,
        total_reviews=doc.total_reviews,
        correct_streak=doc.correct_streak,
        average_quality=doc.average_quality,
        # is_new is derived so that is_new == (total_reviews == 0) always holds
        is_new=doc.total_reviews == 0,
        created_at=doc.created_at or now,
        updated_at=doc.updated_at or now,
    )


def encode_card_set(card_set_id: str, cards: list[CardState], now: datetime | None = None) -> dict[str, Any]:
    return {
        "cardSetId": card_set_id,
        "cards": [encode_card(card) for card in cards],
        "totalCards": len(cards),
        "updatedAt": (now or utc_now()).isoformat(),
    }


def decode_card_set(
    path: str, data: dict[str, Any], card_set_id: str, now: datetime | None = None
) -> list[CardState]:
    """
    Raises:
        RemoteRejected: If the stored document is malformed.
    """
    try:
        doc = CardSetDocument.model_validate(data)
    except ValidationError as e:
        raise RemoteRejected(f"Malformed card set document: {e.error_count()} errors", path=path) from e
    return [decode_card(card, card_set_id, now) for card in doc.cards]


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------


def encode_progress(progress: CardSetProgress) -> dict[str, Any]:
    return ProgressDocument(
        card_set_id=progress.card_set_id,
        total_cards=progress.total_cards,
        reviewed_cards=progress.reviewed_cards,
        progress_percentage=progress.progress_percentage,
        mastered_cards=progress.mastered_cards,
        need_practice_cards=progress.need_practice_cards,
        reviewed_today=progress.reviewed_today,
        created_at=progress.created_at,
        updated_at=progress.updated_at,
    ).model_dump(mode="json", by_alias=True)


def decode_progress(doc: ProgressDocument, now: datetime | None = None) -> CardSetProgress:
    now = now or utc_now()
    return CardSetProgress(
        card_set_id=doc.card_set_id,
        total_cards=doc.total_cards,
        reviewed_cards=doc.reviewed_cards,
        progress_percentage=doc.progress_percentage,
        mastered_cards=doc.mastered_cards,
        need_practice_cards=doc.need_practice_cards,
        reviewed_today=doc.reviewed_today,
        created_at=doc.created_at or now,
        updated_at=doc.updated_at or now,
    )


def decode_profile(
    user_id: str, path: str, data: dict[str, Any] | None, now: datetime | None = None
) -> UserProgressProfile:
    """
    Normalize the users/{uid} document to a UserProgressProfile.

    Raises:
        RemoteRejected: If the document is not a valid consolidated profile.
    """
    if not data:
        return UserProgressProfile(user_id=user_id)
    try:
        doc = ConsolidatedProfileDoc.model_validate({**data, "kind": "consolidated"})
    except ValidationError as e:
        raise RemoteRejected(f"Malformed user profile: {e.error_count()} errors", path=path) from e
    return UserProgressProfile(
        user_id=user_id,
        card_sets_progress={key: decode_progress(value, now) for key, value in doc.card_sets_progress.items()},
        migration_version=doc.migration_version,
    )


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def user_doc_path(user_id: str) -> str:
    return USER_DOC.format(uid=user_id)


def card_set_doc_path(user_id: str, card_set_id: str) -> str:
    return CARD_SET_DOC.format(uid=user_id, card_set_id=card_set_id)


def legacy_collection_path(user_id: str) -> str:
    return LEGACY_PROGRESS_COLLECTION.format(uid=user_id)
