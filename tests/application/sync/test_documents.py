from datetime import datetime, timezone

import pytest

from revisit.application.progress import aggregate
from revisit.application.scheduler import schedule
from revisit.application.sync.documents import (
    ConsolidatedProfileDoc,
    LegacyProgressDoc,
    decode_card_set,
    decode_profile,
    encode_card,
    encode_card_set,
    encode_progress,
    parse_stored_progress,
)
from revisit.domain.errors import MigrationItemError, RemoteRejected
from tests.helpers import FIXED_NOW


def test_encode_card_uses_camel_case_and_flattens_content(make_card):
    card = make_card("c1", content={"front": {"title": "Q"}, "back": {"title": "A"}})

    doc = encode_card(card)

    assert doc["id"] == "c1"
    assert doc["cardSetId"] == "basics"
    assert doc["front"] == {"title": "Q"}
    assert doc["easinessFactor"] == 2.5
    assert datetime.fromisoformat(doc["nextReviewDate"].replace("Z", "+00:00")) == FIXED_NOW
    assert doc["lastReviewDate"] is None
    assert "easiness_factor" not in doc


def test_card_set_round_trip(make_card):
    reviewed = schedule(make_card("c1"), 5, FIXED_NOW)
    cards = [reviewed, make_card("c2")]

    data = encode_card_set("basics", cards, FIXED_NOW)
    decoded = decode_card_set("users/u1/cardSets/basics", data, "basics", FIXED_NOW)

    assert data["totalCards"] == 2
    assert decoded == cards


def test_decode_card_derives_is_new_and_floors_easiness():
    data = {
        "cards": [
            {"id": "c1", "easinessFactor": 0.9, "totalReviews": 0, "isNew": False, "front": "x"},
            {"id": "c2", "totalReviews": 3, "isNew": True, "lastReviewDate": "2025-03-13T08:00:00"},
        ]
    }

    first, second = decode_card_set("p", data, "basics", FIXED_NOW)

    assert first.easiness_factor == 1.3
    assert first.is_new is True
    assert first.content == {"front": "x"}
    assert first.next_review_date == FIXED_NOW
    assert second.is_new is False
    assert second.last_review_date == datetime(2025, 3, 13, 8, 0, tzinfo=timezone.utc)


def test_decode_card_set_rejects_malformed():
    with pytest.raises(RemoteRejected):
        decode_card_set("p", {"cards": [{"id": "c1", "repetitions": -2}]}, "basics", FIXED_NOW)


def test_parse_stored_progress_variants():
    legacy = parse_stored_progress(
        "users/u1/cardSetProgress/a", {"cardSetId": "a", "totalCards": 10, "reviewedCards": 3}
    )
    consolidated = parse_stored_progress(
        "users/u1", {"cardSetsProgress": {}, "migrationVersion": 1, "email": "x@example.com"}
    )

    assert isinstance(legacy, LegacyProgressDoc)
    assert legacy.kind == "legacy"
    assert legacy.reviewed_cards == 3
    assert isinstance(consolidated, ConsolidatedProfileDoc)
    assert consolidated.migration_version == 1


@pytest.mark.parametrize(
    "data",
    [
        {"hello": "world"},
        {"cardSetId": "a"},
        {"cardSetId": "a", "totalCards": "many"},
        {"cardSetId": "", "totalCards": 1},
        {"cardSetId": "a", "totalCards": 3, "progressPercentage": 140},
    ],
)
def test_parse_stored_progress_invalid(data):
    with pytest.raises(MigrationItemError) as exc:
        parse_stored_progress("users/u1/cardSetProgress/a", data)
    assert exc.value.document_path == "users/u1/cardSetProgress/a"


def test_decode_profile(make_card):
    progress = aggregate([make_card("c1")], {}, "basics", now=FIXED_NOW)
    data = {"cardSetsProgress": {"basics": encode_progress(progress)}, "migrationVersion": 1}

    profile = decode_profile("u1", "users/u1", data, FIXED_NOW)

    assert profile.user_id == "u1"
    assert profile.migration_version == 1
    assert profile.card_sets_progress == {"basics": progress}


def test_decode_profile_missing_and_malformed():
    assert decode_profile("u1", "users/u1", None).card_sets_progress == {}
    with pytest.raises(RemoteRejected):
        decode_profile("u1", "users/u1", {"cardSetsProgress": {"a": {"totalCards": -1}}})
