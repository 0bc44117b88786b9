"""Centralized constants for the revisit application.

Scheduling policy, sync timing defaults and remote document paths live here so
every layer imports from a single source of truth.
"""

# ---------- Ratings ----------
# Numeric SM-2 quality (0-5) for each user-facing rating label.
RATING_QUALITY = {
    "again": 1,
    "hard": 3,
    "good": 4,
    "easy": 5,
}
MIN_QUALITY = 0
MAX_QUALITY = 5
PASSING_QUALITY = 3  # quality < 3 is a failed recall

# ---------- SM-2 ----------
DEFAULT_EASINESS_FACTOR = 2.5
MIN_EASINESS_FACTOR = 1.3
FIRST_INTERVAL_DAYS = 1
SECOND_INTERVAL_DAYS = 6

# ---------- Mastery ----------
MASTERY_MIN_EASINESS_FACTOR = 2.5
MASTERY_MIN_REPETITIONS = 3
DIFFICULT_EASINESS_FACTOR = 1.8

# ---------- Sessions ----------
SESSION_SIZE_OPTIONS = (10, 20, 30)
DEFAULT_SESSION_SIZE = 10

# ---------- Sync ----------
DEBOUNCE_SECONDS = 30.0
REQUEST_TIMEOUT = 15.0
RETRY_MAX_ATTEMPTS = 3
RETRY_BASE_DELAY = 5.0  # seconds
RETRY_MAX_DELAY = 60.0  # seconds
RETRY_MULTIPLIER = 2.0

# ---------- Remote layout ----------
USER_DOC = "users/{uid}"
CARD_SET_DOC = "users/{uid}/cardSets/{card_set_id}"
LEGACY_PROGRESS_COLLECTION = "users/{uid}/cardSetProgress"
MIGRATION_VERSION = 1

# ---------- Local persistence ----------
LAST_CARD_SET_FILE = "last_card_set.json"
