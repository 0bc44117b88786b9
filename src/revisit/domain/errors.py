"""
Error taxonomy.

Scheduler and aggregator errors propagate synchronously to the caller. Remote
errors are raised by store adapters and captured per operation by the sync
cache.
"""


class RevisitError(Exception):
    """Base class for all revisit errors."""

    retryable = False


class InvalidRating(RevisitError, ValueError):
    """Quality rating outside [0, 5] or not a number."""

    def __init__(self, quality: object):
        self.quality = quality
        super().__init__(f"Quality must be a number in [0, 5], got {quality!r}")


class NotAuthenticated(RevisitError):
    """A remote operation was attempted without an active user identity."""

    def __init__(self, message: str = "No active user; remote sync is unavailable"):
        super().__init__(message)


class RemoteError(RevisitError):
    """Failure reported by the remote document store."""

    def __init__(self, message: str, path: str | None = None):
        self.path = path
        super().__init__(message if path is None else f"{message} (path={path})")


class RemoteUnavailable(RemoteError):
    """Network failure or timeout. Retryable."""

    retryable = True


class RemoteRejected(RemoteError):
    """Permission or validation failure. Not retryable."""


class RetriesExhausted(RemoteUnavailable):
    """A retryable operation failed on every allowed attempt."""

    retryable = False

    def __init__(self, attempts: int, last_error: Exception, path: str | None = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts: {last_error}", path=path)


class MigrationItemError(RevisitError):
    """One legacy progress document could not be folded into the consolidated profile."""

    def __init__(self, document_path: str, reason: str):
        self.document_path = document_path
        self.reason = reason
        super().__init__(f"Error processing progress document {document_path}: {reason}")


class AggregationInvariantViolation(RevisitError, AssertionError):
    """Aggregated progress broke 0 <= reviewed <= total or 0 <= percentage <= 100."""


class CardSetNotFound(RevisitError, LookupError):
    """Neither the remote store nor the bundled datasets know this card set."""

    def __init__(self, card_set_id: str):
        self.card_set_id = card_set_id
        super().__init__(f"Card set '{card_set_id}' not found remotely or in bundled data")


class CardSetNotLoaded(RevisitError, LookupError):
    """A synchronous operation referenced a card set that is not in the cache."""

    def __init__(self, card_set_id: str):
        self.card_set_id = card_set_id
        super().__init__(f"Card set '{card_set_id}' is not loaded; await cache.get() first")


class UnknownCard(RevisitError, LookupError):
    def __init__(self, card_set_id: str, card_id: str):
        self.card_set_id = card_set_id
        self.card_id = card_id
        super().__init__(f"Card '{card_id}' does not belong to card set '{card_set_id}'")
