"""Exception hierarchy shared by every pipeline stage."""
from typing import List, Optional


class PipelineError(Exception):
    """Base class for all pipeline failures."""
    pass


# ==================== Classification output ====================

class ValidationError(PipelineError):
    """Classification output (or input) could not be accepted."""
    pass


class EmptyPageError(ValidationError):
    """Page text is empty or blank; the endpoint is never called."""
    pass


class MalformedResponseError(ValidationError):
    """No JSON object could be located in, or decoded from, a model response."""

    def __init__(self, message: str, raw_response: Optional[str] = None):
        super().__init__(message)
        self.raw_response = raw_response


class MissingAttributeError(ValidationError):
    """A decoded descriptor lacks one or more required keys."""

    def __init__(self, missing: List[str]):
        super().__init__(f"Missing required descriptor keys: {', '.join(missing)}")
        self.missing = missing


class NoPagesError(ValidationError):
    """A book has no pages to process."""
    pass


# ==================== External API ====================

class TransientAPIError(PipelineError):
    """Timeout, connection drop or rate limit. Safe to retry."""
    pass


class PermanentAPIError(PipelineError):
    """Retries exhausted, or the endpoint rejected the request outright."""
    pass


# ==================== Storage ====================

class PersistenceError(PipelineError):
    """A storage read or write failed."""
    pass


class SceneInsertFailed(PersistenceError):
    """Scene creation for a book was rolled back."""
    pass


# ==================== Matching / admin ====================

class AssignmentUnavailable(PipelineError):
    """No soundscape could be matched to a scene."""
    pass


class NotFoundError(PipelineError):
    """Referenced book, scene or soundscape does not exist."""
    pass


class InvalidStateError(PipelineError):
    """Operation not allowed in the book's current processing status."""
    pass


class PublishBlockedError(InvalidStateError):
    """A book still has scenes without an approved or confident assignment."""

    def __init__(self, book_id: str, unresolved_scene_ids: List[str]):
        super().__init__(
            f"Book {book_id} has {len(unresolved_scene_ids)} scene(s) needing review"
        )
        self.book_id = book_id
        self.unresolved_scene_ids = unresolved_scene_ids


class CatalogEntryInUseError(PipelineError):
    """Soundscape is still referenced by a published book."""
    pass


class LowConfidenceWarning(UserWarning):
    """Automated match scored below the confidence threshold."""
    pass
