"""
Admin review surface: inspect, override and clear scene soundscapes, and
publish a book once every scene is resolved.

Overrides append to a scene's assignment history; they never edit the
automated row they supersede.
"""

from typing import List, Optional

from errors import CatalogEntryInUseError, InvalidStateError, NotFoundError, PublishBlockedError
from pipeline.models import Book, BookStatus
from soundscapes.models import AssignmentSource, SceneReview, SceneSoundscapeAssignment
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)

_REVIEWABLE_STATUSES = (BookStatus.READY_FOR_REVIEW, BookStatus.PUBLISHED)


def is_resolved(
    assignment: Optional[SceneSoundscapeAssignment],
    threshold: float = config.MATCH_CONFIDENCE_THRESHOLD
) -> bool:
    """A scene is resolved when its current assignment is approved or confident enough."""
    if assignment is None:
        return False
    return assignment.approved or assignment.confidence_score >= threshold


class AdminOverrideGateway:
    """Human-in-the-loop operations on a processed book."""

    def __init__(self, db, confidence_threshold: float = config.MATCH_CONFIDENCE_THRESHOLD):
        """
        Args:
            db: Database instance (storage.database.Database)
            confidence_threshold: Minimum automated confidence that counts as resolved
        """
        self.db = db
        self.confidence_threshold = confidence_threshold

    def review(self, book_id: str) -> List[SceneReview]:
        """Scenes of a book with their current assignment and review flag."""
        self.db.require_book(book_id)
        reviews = []
        for scene in self.db.get_scenes(book_id):
            history = self.db.get_assignments(scene.scene_id)
            current = history[-1] if history else None
            reviews.append(SceneReview(
                scene=scene,
                current_assignment=current,
                needs_review=not is_resolved(current, self.confidence_threshold),
                history=history
            ))
        return reviews

    def unresolved_scene_ids(self, book_id: str) -> List[str]:
        return [r.scene.scene_id for r in self.review(book_id) if r.needs_review]

    def override(self, scene_id: str, soundscape_id: str) -> SceneSoundscapeAssignment:
        """Assign a catalog entry to a scene on an admin's behalf.

        Args:
            scene_id: Scene to reassign
            soundscape_id: Chosen catalog entry

        Returns:
            The new (now current) assignment

        Raises:
            NotFoundError: unknown scene or soundscape
            InvalidStateError: the book has not reached ready_for_review
        """
        scene = self.db.require_scene(scene_id)
        self._require_reviewable(scene.book_id)

        entry = self.db.get_soundscape(soundscape_id)
        if entry is None:
            raise NotFoundError(f"Soundscape {soundscape_id} not found")

        assignment = self.db.insert_assignment(
            scene_id=scene_id,
            soundscape_id=entry.soundscape_id,
            audio_url=entry.url,
            confidence_score=1.0,
            source=AssignmentSource.ADMIN_OVERRIDE,
            approved=True,
            needs_review=False
        )
        logger.info(f"Scene {scene.scene_number} of book {scene.book_id} overridden with '{entry.name}'")
        return assignment

    def clear(self, scene_id: str) -> int:
        """Remove every assignment of a scene, returning it to needs-review.

        A published book goes back to ready_for_review since it now has
        an unresolved scene.

        Returns:
            Number of assignments removed
        """
        scene = self.db.require_scene(scene_id)
        book = self._require_reviewable(scene.book_id)

        removed = self.db.clear_assignments(scene_id)
        if book.status == BookStatus.PUBLISHED:
            self.db.update_book_status(book.book_id, BookStatus.READY_FOR_REVIEW)
            logger.warning(f"Book {book.book_id} unpublished: scene {scene.scene_number} was cleared")

        logger.info(f"Cleared {removed} assignments from scene {scene.scene_number} of book {scene.book_id}")
        return removed

    def publish(self, book_id: str) -> Book:
        """Publish a book whose scenes are all resolved.

        Raises:
            InvalidStateError: the book is not ready_for_review
            PublishBlockedError: some scenes still need review
        """
        book = self.db.require_book(book_id)
        if book.status != BookStatus.READY_FOR_REVIEW:
            raise InvalidStateError(
                f"Book {book_id} cannot be published from status {book.status.value}"
            )

        unresolved = self.unresolved_scene_ids(book_id)
        if unresolved:
            raise PublishBlockedError(book_id, unresolved)

        self.db.update_book_status(book_id, BookStatus.PUBLISHED)
        logger.info(f"✓ Published book {book_id}")
        return self.db.require_book(book_id)

    def delete_soundscape(self, soundscape_id: str) -> None:
        """Remove a catalog entry unless a published book currently plays it.

        Raises:
            NotFoundError: unknown soundscape
            CatalogEntryInUseError: referenced by a published book's current assignment
        """
        if self.db.get_soundscape(soundscape_id) is None:
            raise NotFoundError(f"Soundscape {soundscape_id} not found")

        references = self.db.find_published_references(soundscape_id)
        if references:
            books = sorted({book_id for book_id, _ in references})
            raise CatalogEntryInUseError(
                f"Soundscape {soundscape_id} is used by {len(references)} scene(s) "
                f"in published book(s): {', '.join(books)}"
            )

        self.db.delete_soundscape(soundscape_id)
        logger.info(f"Deleted soundscape {soundscape_id}")

    def _require_reviewable(self, book_id: str) -> Book:
        book = self.db.require_book(book_id)
        if book.status not in _REVIEWABLE_STATUSES:
            raise InvalidStateError(
                f"Book {book_id} is {book.status.value}; assignments can change once it is ready_for_review"
            )
        return book
