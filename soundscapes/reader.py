"""Read-only lookups for the reader experience."""
from typing import Any, Dict, List, Optional

from soundscapes.models import PageAudio
from utils.logger import setup_logger

logger = setup_logger(__name__)


def resolve_page_audio(db, book_id: str, page_number: int) -> Optional[PageAudio]:
    """Scene owning a page and the audio URL of its current assignment.

    Args:
        db: Database instance
        book_id: Book UUID
        page_number: 1-based page number

    Returns:
        PageAudio, or None when the page is not part of any scene yet.
        `audio_url` is None for a scene without an assignment.
    """
    db.require_book(book_id)
    scene = db.get_scene_for_page(book_id, page_number)
    if scene is None:
        logger.debug(f"Page {page_number} of book {book_id} has no scene")
        return None

    current = db.get_current_assignment(scene.scene_id)
    return PageAudio(
        book_id=book_id,
        page_number=page_number,
        scene=scene,
        audio_url=current.audio_url if current else None
    )


def export_scenes(db, book_id: str) -> Dict[str, Any]:
    """Scenes of a book with their current soundscape, as plain data."""
    book = db.require_book(book_id)
    scenes: List[Dict[str, Any]] = []
    for scene in db.get_scenes(book_id):
        current = db.get_current_assignment(scene.scene_id)
        scenes.append({
            "scene_id": scene.scene_id,
            "scene_number": scene.scene_number,
            "start_page": scene.start_page,
            "end_page": scene.end_page,
            "descriptor": scene.descriptor.to_dict(),
            "soundscape": current.model_dump(mode="json") if current else None,
        })

    return {
        "book_id": book.book_id,
        "title": book.title,
        "status": book.status.value,
        "scenes": scenes,
    }
