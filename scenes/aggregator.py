"""Groups pages between boundaries into scenes with aggregated descriptors."""
from typing import Dict, List, Sequence, Tuple

from classification.models import DEFAULT_DESCRIPTOR, DESCRIPTOR_KEYS, PageDescriptor
from scenes.models import PageWithDescriptor, Scene, SceneDraft
from utils.logger import setup_logger

logger = setup_logger(__name__)


def aggregate_descriptors(descriptors: Sequence[PageDescriptor]) -> PageDescriptor:
    """Most frequent value per attribute across a scene's pages.

    Ties go to the value seen on the earliest page. An empty input yields
    the default descriptor.
    """
    if not descriptors:
        return DEFAULT_DESCRIPTOR

    aggregated: Dict[str, str] = {}
    for key in DESCRIPTOR_KEYS:
        counts: Dict[str, int] = {}
        first_seen: Dict[str, int] = {}
        for idx, descriptor in enumerate(descriptors):
            value = getattr(descriptor, key)
            counts[value] = counts.get(value, 0) + 1
            first_seen.setdefault(value, idx)
        aggregated[key] = min(counts, key=lambda v: (-counts[v], first_seen[v]))

    return PageDescriptor(**aggregated)


class SceneAggregator:
    """Builds Scene records from boundaries and persists them per book."""

    def __init__(self, db):
        """
        Args:
            db: Database instance (storage.database.Database)
        """
        self.db = db

    @staticmethod
    def build_scenes(
        book_id: str,
        pages: Sequence[PageWithDescriptor],
        boundaries: Sequence[int]
    ) -> List[SceneDraft]:
        """Split pages at `boundaries` and aggregate each range."""
        ordered = sorted(pages, key=lambda p: p.page_number)
        if not ordered or not boundaries:
            return []

        last_page = ordered[-1].page_number
        ranges: List[Tuple[int, int]] = []
        for idx, start in enumerate(boundaries):
            end = boundaries[idx + 1] - 1 if idx + 1 < len(boundaries) else last_page
            ranges.append((start, end))

        drafts = []
        for scene_number, (start, end) in enumerate(ranges, start=1):
            in_range = [p.descriptor for p in ordered if start <= p.page_number <= end]
            if not in_range:
                logger.warning(f"Scene {scene_number} ({start}-{end}) has no classified pages; using defaults")
            drafts.append(SceneDraft(
                book_id=book_id,
                scene_number=scene_number,
                start_page=start,
                end_page=end,
                descriptor=aggregate_descriptors(in_range)
            ))
        return drafts

    def create_scenes(
        self,
        book_id: str,
        pages: Sequence[PageWithDescriptor],
        boundaries: Sequence[int]
    ) -> List[Scene]:
        """Replace the book's scenes and link every page to its scene.

        Runs as one transaction; raises SceneInsertFailed on rollback.
        """
        drafts = self.build_scenes(book_id, pages, boundaries)
        scenes = self.db.replace_scenes(book_id, drafts)
        logger.info(f"Created {len(scenes)} scenes for book {book_id}")
        return scenes
