"""
Scene boundary detection.

Compares each pair of adjacent pages with a weighted attribute similarity
and starts a new scene wherever it drops below the boundary threshold.
Pure computation; no I/O.
"""

from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, model_validator

from classification.models import DESCRIPTOR_KEYS, PageDescriptor, parse_tags
import config

DescriptorLike = Union[PageDescriptor, Mapping[str, str]]


class SegmentationWeights(BaseModel):
    """Per-attribute weights for page-to-page continuity."""
    setting: float = 0.30
    time_of_day: float = 0.20
    scene_type: float = 0.15
    dominant_elements: float = 0.15
    weather: float = 0.10
    atmosphere: float = 0.05
    mood: float = 0.05
    activity_level: float = 0.00

    @model_validator(mode="after")
    def _check_weights(self) -> "SegmentationWeights":
        values = self.as_dict()
        if any(w < 0 for w in values.values()):
            raise ValueError("Segmentation weights must be non-negative")
        if sum(values.values()) <= 0:
            raise ValueError("Segmentation weights must not all be zero")
        return self

    def as_dict(self) -> Dict[str, float]:
        return {key: getattr(self, key) for key in DESCRIPTOR_KEYS}

    @property
    def total(self) -> float:
        return sum(self.as_dict().values())

    @classmethod
    def from_config(cls) -> "SegmentationWeights":
        return cls(**config.SEGMENTATION_WEIGHTS)


def jaccard(a: frozenset, b: frozenset) -> float:
    """Jaccard similarity; two empty sets are identical."""
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


class SceneSegmenter:
    """Computes scene boundaries from an ordered list of page descriptors."""

    def __init__(
        self,
        weights: Optional[SegmentationWeights] = None,
        threshold: float = config.SCENE_BOUNDARY_THRESHOLD
    ):
        self.weights = weights or SegmentationWeights.from_config()
        self.threshold = threshold

    def similarity(self, a: DescriptorLike, b: DescriptorLike) -> float:
        """Weighted similarity in [0, 1] between two descriptors.

        Categorical attributes match case-insensitively; dominant_elements
        uses the Jaccard similarity of its tag sets.
        """
        a = PageDescriptor.coerce(a)
        b = PageDescriptor.coerce(b)

        score = 0.0
        for key, weight in self.weights.as_dict().items():
            if weight == 0:
                continue
            if key == "dominant_elements":
                score += weight * jaccard(parse_tags(a.dominant_elements), parse_tags(b.dominant_elements))
            elif getattr(a, key).strip().lower() == getattr(b, key).strip().lower():
                score += weight

        # Normalise so custom weight sets that don't sum to 1 stay bounded
        return round(min(1.0, max(0.0, score / self.weights.total)), 6)

    def detect_boundaries(
        self,
        pages: Iterable[Tuple[int, DescriptorLike]]
    ) -> List[int]:
        """Return the page numbers where scenes start.

        Args:
            pages: (page_number, descriptor) pairs

        Returns:
            Strictly increasing page numbers, beginning with the first page.
            An empty input yields an empty list.
        """
        ordered = sorted(pages, key=lambda p: p[0])
        if not ordered:
            return []

        boundaries = [ordered[0][0]]
        for (_, prev), (page_number, curr) in zip(ordered, ordered[1:]):
            if self.similarity(prev, curr) < self.threshold:
                boundaries.append(page_number)
        return boundaries
