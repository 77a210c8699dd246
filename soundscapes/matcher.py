"""
Scene to soundscape matching.

Scores a scene's aggregated descriptor against every catalog entry and
picks the best fit. This weighting answers "does this audio suit the
scene" and is deliberately separate from SegmentationWeights, which
answers "do these two pages belong together".
"""

import warnings
from typing import Dict, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, model_validator

from classification.models import PageDescriptor
from errors import AssignmentUnavailable, LowConfidenceWarning
from soundscapes.models import CatalogEntry, MatchResult
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)

MATCH_ATTRIBUTES = ("mood", "setting", "intensity", "weather", "time_of_day")

# Values that carry no information for matching
_UNKNOWN_VALUES = {"", "unknown", "none", "n/a"}

ACTIVITY_INTENSITY = {
    "calm": 2.0,
    "low": 2.0,
    "moderate": 5.0,
    "medium": 5.0,
    "high": 8.0,
    "intense": 10.0,
}


class MatchingWeights(BaseModel):
    """Per-attribute weights for audio fit."""
    mood: float = 0.40
    setting: float = 0.30
    intensity: float = 0.15
    weather: float = 0.10
    time_of_day: float = 0.05

    @model_validator(mode="after")
    def _check_weights(self) -> "MatchingWeights":
        values = self.as_dict()
        if any(w < 0 for w in values.values()):
            raise ValueError("Matching weights must be non-negative")
        if sum(values.values()) <= 0:
            raise ValueError("Matching weights must not all be zero")
        return self

    def as_dict(self) -> Dict[str, float]:
        return {key: getattr(self, key) for key in MATCH_ATTRIBUTES}

    @property
    def total(self) -> float:
        return sum(self.as_dict().values())

    @classmethod
    def from_config(cls) -> "MatchingWeights":
        return cls(**config.MATCHING_WEIGHTS)


def _known(value) -> bool:
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return True
    return str(value).strip().lower() not in _UNKNOWN_VALUES


def _norm(value) -> str:
    return str(value).strip().lower()


def scene_attributes(descriptor: PageDescriptor) -> Dict[str, Union[str, float]]:
    """Matching attributes of a scene; unknown values are left out."""
    attrs: Dict[str, Union[str, float]] = {}
    for key in ("mood", "setting", "weather", "time_of_day"):
        value = getattr(descriptor, key)
        if _known(value):
            attrs[key] = _norm(value)
    if _known(descriptor.activity_level):
        attrs["intensity"] = _norm(descriptor.activity_level)
    return attrs


def intensity_similarity(scene_level: str, entry_intensity: Union[float, str]) -> float:
    """Compare scene activity with an entry's intensity tag."""
    if isinstance(entry_intensity, (int, float)):
        scene_value = ACTIVITY_INTENSITY.get(scene_level)
        if scene_value is None:
            try:
                scene_value = float(scene_level)
            except ValueError:
                return 0.0
        diff = abs(scene_value - float(entry_intensity))
        return max(0.0, 1.0 - diff / 10.0)
    return 1.0 if _norm(entry_intensity) == scene_level else 0.0


def needs_review_for(confidence: float, threshold: float = config.MATCH_CONFIDENCE_THRESHOLD) -> bool:
    return confidence < threshold


class SoundscapeMatcher:
    """Selects the best catalog entry for a scene and scores the fit."""

    def __init__(
        self,
        weights: Optional[MatchingWeights] = None,
        confidence_threshold: float = config.MATCH_CONFIDENCE_THRESHOLD
    ):
        self.weights = weights or MatchingWeights.from_config()
        self.confidence_threshold = confidence_threshold

    def score(self, descriptor: PageDescriptor, entry: CatalogEntry) -> float:
        """Weighted fit in [0, 1] between a scene and one catalog entry."""
        attrs = scene_attributes(PageDescriptor.coerce(descriptor))
        return self._score_attrs(attrs, entry)

    def _score_attrs(self, attrs: Dict[str, Union[str, float]], entry: CatalogEntry) -> float:
        score = 0.0
        for key, weight in self.weights.as_dict().items():
            scene_value = attrs.get(key)
            entry_value = getattr(entry.tags, key)
            if scene_value is None or not _known(entry_value):
                continue
            if key == "intensity":
                score += weight * intensity_similarity(scene_value, entry_value)
            elif _norm(entry_value) == scene_value:
                score += weight
        return round(min(1.0, max(0.0, score / self.weights.total)), 6)

    def rank(
        self,
        descriptor: PageDescriptor,
        catalog: Sequence[CatalogEntry]
    ) -> List[Tuple[CatalogEntry, float]]:
        """All entries with their scores, best first, catalog order on ties."""
        attrs = scene_attributes(PageDescriptor.coerce(descriptor))
        scored = [(entry, self._score_attrs(attrs, entry)) for entry in catalog]
        # sorted() is stable, so equal scores keep catalog order
        return sorted(scored, key=lambda pair: -pair[1])

    def select(
        self,
        descriptor: PageDescriptor,
        catalog: Sequence[CatalogEntry]
    ) -> Tuple[CatalogEntry, float]:
        """Best entry and its score.

        Raises:
            AssignmentUnavailable: empty catalog, or nothing to compare
        """
        if not catalog:
            raise AssignmentUnavailable("Soundscape catalog is empty")

        if not scene_attributes(PageDescriptor.coerce(descriptor)):
            raise AssignmentUnavailable("Scene has no attributes usable for matching")

        return self.rank(descriptor, catalog)[0]

    def match(
        self,
        descriptor: PageDescriptor,
        catalog: Sequence[CatalogEntry]
    ) -> MatchResult:
        """Match a scene, degrading to a needs-review result instead of failing."""
        try:
            entry, confidence = self.select(descriptor, catalog)
        except AssignmentUnavailable as e:
            logger.warning(f"No soundscape match: {e}")
            return MatchResult(entry=None, confidence_score=0.0, needs_review=True, reason=str(e))

        needs_review = needs_review_for(confidence, self.confidence_threshold)
        if needs_review:
            warnings.warn(
                f"Best match '{entry.name}' scored {confidence:.2f} "
                f"(threshold {self.confidence_threshold:.2f})",
                LowConfidenceWarning,
                stacklevel=2
            )
        return MatchResult(entry=entry, confidence_score=confidence, needs_review=needs_review)
