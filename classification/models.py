"""Pydantic models for page classification."""
from typing import Any, Dict, List, Mapping, Union

from pydantic import BaseModel, ConfigDict, field_validator


DESCRIPTOR_KEYS = (
    "mood",
    "setting",
    "time_of_day",
    "weather",
    "activity_level",
    "atmosphere",
    "scene_type",
    "dominant_elements",
)

# Allowed vocabulary per attribute, rendered into the classification prompt.
VOCABULARY: Dict[str, List[str]] = {
    "mood": ["joyful", "tense", "melancholic", "peaceful", "mysterious", "romantic", "fearful", "angry", "neutral"],
    "setting": ["indoor", "outdoor", "urban", "rural", "nature", "forest", "sea", "castle", "tavern", "unknown"],
    "time_of_day": ["dawn", "morning", "afternoon", "evening", "night", "unknown"],
    "weather": ["sunny", "rainy", "stormy", "cloudy", "snowy", "windy", "foggy", "clear", "unknown"],
    "activity_level": ["calm", "moderate", "high", "intense"],
    "atmosphere": ["suspenseful", "romantic", "adventurous", "contemplative", "dramatic", "eerie", "cozy", "neutral"],
    "scene_type": ["dialogue", "action", "description", "introspection", "transition"],
    "dominant_elements": ["wind", "water", "fire", "crowd", "birds", "footsteps", "machinery", "music", "animals", "silence"],
}


class PageDescriptor(BaseModel):
    """Eight-attribute classification of a page (or a scene)."""
    model_config = ConfigDict(frozen=True)

    mood: str
    setting: str
    time_of_day: str
    weather: str
    activity_level: str
    atmosphere: str
    scene_type: str
    dominant_elements: str  # comma-separated tags

    @field_validator(*DESCRIPTOR_KEYS, mode="before")
    @classmethod
    def _as_clean_string(cls, value: Any) -> Any:
        # Models sometimes return dominant_elements as a JSON list
        if isinstance(value, (list, tuple)):
            return ", ".join(str(v).strip() for v in value if str(v).strip())
        if value is None:
            return ""
        if isinstance(value, (int, float)):
            return str(value)
        if isinstance(value, str):
            return value.strip()
        return value

    @property
    def tags(self) -> frozenset:
        """Normalized set of dominant element tags."""
        return parse_tags(self.dominant_elements)

    def to_dict(self) -> Dict[str, str]:
        """Convert to dictionary for database insertion."""
        return {key: getattr(self, key) for key in DESCRIPTOR_KEYS}

    @classmethod
    def coerce(cls, value: Union["PageDescriptor", Mapping[str, Any]]) -> "PageDescriptor":
        if isinstance(value, PageDescriptor):
            return value
        return cls(**{key: value.get(key) for key in DESCRIPTOR_KEYS})


def parse_tags(raw: str) -> frozenset:
    """Split a comma-separated tag string into a lowercase set."""
    if not raw:
        return frozenset()
    return frozenset(t.strip().lower() for t in raw.split(",") if t.strip())


DEFAULT_DESCRIPTOR = PageDescriptor(
    mood="neutral",
    setting="unknown",
    time_of_day="unknown",
    weather="unknown",
    activity_level="moderate",
    atmosphere="neutral",
    scene_type="description",
    dominant_elements="silence",
)


class ClassifiedPage(BaseModel):
    """Outcome of classifying one page, including degraded fallbacks."""
    page_number: int
    descriptor: PageDescriptor
    origin: str = "model"  # "model" | "default"
    failure_reason: str | None = None

    @property
    def degraded(self) -> bool:
        return self.origin == "default"
