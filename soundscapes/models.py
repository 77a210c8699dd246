"""Pydantic models for the soundscape catalog and scene assignments."""
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, Field

from scenes.models import Scene


class AssignmentSource(str, Enum):
    AUTOMATED = "automated"
    ADMIN_OVERRIDE = "admin_override"


class SoundscapeTags(BaseModel):
    """Curation metadata describing what an audio asset fits."""
    mood: Optional[str] = None
    setting: Optional[str] = None
    intensity: Optional[Union[float, str]] = None  # 0-10, or a level word
    weather: Optional[str] = None
    time_of_day: Optional[str] = None


class CatalogEntry(BaseModel):
    """A curated ambient audio asset."""
    soundscape_id: str
    category: str
    name: str
    url: str
    tags: SoundscapeTags = Field(default_factory=SoundscapeTags)
    position: int = 0  # canonical listing order


class SceneSoundscapeAssignment(BaseModel):
    """One row of a scene's append-only assignment history."""
    assignment_id: str
    scene_id: str
    soundscape_id: Optional[str]
    audio_url: str
    confidence_score: float = Field(ge=0.0, le=1.0)
    source: AssignmentSource
    approved: bool = False
    needs_review: bool = False
    created_at: str = ""


class MatchResult(BaseModel):
    """Outcome of matching one scene against the catalog."""
    entry: Optional[CatalogEntry] = None
    confidence_score: float = 0.0
    needs_review: bool = True
    reason: Optional[str] = None  # set when no match was possible

    @property
    def matched(self) -> bool:
        return self.entry is not None


class SceneReview(BaseModel):
    """What the admin review surface shows per scene."""
    scene: Scene
    current_assignment: Optional[SceneSoundscapeAssignment] = None
    needs_review: bool
    history: List[SceneSoundscapeAssignment] = Field(default_factory=list)


class PageAudio(BaseModel):
    """Scene and audio URL that accompany one page of a book."""
    book_id: str
    page_number: int
    scene: Scene
    audio_url: Optional[str] = None
