"""Pydantic models for pages and scenes."""
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from classification.models import PageDescriptor


class Page(BaseModel):
    """Ordered unit of book text as handed over by the extractor."""
    book_id: str
    page_number: int = Field(ge=1)
    text_content: str = ""
    scene_id: Optional[str] = None


class PageWithDescriptor(BaseModel):
    """A page number paired with its classification."""
    page_number: int = Field(ge=1)
    descriptor: PageDescriptor


class SceneDraft(BaseModel):
    """A scene computed from boundaries, not yet persisted."""
    book_id: str
    scene_number: int = Field(ge=1)
    start_page: int = Field(ge=1)
    end_page: int = Field(ge=1)
    descriptor: PageDescriptor

    @model_validator(mode="after")
    def _check_range(self) -> "SceneDraft":
        if self.start_page > self.end_page:
            raise ValueError("end_page must be greater than or equal to start_page")
        return self


class Scene(SceneDraft):
    """A persisted scene."""
    scene_id: str
    created_at: str = ""

    def contains(self, page_number: int) -> bool:
        return self.start_page <= page_number <= self.end_page
