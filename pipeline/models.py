"""Pydantic models for per-book pipeline state."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class BookStatus(str, Enum):
    PENDING = "pending"
    EXTRACTED = "extracted"
    CLASSIFIED = "classified"
    SEGMENTED = "segmented"
    MATCHED = "matched"
    READY_FOR_REVIEW = "ready_for_review"
    PUBLISHED = "published"
    FAILED = "failed"


class PipelineStage(str, Enum):
    """Retryable stages, in execution order. Values match the BookStatus reached."""
    CLASSIFY = "classified"
    SEGMENT = "segmented"
    MATCH = "matched"


STAGE_ORDER = (PipelineStage.CLASSIFY, PipelineStage.SEGMENT, PipelineStage.MATCH)


class StageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def _initial_stages() -> Dict[str, StageStatus]:
    return {stage.value: StageStatus.PENDING for stage in STAGE_ORDER}


class Book(BaseModel):
    """Book record as seen by the pipeline."""
    book_id: str
    title: str
    author: str = ""
    total_pages: int = 0
    status: BookStatus = BookStatus.PENDING
    processing_error: Optional[str] = None
    processing_cost: float = 0.0
    is_published: bool = False
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class PipelineRun(BaseModel):
    """Per-book stage progress plus the last failure, if any."""
    run_id: str
    book_id: str
    stages: Dict[str, StageStatus] = Field(default_factory=_initial_stages)
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)
    started_at: str = ""
    updated_at: str = ""

    def stage_status(self, stage: PipelineStage) -> StageStatus:
        return self.stages.get(stage.value, StageStatus.PENDING)

    def is_completed(self, stage: PipelineStage) -> bool:
        return self.stage_status(stage) == StageStatus.COMPLETED

    @property
    def pending_stages(self) -> List[PipelineStage]:
        """Stages that still need to run, in pipeline order."""
        return [s for s in STAGE_ORDER if not self.is_completed(s)]

    @property
    def degraded_pages(self) -> List[int]:
        return list(self.meta.get("degraded_pages", []))
