"""Test Pydantic models."""
import pytest
from pydantic import ValidationError as PydanticValidationError

from classification.models import DEFAULT_DESCRIPTOR, DESCRIPTOR_KEYS, ClassifiedPage, PageDescriptor, parse_tags
from pipeline.models import PipelineRun, PipelineStage, StageStatus
from scenes.models import Scene, SceneDraft
from soundscapes.models import MatchResult

from conftest import FOREST, descriptor


def test_page_descriptor_creation():
    """Test creating a descriptor with all eight attributes."""
    d = PageDescriptor(**FOREST)

    assert d.mood == "peaceful"
    assert d.to_dict() == FOREST
    assert d.tags == frozenset({"birds", "wind"})


def test_page_descriptor_joins_element_lists():
    """Test that a JSON list of elements becomes the comma-separated form."""
    values = dict(FOREST, dominant_elements=["wind", " water ", ""])
    d = PageDescriptor(**values)

    assert d.dominant_elements == "wind, water"


def test_page_descriptor_strips_values():
    """Test that values are stored as stripped strings."""
    d = PageDescriptor(**dict(FOREST, mood="  tense  ", weather=None))

    assert d.mood == "tense"
    assert d.weather == ""


def test_page_descriptor_requires_every_key():
    """Test that a missing key is rejected."""
    values = dict(FOREST)
    del values["atmosphere"]

    with pytest.raises(PydanticValidationError):
        PageDescriptor(**values)


def test_page_descriptor_is_immutable():
    """Test that descriptors cannot be mutated."""
    d = descriptor()
    with pytest.raises(PydanticValidationError):
        d.mood = "tense"


def test_default_descriptor():
    """Test the fallback descriptor used for degraded pages."""
    assert DEFAULT_DESCRIPTOR.mood == "neutral"
    assert DEFAULT_DESCRIPTOR.setting == "unknown"
    assert DEFAULT_DESCRIPTOR.activity_level == "moderate"
    assert set(DEFAULT_DESCRIPTOR.to_dict()) == set(DESCRIPTOR_KEYS)


def test_parse_tags():
    """Test tag splitting and normalisation."""
    assert parse_tags("Wind, water ,, FIRE") == frozenset({"wind", "water", "fire"})
    assert parse_tags("") == frozenset()


def test_classified_page_degraded():
    """Test the degraded flag on fallback classifications."""
    ok = ClassifiedPage(page_number=1, descriptor=descriptor())
    fallback = ClassifiedPage(page_number=2, descriptor=DEFAULT_DESCRIPTOR, origin="default", failure_reason="boom")

    assert not ok.degraded
    assert fallback.degraded


def test_scene_draft_rejects_inverted_range():
    """Test that end_page before start_page is invalid."""
    with pytest.raises(PydanticValidationError):
        SceneDraft(book_id="b", scene_number=1, start_page=5, end_page=4, descriptor=descriptor())


def test_scene_contains():
    """Test page membership of a scene."""
    scene = Scene(scene_id="s", book_id="b", scene_number=1, start_page=3, end_page=5, descriptor=descriptor())

    assert scene.contains(3)
    assert scene.contains(5)
    assert not scene.contains(6)


def test_pipeline_run_pending_stages():
    """Test that completed stages are not pending."""
    run = PipelineRun(run_id="r", book_id="b")
    assert run.pending_stages == [PipelineStage.CLASSIFY, PipelineStage.SEGMENT, PipelineStage.MATCH]

    run.stages[PipelineStage.CLASSIFY.value] = StageStatus.COMPLETED
    assert run.pending_stages == [PipelineStage.SEGMENT, PipelineStage.MATCH]


def test_match_result_matched():
    """Test that a result without an entry is not a match."""
    assert not MatchResult(reason="empty catalog").matched
