"""Test SQLite storage."""
import pytest

from classification.models import DEFAULT_DESCRIPTOR, ClassifiedPage
from errors import NotFoundError, PersistenceError, SceneInsertFailed, ValidationError
from pipeline.models import BookStatus, PipelineStage, StageStatus
from scenes.models import SceneDraft
from soundscapes.models import AssignmentSource

from conftest import descriptor, make_pages


def _book_with_scenes(db, page_count=4, ranges=((1, 2), (3, 4))):
    book = db.insert_book("Stored", author="A. Writer")
    db.insert_pages(book.book_id, make_pages(page_count))
    drafts = [
        SceneDraft(book_id=book.book_id, scene_number=n, start_page=s, end_page=e, descriptor=descriptor())
        for n, (s, e) in enumerate(ranges, start=1)
    ]
    return book, db.replace_scenes(book.book_id, drafts)


def test_insert_and_get_book(db):
    """Test book round trip and defaults."""
    book = db.insert_book("The Quiet Wood", author="E. Green")
    stored = db.get_book(book.book_id)

    assert stored.title == "The Quiet Wood"
    assert stored.status == BookStatus.PENDING
    assert stored.is_published is False
    assert db.get_book("missing") is None
    with pytest.raises(NotFoundError):
        db.require_book("missing")


def test_insert_pages_updates_total(db):
    """Test page batch insert and ordering."""
    book = db.insert_book("Paged")
    db.insert_pages(book.book_id, list(reversed(make_pages(3))))

    assert [p.page_number for p in db.get_pages(book.book_id)] == [1, 2, 3]
    assert db.get_book(book.book_id).total_pages == 3


def test_insert_pages_rejects_duplicates(db):
    """Test that page numbers must be unique per book."""
    book = db.insert_book("Dupes")
    pages = make_pages(2) + [{"page_number": 2, "text_content": "again"}]

    with pytest.raises(ValidationError):
        db.insert_pages(book.book_id, pages)


def test_insert_pages_rejects_gaps(db):
    """Test that numbering must run from 1 without holes."""
    book = db.insert_book("Holes")
    pages = [{"page_number": n, "text_content": f"page {n}"} for n in (1, 2, 5)]

    with pytest.raises(ValidationError):
        db.insert_pages(book.book_id, pages)
    with pytest.raises(ValidationError):
        db.insert_pages(book.book_id, [{"page_number": 2, "text_content": "no first page"}])
    assert db.get_pages(book.book_id) == []


def test_pages_require_existing_book(db):
    """Test that storage errors surface as PersistenceError."""
    with pytest.raises(PersistenceError):
        db.insert_pages("no-such-book", make_pages(1))


def test_descriptor_upsert(db):
    """Test saving and replacing a page classification."""
    book = db.insert_book("Classified")
    db.insert_pages(book.book_id, make_pages(2))

    db.save_page_descriptor(book.book_id, ClassifiedPage(page_number=1, descriptor=descriptor()))
    db.save_page_descriptor(book.book_id, ClassifiedPage(
        page_number=1, descriptor=DEFAULT_DESCRIPTOR, origin="default", failure_reason="MalformedResponseError: x"
    ))

    stored = db.get_page_descriptors(book.book_id)
    assert list(stored) == [1]
    assert stored[1].degraded
    assert stored[1].descriptor == DEFAULT_DESCRIPTOR


def test_replace_scenes_links_pages(db):
    """Test scene insert and page ownership lookup."""
    book, scenes = _book_with_scenes(db)

    assert [s.scene_number for s in db.get_scenes(book.book_id)] == [1, 2]
    assert db.get_scene_for_page(book.book_id, 3).scene_id == scenes[1].scene_id
    assert db.get_scene(scenes[0].scene_id).end_page == 2


def test_replace_scenes_rolls_back(db):
    """Test that a failing scene insert keeps the previous scenes."""
    book, scenes = _book_with_scenes(db)
    bad = [
        SceneDraft(book_id=book.book_id, scene_number=1, start_page=1, end_page=2, descriptor=descriptor()),
        SceneDraft(book_id=book.book_id, scene_number=1, start_page=3, end_page=4, descriptor=descriptor()),
    ]

    with pytest.raises(SceneInsertFailed):
        db.replace_scenes(book.book_id, bad)

    assert [s.scene_id for s in db.get_scenes(book.book_id)] == [s.scene_id for s in scenes]
    assert db.get_scene_for_page(book.book_id, 1).scene_id == scenes[0].scene_id


def test_assignments_are_append_only(db, catalog):
    """Test history ordering and the current assignment."""
    _, scenes = _book_with_scenes(db)
    scene_id = scenes[0].scene_id
    forest, tavern = catalog["forest"], catalog["tavern"]

    first = db.insert_assignment(scene_id, forest.soundscape_id, forest.url, 0.6, AssignmentSource.AUTOMATED,
                                 needs_review=True)
    second = db.insert_assignment(scene_id, tavern.soundscape_id, tavern.url, 1.0, AssignmentSource.ADMIN_OVERRIDE,
                                  approved=True)

    history = db.get_assignments(scene_id)
    assert [a.assignment_id for a in history] == [first.assignment_id, second.assignment_id]
    assert history[0] == first
    assert db.get_current_assignment(scene_id).assignment_id == second.assignment_id

    assert db.clear_assignments(scene_id) == 2
    assert db.get_current_assignment(scene_id) is None


def test_soundscapes_listed_in_insert_order(db, catalog):
    """Test canonical catalog order."""
    entries = db.list_soundscapes()

    assert [e.name for e in entries] == ["Forest Morning", "Busy Tavern"]
    assert entries[0].position < entries[1].position
    assert entries[0].tags.intensity == 2


def test_published_references(db, catalog):
    """Test that only published books' current assignments count as live."""
    book, scenes = _book_with_scenes(db)
    forest, tavern = catalog["forest"], catalog["tavern"]
    db.insert_assignment(scenes[0].scene_id, forest.soundscape_id, forest.url, 0.9, AssignmentSource.AUTOMATED)
    assert db.find_published_references(forest.soundscape_id) == []

    db.update_book_status(book.book_id, BookStatus.PUBLISHED)
    assert db.find_published_references(forest.soundscape_id) == [(book.book_id, scenes[0].scene_id)]

    db.insert_assignment(scenes[0].scene_id, tavern.soundscape_id, tavern.url, 1.0,
                         AssignmentSource.ADMIN_OVERRIDE, approved=True)
    assert db.find_published_references(forest.soundscape_id) == []


def test_delete_book_cascades(db, catalog):
    """Test that deleting a book removes everything it owns."""
    book, scenes = _book_with_scenes(db)
    forest = catalog["forest"]
    db.insert_assignment(scenes[0].scene_id, forest.soundscape_id, forest.url, 0.9, AssignmentSource.AUTOMATED)
    db.get_or_create_pipeline_run(book.book_id)

    assert db.delete_book(book.book_id) is True

    assert db.get_pages(book.book_id) == []
    assert db.get_scenes(book.book_id) == []
    assert db.get_assignments(scenes[0].scene_id) == []
    assert db.get_pipeline_run(book.book_id) is None
    assert db.get_soundscape(forest.soundscape_id) is not None


def test_pipeline_run_stage_tracking(db):
    """Test stage updates, failure recording and reset."""
    book = db.insert_book("Run")
    run = db.get_or_create_pipeline_run(book.book_id)
    assert db.get_or_create_pipeline_run(book.book_id).run_id == run.run_id

    db.update_stage(book.book_id, PipelineStage.CLASSIFY, StageStatus.COMPLETED)
    run = db.update_stage(book.book_id, PipelineStage.SEGMENT, StageStatus.FAILED, error="disk full")
    assert run.failed_stage == PipelineStage.SEGMENT.value
    assert run.error == "disk full"
    assert run.pending_stages == [PipelineStage.SEGMENT, PipelineStage.MATCH]

    run = db.reset_stages(book.book_id, PipelineStage.CLASSIFY)
    assert run.failed_stage is None
    assert run.pending_stages == [PipelineStage.CLASSIFY, PipelineStage.SEGMENT, PipelineStage.MATCH]


def test_run_meta_merges(db):
    """Test metadata merging on the run record."""
    book = db.insert_book("Meta")
    db.get_or_create_pipeline_run(book.book_id)

    db.merge_run_meta(book.book_id, {"degraded_pages": [7]})
    db.merge_run_meta(book.book_id, {"unmatched_scenes": []})

    run = db.get_pipeline_run(book.book_id)
    assert run.degraded_pages == [7]
    assert run.meta["unmatched_scenes"] == []
