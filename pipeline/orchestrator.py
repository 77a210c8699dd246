"""
Per-book pipeline: classify -> segment -> match -> ready_for_review.

Each stage writes its output before the book advances, and completed
stages are skipped on the next run, so a retry re-enters at the failed
stage. Page classification fans out to the ai_analysis worker pool; a
page that cannot be classified gets the default descriptor instead of
failing the book.
"""

import threading
from concurrent.futures import Future, as_completed
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from classification.models import DEFAULT_DESCRIPTOR, ClassifiedPage
from classification.clients import AnthropicClassificationClient
from classification.page_classifier import PageClassifier
from errors import (
    EmptyPageError,
    InvalidStateError,
    MalformedResponseError,
    MissingAttributeError,
    NoPagesError,
    NotFoundError,
    PermanentAPIError,
    PersistenceError,
    PipelineError,
    TransientAPIError,
    ValidationError,
)
from pipeline.cost_estimator import CostEstimator
from pipeline.models import Book, BookStatus, PipelineStage, StageStatus
from pipeline.retry_policy import RetryPolicy
from pipeline.workers import AI_ANALYSIS, DEFAULT, EXTRACTION, WorkerPools
from scenes.aggregator import SceneAggregator
from scenes.models import Page, PageWithDescriptor
from scenes.segmenter import SceneSegmenter
from soundscapes.matcher import SoundscapeMatcher
from soundscapes.models import AssignmentSource
from utils.logger import setup_logger

logger = setup_logger(__name__)

# Book status each stage starts from
_STATUS_BEFORE = {
    PipelineStage.CLASSIFY: BookStatus.EXTRACTED,
    PipelineStage.SEGMENT: BookStatus.CLASSIFIED,
    PipelineStage.MATCH: BookStatus.SEGMENTED,
}

_RUNNABLE_STATUSES = {
    BookStatus.EXTRACTED,
    BookStatus.CLASSIFIED,
    BookStatus.SEGMENTED,
    BookStatus.MATCHED,
    BookStatus.FAILED,
}


def default_classification_retry() -> RetryPolicy:
    """Per-page retry: transient API errors and unusable model output."""
    return RetryPolicy(
        retry_on=(TransientAPIError, MalformedResponseError, MissingAttributeError),
        never_retry=(EmptyPageError,)
    )


def default_stage_retry() -> RetryPolicy:
    """Whole-stage retry: storage failures and transient API errors."""
    return RetryPolicy(retry_on=(PersistenceError, TransientAPIError))


class PipelineOrchestrator:
    """Runs the stages for one book at a time, any number of books concurrently."""

    def __init__(
        self,
        db,
        classifier: Optional[PageClassifier] = None,
        segmenter: Optional[SceneSegmenter] = None,
        aggregator: Optional[SceneAggregator] = None,
        matcher: Optional[SoundscapeMatcher] = None,
        classification_retry: Optional[RetryPolicy] = None,
        stage_retry: Optional[RetryPolicy] = None,
        pools: Optional[WorkerPools] = None,
        cost_estimator: Optional[CostEstimator] = None
    ):
        """Initialize orchestrator.

        Args:
            db: Database instance (storage.database.Database)
            classifier: Page classifier (Anthropic-backed, built on first use, when omitted)
            segmenter: Boundary detector (config weights/threshold by default)
            aggregator: Scene builder (bound to `db` by default)
            matcher: Soundscape matcher (config weights/threshold by default)
            classification_retry: Retry policy around each page classification
            stage_retry: Retry policy around each whole stage
            pools: Worker pools; when None, pages are classified on the calling thread
            cost_estimator: Processing cost bookkeeping
        """
        self.db = db
        self._classifier = classifier
        self.segmenter = segmenter or SceneSegmenter()
        self.aggregator = aggregator or SceneAggregator(db)
        self.matcher = matcher or SoundscapeMatcher()
        self.classification_retry = classification_retry or default_classification_retry()
        self.stage_retry = stage_retry or default_stage_retry()
        self.pools = pools
        self.cost_estimator = cost_estimator or CostEstimator()

        self._cancelled = set()
        self._running = set()
        self._futures: Dict[str, Future] = {}
        self._lock = threading.Lock()

        self._handlers: Dict[PipelineStage, Callable[[str], None]] = {
            PipelineStage.CLASSIFY: self._classify_stage,
            PipelineStage.SEGMENT: self._segment_stage,
            PipelineStage.MATCH: self._match_stage,
        }

    @property
    def classifier(self) -> PageClassifier:
        if self._classifier is None:
            self._classifier = PageClassifier(AnthropicClassificationClient())
        return self._classifier

    # ==================== Entry points ====================

    def ingest(self, title: str, pages: Sequence[Dict], author: str = "") -> Book:
        """Store extracted pages for a new book and mark it extracted.

        Args:
            title: Book title
            pages: [{"page_number": int, "text_content": str}, ...] from the extractor
            author: Author name

        Returns:
            The new Book (status extracted)
        """
        if not pages:
            raise NoPagesError(f"No pages supplied for '{title}'")

        book = self.db.insert_book(title=title, author=author)
        try:
            self.db.insert_pages(book.book_id, pages)
        except PipelineError:
            self.db.delete_book(book.book_id)
            raise
        self.db.update_book_status(book.book_id, BookStatus.EXTRACTED)
        logger.info(f"Ingested '{title}' with {len(pages)} pages")
        return self.db.require_book(book.book_id)

    def submit_ingest(self, title: str, pages: Sequence[Dict], author: str = ""):
        """Run ingest on the extraction pool."""
        return self._require_pools().submit(EXTRACTION, self.ingest, title, pages, author)

    def submit(self, book_id: str) -> Future:
        """Run the pipeline for a book on the default pool; returns a Future.

        A book that is already queued or running gets its existing Future back.
        """
        pools = self._require_pools()
        with self._lock:
            future = self._futures.get(book_id)
            if future is not None and not future.done():
                logger.info(f"Book {book_id} already submitted; reusing its run")
                return future
            future = pools.submit(DEFAULT, self.run_book, book_id)
            self._futures[book_id] = future
        return future

    def run_book(self, book_id: str) -> Optional[Book]:
        """Run every stage the book has not completed, in order.

        Returns:
            The book after processing (status ready_for_review, or failed with
            the stage and error recorded). None if the book was cancelled.

        Raises:
            InvalidStateError: the book is being processed by another run
        """
        with self._exclusive(book_id):
            return self._run_stages(book_id)

    def _run_stages(self, book_id: str) -> Optional[Book]:
        book = self.db.require_book(book_id)
        if book.status in (BookStatus.READY_FOR_REVIEW, BookStatus.PUBLISHED):
            logger.info(f"Book {book_id} already processed ({book.status.value})")
            return book
        if book.status not in _RUNNABLE_STATUSES:
            raise InvalidStateError(f"Book {book_id} has no extracted pages yet (status {book.status.value})")

        run = self.db.get_or_create_pipeline_run(book_id)
        pending = run.pending_stages
        if run.failed_stage:
            logger.info(f"Resuming book {book_id} at stage '{run.failed_stage}'")

        for stage in pending:
            if self.is_cancelled(book_id):
                logger.info(f"Book {book_id} cancelled; stopping before {stage.name.lower()}")
                return None

            logger.info(f"[{book_id}] {stage.name.lower()} stage starting")
            self.db.update_stage(book_id, stage, StageStatus.PROCESSING)
            try:
                self.stage_retry.call(
                    self._handlers[stage], book_id, label=f"{stage.name.lower()} stage"
                )
            except PipelineError as e:
                if self.is_cancelled(book_id):
                    logger.info(f"Ignoring failure of cancelled book {book_id}: {e}")
                    self._abandon(book_id, stage)
                    return None
                self._fail(book_id, stage, e)
                return self.db.get_book(book_id)
            except Exception as e:
                if self.is_cancelled(book_id):
                    logger.info(f"Ignoring failure of cancelled book {book_id}: {e}")
                    self._abandon(book_id, stage)
                    return None
                logger.exception(f"[{book_id}] Unexpected error in {stage.name.lower()} stage")
                self._fail(book_id, stage, e)
                raise

            if self.is_cancelled(book_id):
                logger.info(f"Book {book_id} cancelled during {stage.name.lower()}")
                self._abandon(book_id, stage)
                return None
            self.db.update_stage(book_id, stage, StageStatus.COMPLETED)
            self.db.update_book_status(book_id, BookStatus(stage.value))
            logger.info(f"[{book_id}] {stage.name.lower()} stage completed")

        self.db.update_book_status(book_id, BookStatus.READY_FOR_REVIEW)
        logger.info(f"✓ Book {book_id} ready for review")
        return self.db.get_book(book_id)

    def retry_book(self, book_id: str) -> Optional[Book]:
        """Re-enter the pipeline at the failed stage."""
        book = self.db.require_book(book_id)
        if book.status != BookStatus.FAILED:
            raise InvalidStateError(f"Book {book_id} is not failed (status {book.status.value})")
        return self.run_book(book_id)

    def reprocess(self, book_id: str, from_stage: PipelineStage) -> Optional[Book]:
        """Discard the output of `from_stage` and later stages, then run them again."""
        with self._exclusive(book_id):
            book = self.db.require_book(book_id)
            if book.is_published:
                raise InvalidStateError(f"Book {book_id} is published; unpublish it before reprocessing")
            if book.status == BookStatus.PENDING:
                raise InvalidStateError(f"Book {book_id} has no extracted pages yet")

            if from_stage == PipelineStage.CLASSIFY:
                self.db.delete_page_descriptors(book_id)
            # Every stage up to and including match feeds the assignments
            for scene in self.db.get_scenes(book_id):
                self.db.clear_assignments(scene.scene_id)

            self.db.reset_stages(book_id, from_stage)
            self.db.update_book_status(book_id, _STATUS_BEFORE[from_stage])
            logger.info(f"Reprocessing book {book_id} from {from_stage.name.lower()}")
            return self._run_stages(book_id)

    def is_running(self, book_id: str) -> bool:
        with self._lock:
            return book_id in self._running

    @contextmanager
    def _exclusive(self, book_id: str):
        """Hold the book for one run at a time.

        Leftover cancellation for the book is dropped on release, once no
        in-flight work for it remains.
        """
        with self._lock:
            if book_id in self._running:
                raise InvalidStateError(f"Book {book_id} is already being processed")
            self._running.add(book_id)
        try:
            yield
        finally:
            with self._lock:
                self._running.discard(book_id)
                self._cancelled.discard(book_id)

    # ==================== Cancellation ====================

    def cancel_book(self, book_id: str) -> None:
        """In-flight results for this book are dropped from now on."""
        with self._lock:
            self._cancelled.add(book_id)

    def is_cancelled(self, book_id: str) -> bool:
        with self._lock:
            return book_id in self._cancelled

    def delete_book(self, book_id: str) -> bool:
        """Cancel in-flight work and delete the book with everything it owns."""
        self.db.require_book(book_id)
        self.cancel_book(book_id)
        deleted = self.db.delete_book(book_id)
        with self._lock:
            # A running book drops its cancellation when the run releases it
            if book_id not in self._running:
                self._cancelled.discard(book_id)
            self._futures.pop(book_id, None)
        return deleted

    # ==================== Stages ====================

    def _classify_stage(self, book_id: str) -> None:
        pages = self.db.get_pages(book_id)
        if not pages:
            raise NoPagesError(f"Book {book_id} has no pages")

        stored = self.db.get_page_descriptors(book_id)
        todo = [p for p in pages if p.page_number not in stored]
        if stored:
            logger.info(f"[{book_id}] {len(stored)} pages already classified, {len(todo)} remaining")

        sent_to_model = 0
        for classified, called_model in self._classify_pages(book_id, todo):
            if called_model:
                sent_to_model += 1

        if self.is_cancelled(book_id):
            return

        descriptors = self.db.get_page_descriptors(book_id)
        degraded = sorted(n for n, c in descriptors.items() if c.degraded)
        self.db.merge_run_meta(book_id, {"degraded_pages": degraded})
        self.db.add_processing_cost(book_id, self.cost_estimator.classification_cost(sent_to_model))

        if degraded:
            logger.warning(f"[{book_id}] {len(degraded)} pages fell back to the default descriptor: {degraded}")
        logger.info(f"[{book_id}] Classified {len(todo)} pages ({sent_to_model} model requests)")

    def _classify_pages(self, book_id: str, pages: List[Page]) -> List[Tuple[ClassifiedPage, bool]]:
        if self.pools is None:
            results = [self._classify_page(book_id, page) for page in pages]
        else:
            futures = [self.pools.submit(AI_ANALYSIS, self._classify_page, book_id, page) for page in pages]
            results = [future.result() for future in as_completed(futures)]
        return [r for r in results if r is not None]

    def _classify_page(self, book_id: str, page: Page) -> Optional[Tuple[ClassifiedPage, bool]]:
        """Classify and store one page. Returns (result, whether the model was called)."""
        if self.is_cancelled(book_id):
            return None

        called_model = True
        try:
            descriptor = self.classification_retry.call(
                self.classifier.classify, page.text_content, label=f"page {page.page_number}"
            )
            classified = ClassifiedPage(page_number=page.page_number, descriptor=descriptor)
        except EmptyPageError as e:
            called_model = False
            classified = self._degraded(page, e)
        except (PermanentAPIError, ValidationError) as e:
            logger.warning(f"[{book_id}] Page {page.page_number} degraded to default descriptor: {e}")
            classified = self._degraded(page, e)

        if self.is_cancelled(book_id):
            return None
        self.db.save_page_descriptor(book_id, classified)
        return classified, called_model

    @staticmethod
    def _degraded(page: Page, error: Exception) -> ClassifiedPage:
        return ClassifiedPage(
            page_number=page.page_number,
            descriptor=DEFAULT_DESCRIPTOR,
            origin="default",
            failure_reason=f"{type(error).__name__}: {error}"
        )

    def _segment_stage(self, book_id: str) -> None:
        pages = self.db.get_pages(book_id)
        if not pages:
            raise NoPagesError(f"Book {book_id} has no pages")
        stored = self.db.get_page_descriptors(book_id)

        pairs = []
        for page in pages:
            classified = stored.get(page.page_number)
            if classified is None:
                logger.warning(f"[{book_id}] Page {page.page_number} has no stored descriptor; using default")
                descriptor = DEFAULT_DESCRIPTOR
            else:
                descriptor = classified.descriptor
            pairs.append(PageWithDescriptor(page_number=page.page_number, descriptor=descriptor))

        boundaries = self.segmenter.detect_boundaries((p.page_number, p.descriptor) for p in pairs)
        scenes = self.aggregator.create_scenes(book_id, pairs, boundaries)
        logger.info(f"[{book_id}] {len(pages)} pages -> {len(scenes)} scenes (boundaries {boundaries})")

    def _match_stage(self, book_id: str) -> None:
        catalog = self.db.list_soundscapes()
        scenes = self.db.get_scenes(book_id)

        matched, needs_review, unmatched = 0, 0, []
        for scene in scenes:
            if self.is_cancelled(book_id):
                return
            if self.db.get_current_assignment(scene.scene_id) is not None:
                continue

            result = self.matcher.match(scene.descriptor, catalog)
            if not result.matched:
                unmatched.append(scene.scene_number)
                continue

            try:
                self.db.insert_assignment(
                    scene_id=scene.scene_id,
                    soundscape_id=result.entry.soundscape_id,
                    audio_url=result.entry.url,
                    confidence_score=result.confidence_score,
                    source=AssignmentSource.AUTOMATED,
                    approved=False,
                    needs_review=result.needs_review
                )
            except PersistenceError as e:
                raise PersistenceError(f"Scene {scene.scene_number} ({scene.scene_id}): {e}") from e

            matched += 1
            if result.needs_review:
                needs_review += 1

        self.db.merge_run_meta(book_id, {"unmatched_scenes": unmatched})
        if unmatched:
            logger.warning(f"[{book_id}] No soundscape for scenes {unmatched}; flagged for review")
        logger.info(f"[{book_id}] Matched {matched} scenes ({needs_review} need review)")

    # ==================== Helpers ====================

    def _fail(self, book_id: str, stage: PipelineStage, error: Exception) -> None:
        message = f"{stage.name.lower()} stage failed: {error}"
        logger.error(f"✗ [{book_id}] {message}")
        self.db.update_stage(book_id, stage, StageStatus.FAILED, error=str(error))
        self.db.update_book_status(book_id, BookStatus.FAILED, error=message)

    def _abandon(self, book_id: str, stage: PipelineStage) -> None:
        """Return a stage interrupted by cancellation to pending."""
        try:
            self.db.update_stage(book_id, stage, StageStatus.PENDING)
        except NotFoundError:
            logger.info(f"Pipeline run for book {book_id} was deleted")

    def _require_pools(self) -> WorkerPools:
        if self.pools is None:
            raise RuntimeError("Orchestrator was created without worker pools")
        return self.pools
