"""SQLite database operations for the pipeline."""
import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from classification.models import ClassifiedPage, PageDescriptor
from errors import NotFoundError, PersistenceError, SceneInsertFailed, ValidationError
from pipeline.models import Book, BookStatus, PipelineRun, PipelineStage, STAGE_ORDER, StageStatus
from scenes.models import Page, Scene, SceneDraft
from soundscapes.models import (
    AssignmentSource,
    CatalogEntry,
    SceneSoundscapeAssignment,
    SoundscapeTags,
)
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Database:
    """Manages SQLite database operations."""

    def __init__(self, db_path: Path = config.DB_PATH):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_schema()

    def _initialize_schema(self):
        """Create tables if they don't exist."""
        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path, 'r') as f:
            schema_sql = f.read()

        with self._get_connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(schema_sql)
            conn.commit()

        logger.debug(f"Database initialized at {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections.

        Any sqlite3 error surfaces as PersistenceError.
        """
        try:
            conn = sqlite3.connect(self.db_path, timeout=30)
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not open database {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(f"Database operation failed: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def _transaction(self):
        """Connection whose writes commit together or not at all."""
        with self._get_connection() as conn:
            try:
                yield conn
                conn.commit()
            except BaseException:
                conn.rollback()
                raise

    # ==================== Books ====================

    def insert_book(self, title: str, author: str = "", book_id: Optional[str] = None) -> Book:
        """Insert a new book record.

        Args:
            title: Book title
            author: Author name
            book_id: Explicit id (a UUID is generated when omitted)

        Returns:
            The created Book
        """
        book = Book(book_id=book_id or str(uuid.uuid4()), title=title, author=author, created_at=utc_now())

        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO books (id, title, author, total_pages, status, created_at)
                VALUES (?, ?, ?, 0, ?, ?)
                """,
                (book.book_id, book.title, book.author, book.status.value, book.created_at)
            )

        logger.info(f"Inserted book: {title} (ID: {book.book_id})")
        return book

    def get_book(self, book_id: str) -> Optional[Book]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
            return self._row_to_book(row) if row else None

    def require_book(self, book_id: str) -> Book:
        """Like get_book, but raises NotFoundError."""
        book = self.get_book(book_id)
        if book is None:
            raise NotFoundError(f"Book {book_id} not found")
        return book

    def list_books(self) -> List[Book]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM books ORDER BY created_at DESC").fetchall()
            return [self._row_to_book(row) for row in rows]

    def update_book_status(self, book_id: str, status: BookStatus, error: Optional[str] = None) -> None:
        """Update processing status; the stored error is replaced (or cleared)."""
        with self._transaction() as conn:
            conn.execute(
                "UPDATE books SET status = ?, processing_error = ?, is_published = ? WHERE id = ?",
                (status.value, error, int(status == BookStatus.PUBLISHED), book_id)
            )

    def add_processing_cost(self, book_id: str, amount: float) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE books SET processing_cost = processing_cost + ? WHERE id = ?",
                (amount, book_id)
            )

    def delete_book(self, book_id: str) -> bool:
        """Delete a book; pages, scenes, assignments and run cascade."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info(f"Deleted book {book_id}")
        return deleted

    # ==================== Pages ====================

    def insert_pages(self, book_id: str, pages: Sequence[Dict[str, Any]]) -> int:
        """Bulk insert extracted pages.

        Args:
            book_id: Book UUID
            pages: [{"page_number": int, "text_content": str}, ...]

        Returns:
            Number of pages stored
        """
        numbers = [int(p["page_number"]) for p in pages]
        if len(numbers) != len(set(numbers)):
            raise ValidationError(f"Duplicate page numbers for book {book_id}")
        if any(n < 1 for n in numbers):
            raise ValidationError("Page numbers are 1-based")
        if sorted(numbers) != list(range(1, len(numbers) + 1)):
            raise ValidationError(f"Page numbers for book {book_id} must run 1..{len(numbers)} without gaps")

        rows = [(book_id, int(p["page_number"]), p.get("text_content") or "") for p in pages]
        with self._transaction() as conn:
            conn.executemany(
                "INSERT INTO pages (book_id, page_number, text_content) VALUES (?, ?, ?)",
                rows
            )
            conn.execute(
                "UPDATE books SET total_pages = (SELECT COUNT(*) FROM pages WHERE book_id = ?) WHERE id = ?",
                (book_id, book_id)
            )

        logger.info(f"Inserted {len(rows)} pages for book {book_id}")
        return len(rows)

    def get_pages(self, book_id: str) -> List[Page]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM pages WHERE book_id = ? ORDER BY page_number",
                (book_id,)
            ).fetchall()
            return [Page(**dict(row)) for row in rows]

    # ==================== Page descriptors ====================

    def save_page_descriptor(self, book_id: str, classified: ClassifiedPage) -> None:
        """Store (or replace) one page's classification."""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO page_descriptors
                    (book_id, page_number, descriptor_json, origin, failure_reason, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    book_id,
                    classified.page_number,
                    json.dumps(classified.descriptor.to_dict()),
                    classified.origin,
                    classified.failure_reason,
                    utc_now(),
                )
            )

    def get_page_descriptors(self, book_id: str) -> Dict[int, ClassifiedPage]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM page_descriptors WHERE book_id = ? ORDER BY page_number",
                (book_id,)
            ).fetchall()

        return {
            row["page_number"]: ClassifiedPage(
                page_number=row["page_number"],
                descriptor=PageDescriptor(**json.loads(row["descriptor_json"])),
                origin=row["origin"],
                failure_reason=row["failure_reason"],
            )
            for row in rows
        }

    def delete_page_descriptors(self, book_id: str) -> int:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM page_descriptors WHERE book_id = ?", (book_id,))
            return cursor.rowcount

    # ==================== Scenes ====================

    def replace_scenes(self, book_id: str, drafts: Sequence[SceneDraft]) -> List[Scene]:
        """Delete the book's scenes and insert `drafts`, linking pages.

        Existing assignments go with the deleted scenes. Everything runs in
        one transaction.

        Raises:
            SceneInsertFailed: any insert or update failed (nothing is kept)
        """
        created_at = utc_now()
        scenes = [
            Scene(scene_id=str(uuid.uuid4()), created_at=created_at, **draft.model_dump())
            for draft in drafts
        ]

        try:
            with self._transaction() as conn:
                conn.execute("UPDATE pages SET scene_id = NULL WHERE book_id = ?", (book_id,))
                conn.execute("DELETE FROM scenes WHERE book_id = ?", (book_id,))
                for scene in scenes:
                    conn.execute(
                        """
                        INSERT INTO scenes (id, book_id, scene_number, start_page, end_page, descriptor_json, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            scene.scene_id,
                            book_id,
                            scene.scene_number,
                            scene.start_page,
                            scene.end_page,
                            json.dumps(scene.descriptor.to_dict()),
                            scene.created_at,
                        )
                    )
                    # One range update per scene, not one write per page
                    conn.execute(
                        """
                        UPDATE pages SET scene_id = ?
                        WHERE book_id = ? AND page_number BETWEEN ? AND ?
                        """,
                        (scene.scene_id, book_id, scene.start_page, scene.end_page)
                    )
        except PersistenceError as e:
            logger.error(f"Scene creation rolled back for book {book_id}: {e}")
            raise SceneInsertFailed(f"Scene insert failed for book {book_id}: {e}") from e

        return scenes

    def get_scenes(self, book_id: str) -> List[Scene]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM scenes WHERE book_id = ? ORDER BY start_page",
                (book_id,)
            ).fetchall()
            return [self._row_to_scene(row) for row in rows]

    def get_scene(self, scene_id: str) -> Optional[Scene]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM scenes WHERE id = ?", (scene_id,)).fetchone()
            return self._row_to_scene(row) if row else None

    def require_scene(self, scene_id: str) -> Scene:
        scene = self.get_scene(scene_id)
        if scene is None:
            raise NotFoundError(f"Scene {scene_id} not found")
        return scene

    def get_scene_for_page(self, book_id: str, page_number: int) -> Optional[Scene]:
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT s.* FROM pages p JOIN scenes s ON s.id = p.scene_id
                WHERE p.book_id = ? AND p.page_number = ?
                """,
                (book_id, page_number)
            ).fetchone()
            return self._row_to_scene(row) if row else None

    # ==================== Soundscape catalog ====================

    def insert_soundscape(self, category: str, name: str, url: str, tags: SoundscapeTags) -> CatalogEntry:
        soundscape_id = str(uuid.uuid4())
        with self._transaction() as conn:
            position = conn.execute("SELECT COALESCE(MAX(position), 0) + 1 FROM soundscapes").fetchone()[0]
            conn.execute(
                """
                INSERT INTO soundscapes (id, position, category, name, url, tags_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (soundscape_id, position, category, name, url,
                 json.dumps(tags.model_dump(exclude_none=True)), utc_now())
            )

        return CatalogEntry(
            soundscape_id=soundscape_id, category=category, name=name, url=url, tags=tags, position=position
        )

    def list_soundscapes(self) -> List[CatalogEntry]:
        """Catalog in canonical listing order."""
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM soundscapes ORDER BY position").fetchall()
            return [self._row_to_entry(row) for row in rows]

    def get_soundscape(self, soundscape_id: str) -> Optional[CatalogEntry]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM soundscapes WHERE id = ?", (soundscape_id,)).fetchone()
            return self._row_to_entry(row) if row else None

    def search_soundscapes(self, query: str) -> List[CatalogEntry]:
        """Entries whose name or category contains `query`, case-insensitively."""
        pattern = f"%{query.strip().lower()}%"
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM soundscapes
                WHERE lower(name) LIKE ? OR lower(category) LIKE ?
                ORDER BY position
                """,
                (pattern, pattern)
            ).fetchall()
            return [self._row_to_entry(row) for row in rows]

    def delete_soundscape(self, soundscape_id: str) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM soundscapes WHERE id = ?", (soundscape_id,))
            return cursor.rowcount > 0

    # ==================== Assignments ====================

    def insert_assignment(
        self,
        scene_id: str,
        soundscape_id: Optional[str],
        audio_url: str,
        confidence_score: float,
        source: AssignmentSource,
        approved: bool = False,
        needs_review: bool = False
    ) -> SceneSoundscapeAssignment:
        """Append an assignment; earlier rows for the scene are untouched."""
        assignment = SceneSoundscapeAssignment(
            assignment_id=str(uuid.uuid4()),
            scene_id=scene_id,
            soundscape_id=soundscape_id,
            audio_url=audio_url,
            confidence_score=confidence_score,
            source=source,
            approved=approved,
            needs_review=needs_review,
            created_at=utc_now(),
        )

        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO scene_soundscapes
                    (id, scene_id, soundscape_id, audio_url, confidence_score, source, approved, needs_review, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    assignment.assignment_id,
                    scene_id,
                    soundscape_id,
                    audio_url,
                    confidence_score,
                    assignment.source.value,
                    int(approved),
                    int(needs_review),
                    assignment.created_at,
                )
            )

        return assignment

    def get_assignments(self, scene_id: str) -> List[SceneSoundscapeAssignment]:
        """Assignment history for a scene, oldest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM scene_soundscapes WHERE scene_id = ? ORDER BY seq",
                (scene_id,)
            ).fetchall()
            return [self._row_to_assignment(row) for row in rows]

    def get_current_assignment(self, scene_id: str) -> Optional[SceneSoundscapeAssignment]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM scene_soundscapes WHERE scene_id = ? ORDER BY seq DESC LIMIT 1",
                (scene_id,)
            ).fetchone()
            return self._row_to_assignment(row) if row else None

    def clear_assignments(self, scene_id: str) -> int:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM scene_soundscapes WHERE scene_id = ?", (scene_id,))
            return cursor.rowcount

    def find_published_references(self, soundscape_id: str) -> List[Tuple[str, str]]:
        """(book_id, scene_id) pairs of published books whose current assignment uses this soundscape."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT s.book_id, a.scene_id
                FROM scene_soundscapes a
                JOIN scenes s ON s.id = a.scene_id
                JOIN books b ON b.id = s.book_id
                WHERE a.soundscape_id = ?
                  AND b.is_published = 1
                  AND a.seq = (SELECT MAX(seq) FROM scene_soundscapes WHERE scene_id = a.scene_id)
                """,
                (soundscape_id,)
            ).fetchall()
            return [(row["book_id"], row["scene_id"]) for row in rows]

    # ==================== Pipeline runs ====================

    def get_pipeline_run(self, book_id: str) -> Optional[PipelineRun]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM pipeline_runs WHERE book_id = ?", (book_id,)).fetchone()
            return self._row_to_run(row) if row else None

    def get_or_create_pipeline_run(self, book_id: str) -> PipelineRun:
        existing = self.get_pipeline_run(book_id)
        if existing:
            return existing

        run = PipelineRun(run_id=str(uuid.uuid4()), book_id=book_id, started_at=utc_now(), updated_at=utc_now())
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO pipeline_runs (id, book_id, stages_json, meta_json, started_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (run.run_id, book_id, json.dumps(self._stages_to_json(run.stages)), "{}",
                 run.started_at, run.updated_at)
            )
        return self.get_pipeline_run(book_id)

    def update_stage(
        self,
        book_id: str,
        stage: PipelineStage,
        status: StageStatus,
        error: Optional[str] = None
    ) -> PipelineRun:
        """Set one stage's status. A FAILED status records the stage and error;
        any other status clears a previous failure."""
        with self._transaction() as conn:
            row = conn.execute("SELECT stages_json FROM pipeline_runs WHERE book_id = ?", (book_id,)).fetchone()
            if row is None:
                raise NotFoundError(f"No pipeline run for book {book_id}")
            stages = json.loads(row["stages_json"])
            stages[stage.value] = status.value
            failed = status == StageStatus.FAILED
            conn.execute(
                """
                UPDATE pipeline_runs
                SET stages_json = ?, failed_stage = ?, error = ?, updated_at = ?
                WHERE book_id = ?
                """,
                (json.dumps(stages), stage.value if failed else None, error if failed else None,
                 utc_now(), book_id)
            )
        return self.get_pipeline_run(book_id)

    def reset_stages(self, book_id: str, from_stage: PipelineStage) -> PipelineRun:
        """Mark `from_stage` and every later stage as pending."""
        run = self.get_or_create_pipeline_run(book_id)
        start = STAGE_ORDER.index(from_stage)
        stages = {k: v.value for k, v in run.stages.items()}
        for stage in STAGE_ORDER[start:]:
            stages[stage.value] = StageStatus.PENDING.value

        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE pipeline_runs
                SET stages_json = ?, failed_stage = NULL, error = NULL, updated_at = ?
                WHERE book_id = ?
                """,
                (json.dumps(stages), utc_now(), book_id)
            )
        return self.get_pipeline_run(book_id)

    def merge_run_meta(self, book_id: str, meta: Dict[str, Any]) -> None:
        with self._transaction() as conn:
            row = conn.execute("SELECT meta_json FROM pipeline_runs WHERE book_id = ?", (book_id,)).fetchone()
            if row is None:
                raise NotFoundError(f"No pipeline run for book {book_id}")
            merged = json.loads(row["meta_json"] or "{}")
            merged.update(meta)
            conn.execute(
                "UPDATE pipeline_runs SET meta_json = ?, updated_at = ? WHERE book_id = ?",
                (json.dumps(merged), utc_now(), book_id)
            )

    # ==================== Row mapping ====================

    @staticmethod
    def _stages_to_json(stages: Dict[str, StageStatus]) -> Dict[str, str]:
        return {k: StageStatus(v).value for k, v in stages.items()}

    @staticmethod
    def _row_to_book(row: sqlite3.Row) -> Book:
        return Book(
            book_id=row["id"],
            title=row["title"],
            author=row["author"],
            total_pages=row["total_pages"],
            status=BookStatus(row["status"]),
            processing_error=row["processing_error"],
            processing_cost=row["processing_cost"],
            is_published=bool(row["is_published"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_scene(row: sqlite3.Row) -> Scene:
        return Scene(
            scene_id=row["id"],
            book_id=row["book_id"],
            scene_number=row["scene_number"],
            start_page=row["start_page"],
            end_page=row["end_page"],
            descriptor=PageDescriptor(**json.loads(row["descriptor_json"])),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> CatalogEntry:
        return CatalogEntry(
            soundscape_id=row["id"],
            category=row["category"],
            name=row["name"],
            url=row["url"],
            tags=SoundscapeTags(**json.loads(row["tags_json"] or "{}")),
            position=row["position"],
        )

    @staticmethod
    def _row_to_assignment(row: sqlite3.Row) -> SceneSoundscapeAssignment:
        return SceneSoundscapeAssignment(
            assignment_id=row["id"],
            scene_id=row["scene_id"],
            soundscape_id=row["soundscape_id"],
            audio_url=row["audio_url"],
            confidence_score=row["confidence_score"],
            source=AssignmentSource(row["source"]),
            approved=bool(row["approved"]),
            needs_review=bool(row["needs_review"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> PipelineRun:
        return PipelineRun(
            run_id=row["id"],
            book_id=row["book_id"],
            stages={k: StageStatus(v) for k, v in json.loads(row["stages_json"]).items()},
            failed_stage=row["failed_stage"],
            error=row["error"],
            meta=json.loads(row["meta_json"] or "{}"),
            started_at=row["started_at"],
            updated_at=row["updated_at"],
        )
