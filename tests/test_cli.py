"""Test the click command line."""
import json

from click.testing import CliRunner

from main import cli
from storage.database import Database

from conftest import make_pages


def _invoke(db_path, *args):
    return CliRunner().invoke(cli, ["--db-path", str(db_path), *args])


def test_ingest_and_status(tmp_path):
    """Test ingesting extractor output and listing books."""
    db_path = tmp_path / "cli.db"
    pages_file = tmp_path / "pages.json"
    pages_file.write_text(json.dumps({"title": "Night Harbour", "author": "R. Tide", "pages": make_pages(3)}))

    result = _invoke(db_path, "ingest", "--pages", str(pages_file))

    assert result.exit_code == 0, result.output
    assert "Ingestion complete" in result.output
    books = Database(db_path).list_books()
    assert [(b.title, b.total_pages, b.status.value) for b in books] == [("Night Harbour", 3, "extracted")]

    result = _invoke(db_path, "status", books[0].book_id)
    assert result.exit_code == 0
    assert "extracted" in result.output


def test_catalog_add_and_list(tmp_path):
    """Test adding a soundscape and listing the catalog."""
    db_path = tmp_path / "cli.db"

    result = _invoke(db_path, "catalog-add", "--category", "nature", "--name", "Creek",
                     "--url", "https://cdn.example.com/creek.mp3", "--mood", "peaceful", "--intensity", "3")
    assert result.exit_code == 0, result.output

    result = _invoke(db_path, "catalog-list")
    assert result.exit_code == 0
    assert "Creek" in result.output

    entry = Database(db_path).list_soundscapes()[0]
    assert entry.tags.mood == "peaceful"
    assert entry.tags.intensity == 3.0


def test_pipeline_errors_exit_non_zero(tmp_path):
    """Test that pipeline errors print a message instead of a traceback."""
    db_path = tmp_path / "cli.db"

    result = _invoke(db_path, "publish", "missing-book")

    assert result.exit_code == 1
    assert "Error" in result.output
    assert "not found" in result.output


def test_export_scenes_command(tmp_path):
    """Test exporting an ingested book without scenes."""
    db_path = tmp_path / "cli.db"
    book = Database(db_path).insert_book("Unsegmented")
    output = tmp_path / "out" / "scenes.json"

    result = _invoke(db_path, "export-scenes", book.book_id, "--output", str(output))

    assert result.exit_code == 0, result.output
    assert json.loads(output.read_text())["scenes"] == []
