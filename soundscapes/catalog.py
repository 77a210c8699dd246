"""Curated soundscape catalog management."""
from pathlib import PurePosixPath
from typing import Any, Dict, List, Mapping, Optional, Sequence

from errors import ValidationError
from soundscapes.models import CatalogEntry, SoundscapeTags
from utils.logger import setup_logger

logger = setup_logger(__name__)

CURATED_PREFIX = ("audio", "curated")


def friendly_name(file_name: str) -> str:
    """'Fairy_Chimes.mp3' -> 'Fairy Chimes'."""
    return PurePosixPath(file_name).stem.replace("_", " ")


def parse_bucket_path(bucket_path: str) -> Dict[str, str]:
    """Split 'audio/curated/{category}/{file}' into its parts.

    Raises:
        ValidationError: path does not have that shape
    """
    parts = bucket_path.strip("/").split("/")
    if len(parts) != 4 or tuple(parts[:2]) != CURATED_PREFIX or not parts[2] or not parts[3]:
        raise ValidationError(
            f"Invalid bucket path format: {bucket_path}. Expected: audio/curated/{{category}}/{{filename}}"
        )
    return {"category": parts[2], "file_name": parts[3]}


class SoundscapeCatalog:
    """Read/write access to the curated catalog stored in the database."""

    def __init__(self, db):
        """
        Args:
            db: Database instance (storage.database.Database)
        """
        self.db = db

    def entries(self) -> List[CatalogEntry]:
        """All entries in canonical listing order."""
        return self.db.list_soundscapes()

    def add(
        self,
        category: str,
        name: str,
        url: str,
        tags: Optional[Mapping[str, Any]] = None
    ) -> CatalogEntry:
        """Add one asset to the catalog."""
        entry_tags = SoundscapeTags(**(tags or {}))
        entry = self.db.insert_soundscape(category=category, name=name, url=url, tags=entry_tags)
        logger.info(f"Added soundscape '{name}' ({category})")
        return entry

    def import_listing(
        self,
        listing: Mapping[str, Sequence[Mapping[str, Any]]],
        curation: Optional[Mapping[str, Mapping[str, Any]]] = None
    ) -> List[CatalogEntry]:
        """Import a storage listing grouped by category.

        Args:
            listing: {category: [{"name": ..., "url": ..., "path": ...}, ...]}
            curation: tags keyed by bucket path, url or file name

        Returns:
            Newly created entries (assets whose url is already present are skipped)
        """
        curation = curation or {}
        existing_urls = {e.url for e in self.entries()}
        created = []

        for category in sorted(listing):
            for file_info in listing[category]:
                url = file_info["url"]
                if url in existing_urls:
                    logger.info(f"Skipping already catalogued soundscape: {url}")
                    continue
                file_name = file_info.get("name") or PurePosixPath(url).name
                tags = self._curation_for(curation, file_info, file_name)
                created.append(self.add(category, friendly_name(file_name), url, tags))
                existing_urls.add(url)

        logger.info(f"Imported {len(created)} soundscapes from {len(listing)} categories")
        return created

    def import_from_bucket(
        self,
        bucket_path: str,
        base_url: str,
        tags: Optional[Mapping[str, Any]] = None
    ) -> CatalogEntry:
        """Import a single curated asset addressed by its bucket path."""
        parts = parse_bucket_path(bucket_path)
        url = f"{base_url.rstrip('/')}/{bucket_path.strip('/')}"
        return self.add(parts["category"], friendly_name(parts["file_name"]), url, tags)

    def search(self, query: str) -> List[CatalogEntry]:
        """Entries whose name or category contains `query` (case-insensitive)."""
        return self.db.search_soundscapes(query)

    @staticmethod
    def _curation_for(
        curation: Mapping[str, Mapping[str, Any]],
        file_info: Mapping[str, Any],
        file_name: str
    ) -> Mapping[str, Any]:
        for key in (file_info.get("path"), file_info.get("url"), file_name):
            if key and key in curation:
                return curation[key]
        return {}
