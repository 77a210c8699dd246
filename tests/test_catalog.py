"""Test curated catalog import and lookup."""
import pytest

from errors import ValidationError
from soundscapes.catalog import SoundscapeCatalog, friendly_name, parse_bucket_path

BASE = "https://cdn.example.com"

LISTING = {
    "weather": [
        {"name": "Heavy_Rain.mp3", "url": f"{BASE}/audio/curated/weather/Heavy_Rain.mp3",
         "path": "audio/curated/weather/Heavy_Rain.mp3"},
    ],
    "fantasy": [
        {"name": "Fairy_Chimes.mp3", "url": f"{BASE}/audio/curated/fantasy/Fairy_Chimes.mp3"},
        {"name": "Dragon_Lair.ogg", "url": f"{BASE}/audio/curated/fantasy/Dragon_Lair.ogg"},
    ],
}


def test_friendly_name():
    """Test file name to display name conversion."""
    assert friendly_name("Fairy_Chimes.mp3") == "Fairy Chimes"
    assert friendly_name("ocean.wav") == "ocean"


def test_parse_bucket_path():
    """Test the curated bucket path shape."""
    assert parse_bucket_path("audio/curated/nature/Birdsong.mp3") == {
        "category": "nature", "file_name": "Birdsong.mp3"
    }
    for bad in ("audio/nature/Birdsong.mp3", "audio/curated/nature/", "sounds/curated/a/b.mp3",
                "audio/curated/a/b/c.mp3"):
        with pytest.raises(ValidationError):
            parse_bucket_path(bad)


def test_import_listing_order_and_tags(db):
    """Test that categories import in name order with curated tags attached."""
    curation = {
        "audio/curated/weather/Heavy_Rain.mp3": {"mood": "melancholic", "weather": "rainy", "intensity": 6},
        "Dragon_Lair.ogg": {"mood": "tense", "setting": "castle"},
    }

    created = SoundscapeCatalog(db).import_listing(LISTING, curation)

    assert [e.name for e in created] == ["Fairy Chimes", "Dragon Lair", "Heavy Rain"]
    entries = db.list_soundscapes()
    assert [e.name for e in entries] == ["Fairy Chimes", "Dragon Lair", "Heavy Rain"]
    assert entries[1].tags.setting == "castle"
    assert entries[2].tags.weather == "rainy"
    assert entries[2].category == "weather"
    assert entries[0].tags.mood is None


def test_import_listing_skips_known_urls(db):
    """Test that re-importing the same listing adds nothing."""
    catalog = SoundscapeCatalog(db)
    catalog.import_listing(LISTING)

    assert catalog.import_listing(LISTING) == []
    assert len(catalog.entries()) == 3


def test_import_from_bucket(db):
    """Test single-asset import by bucket path."""
    entry = SoundscapeCatalog(db).import_from_bucket(
        "audio/curated/nature/Morning_Birds.mp3", BASE + "/", {"setting": "forest"}
    )

    assert entry.category == "nature"
    assert entry.name == "Morning Birds"
    assert entry.url == f"{BASE}/audio/curated/nature/Morning_Birds.mp3"
    assert entry.tags.setting == "forest"


def test_search(db):
    """Test case-insensitive search by name or category."""
    catalog = SoundscapeCatalog(db)
    catalog.import_listing(LISTING)

    assert [e.name for e in catalog.search("DRAGON")] == ["Dragon Lair"]
    assert len(catalog.search("fantasy")) == 2
    assert catalog.search("ocean") == []
