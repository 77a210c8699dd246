"""Shared fixtures: temporary database, scripted classification endpoint, seeded catalog."""
import json
import threading

import pytest

from classification.clients import BaseClassificationClient
from classification.models import PageDescriptor
from classification.page_classifier import PageClassifier
from pipeline.orchestrator import PipelineOrchestrator
from pipeline.retry_policy import RetryPolicy
from errors import (
    EmptyPageError,
    MalformedResponseError,
    MissingAttributeError,
    PersistenceError,
    TransientAPIError,
)
from soundscapes.catalog import SoundscapeCatalog
from storage.database import Database

FOREST = {
    "mood": "peaceful",
    "setting": "forest",
    "time_of_day": "morning",
    "weather": "clear",
    "activity_level": "calm",
    "atmosphere": "contemplative",
    "scene_type": "description",
    "dominant_elements": "birds, wind",
}

TAVERN = {
    "mood": "joyful",
    "setting": "tavern",
    "time_of_day": "night",
    "weather": "rainy",
    "activity_level": "high",
    "atmosphere": "cozy",
    "scene_type": "dialogue",
    "dominant_elements": "crowd, music",
}


def descriptor(base=None, **overrides) -> PageDescriptor:
    values = dict(base or FOREST)
    values.update(overrides)
    return PageDescriptor(**values)


def descriptor_json(base=None, **overrides) -> str:
    values = dict(base or FOREST)
    values.update(overrides)
    return json.dumps(values)


def page_text(page_number: int, body: str = "The trees whispered.") -> str:
    return f"[[page-{page_number}]] {body}"


def make_pages(count: int):
    return [{"page_number": n, "text_content": page_text(n)} for n in range(1, count + 1)]


class ScriptedClient(BaseClassificationClient):
    """Answers by looking for a page marker in the prompt.

    A scripted value may be a response string, an exception instance (raised)
    or a list of either, consumed one call at a time.
    """

    def __init__(self, script=None, default=None):
        self.script = dict(script or {})
        self.default = default if default is not None else descriptor_json()
        self.calls = []
        self._lock = threading.Lock()

    def complete(self, prompt: str) -> str:
        with self._lock:
            self.calls.append(prompt)
            response = self.default
            for marker, scripted in self.script.items():
                if marker in prompt:
                    if isinstance(scripted, list):
                        response = scripted.pop(0) if len(scripted) > 1 else scripted[0]
                    else:
                        response = scripted
                    break
        if isinstance(response, Exception):
            raise response
        return response

    def calls_for(self, page_number: int) -> int:
        marker = f"[[page-{page_number}]]"
        return sum(1 for prompt in self.calls if marker in prompt)


def no_sleep(_seconds: float) -> None:
    pass


def fast_classification_retry(max_attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max_attempts,
        retry_on=(TransientAPIError, MalformedResponseError, MissingAttributeError),
        never_retry=(EmptyPageError,),
        sleep=no_sleep
    )


def fast_stage_retry(max_attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max_attempts,
        retry_on=(PersistenceError, TransientAPIError),
        sleep=no_sleep
    )


@pytest.fixture
def db(tmp_path):
    return Database(tmp_path / "pipeline.db")


@pytest.fixture
def client():
    return ScriptedClient()


@pytest.fixture
def catalog(db):
    """Two-entry catalog: a forest ambience and a tavern ambience."""
    soundscapes = SoundscapeCatalog(db)
    forest = soundscapes.add(
        "nature", "Forest Morning", "https://cdn.example.com/audio/curated/nature/Forest_Morning.mp3",
        {"mood": "peaceful", "setting": "forest", "intensity": 2, "weather": "clear", "time_of_day": "morning"}
    )
    tavern = soundscapes.add(
        "indoor", "Busy Tavern", "https://cdn.example.com/audio/curated/indoor/Busy_Tavern.mp3",
        {"mood": "joyful", "setting": "tavern", "intensity": 8, "weather": "rainy", "time_of_day": "night"}
    )
    return {"forest": forest, "tavern": tavern}


@pytest.fixture
def orchestrator(db, client):
    return PipelineOrchestrator(
        db,
        classifier=PageClassifier(client),
        classification_retry=fast_classification_retry(),
        stage_retry=fast_stage_retry()
    )
