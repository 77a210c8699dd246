"""Configuration module for the soundscape pipeline."""
import json
import os
from pathlib import Path
from typing import Dict
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _load_weights(env_name: str, defaults: Dict[str, float]) -> Dict[str, float]:
    """Merge a JSON object from the environment over default weights."""
    raw = os.getenv(env_name)
    if not raw:
        return dict(defaults)
    merged = dict(defaults)
    merged.update({k: float(v) for k, v in json.loads(raw).items()})
    return merged


# Classification endpoint
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")
CLASSIFIER_MODEL = os.getenv("CLASSIFIER_MODEL", "claude-sonnet-4-5")
CLASSIFIER_TEMPERATURE = float(os.getenv("CLASSIFIER_TEMPERATURE", "0.3"))
CLASSIFIER_MAX_TOKENS = int(os.getenv("CLASSIFIER_MAX_TOKENS", "500"))
CLASSIFICATION_TIMEOUT_SECONDS = float(os.getenv("CLASSIFICATION_TIMEOUT_SECONDS", "30"))
MAX_PAGE_CHARS = int(os.getenv("MAX_PAGE_CHARS", "2000"))

# Scene segmentation
SCENE_BOUNDARY_THRESHOLD = float(os.getenv("SCENE_BOUNDARY_THRESHOLD", "0.6"))
SEGMENTATION_WEIGHTS = _load_weights("SEGMENTATION_WEIGHTS", {
    "setting": 0.30,
    "time_of_day": 0.20,
    "scene_type": 0.15,
    "dominant_elements": 0.15,
    "weather": 0.10,
    "atmosphere": 0.05,
    "mood": 0.05,
    "activity_level": 0.00,
})

# Soundscape matching (independent of the segmentation weights)
MATCH_CONFIDENCE_THRESHOLD = float(os.getenv("MATCH_CONFIDENCE_THRESHOLD", "0.7"))
MATCHING_WEIGHTS = _load_weights("MATCHING_WEIGHTS", {
    "mood": 0.40,
    "setting": 0.30,
    "intensity": 0.15,
    "weather": 0.10,
    "time_of_day": 0.05,
})

# Worker pools
EXTRACTION_CONCURRENCY = int(os.getenv("EXTRACTION_CONCURRENCY", "2"))
AI_ANALYSIS_CONCURRENCY = int(os.getenv("AI_ANALYSIS_CONCURRENCY", "5"))
DEFAULT_CONCURRENCY = int(os.getenv("DEFAULT_CONCURRENCY", "10"))

# Retry / backoff
RETRY_MAX_ATTEMPTS = int(os.getenv("RETRY_MAX_ATTEMPTS", "5"))
RETRY_BASE_DELAY = float(os.getenv("RETRY_BASE_DELAY", "1.0"))
RETRY_MAX_DELAY = float(os.getenv("RETRY_MAX_DELAY", "60"))
RETRY_BACKOFF_MULTIPLIER = 2

# Cost tracking (rough per-page estimate for a short classification call)
COST_PER_CLASSIFIED_PAGE = float(os.getenv("COST_PER_CLASSIFIED_PAGE", "0.00006"))

# Storage Configuration
DB_PATH = Path(os.getenv("DB_PATH", "./output/pipeline.db"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Ensure output directories exist
DB_PATH.parent.mkdir(parents=True, exist_ok=True)
