"""LLM prompt templates for page classification."""
from classification.models import DESCRIPTOR_KEYS, VOCABULARY


_ATTRIBUTE_HINTS = {
    "mood": "The emotional tone",
    "setting": "The location type",
    "time_of_day": "When the scene takes place",
    "weather": "Weather conditions if mentioned",
    "activity_level": "The pace of action",
    "atmosphere": "Overall feeling",
    "scene_type": "What kind of passage this is",
    "dominant_elements": "Up to three ambient sound sources, comma-separated",
}


def _vocabulary_lines() -> str:
    lines = []
    for key in DESCRIPTOR_KEYS:
        choices = ", ".join(f'"{v}"' for v in VOCABULARY[key])
        lines.append(f"- {key}: {_ATTRIBUTE_HINTS[key]} (one of: {choices})")
    return "\n".join(lines)


def page_classification_prompt(page_text: str, max_chars: int) -> str:
    """Generate prompt for classifying a single page.

    Args:
        page_text: Page text (truncated to max_chars)
        max_chars: Maximum number of characters sent to the model

    Returns:
        Formatted prompt string
    """
    excerpt = page_text[:max_chars]
    example = ",\n".join(f'  "{key}": "value"' for key in DESCRIPTOR_KEYS)

    return f"""Analyze the following text excerpt from a book and classify the scene with descriptive attributes. The result drives the choice of an ambient soundscape played while the page is read.

Text:
{excerpt}

Provide a JSON response with the following attributes:
{_vocabulary_lines()}

Respond ONLY with valid JSON in this exact format:
{{
{example}
}}"""
