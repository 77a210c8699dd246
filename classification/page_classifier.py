"""Per-page scene classification using an LLM."""
import json
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from classification import prompts
from classification.clients import BaseClassificationClient
from classification.models import DESCRIPTOR_KEYS, PageDescriptor
from errors import EmptyPageError, MalformedResponseError, MissingAttributeError
from utils.logger import setup_logger
import config

logger = setup_logger(__name__)


def extract_json_object(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` substring of `text`.

    Braces inside JSON string literals are ignored. Returns None when no
    balanced object exists.
    """
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(text)):
            ch = text[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start:idx + 1]
        # Unbalanced from this opening brace; try the next one
        start = text.find("{", start + 1)
    return None


def parse_descriptor(raw_response: str) -> PageDescriptor:
    """Decode and validate a model response into a PageDescriptor.

    Raises:
        MalformedResponseError: no JSON object found, or it does not decode
        MissingAttributeError: one or more of the eight keys is absent
    """
    if not isinstance(raw_response, str):
        raise MalformedResponseError("Classification output is not text", repr(raw_response))

    json_str = extract_json_object(raw_response)
    if json_str is None:
        raise MalformedResponseError("No JSON object found in classification output", raw_response)

    try:
        data: Dict[str, Any] = json.loads(json_str)
    except json.JSONDecodeError as e:
        raise MalformedResponseError(f"Classification JSON did not decode: {e}", raw_response) from e

    if not isinstance(data, dict):
        raise MalformedResponseError("Classification JSON is not an object", raw_response)

    missing = [key for key in DESCRIPTOR_KEYS if key not in data]
    if missing:
        raise MissingAttributeError(missing)

    try:
        return PageDescriptor.coerce(data)
    except PydanticValidationError as e:
        raise MalformedResponseError(f"Classification values are not strings: {e}", raw_response) from e


class PageClassifier:
    """Classifies one page of text into a PageDescriptor."""

    def __init__(
        self,
        client: BaseClassificationClient,
        max_chars: int = config.MAX_PAGE_CHARS
    ):
        """Initialize classifier.

        Args:
            client: Classification endpoint client
            max_chars: Longer page text is truncated to this many characters
        """
        self.client = client
        self.max_chars = max_chars

    def classify(self, page_text: Optional[str]) -> PageDescriptor:
        """Classify a single page.

        Raises:
            EmptyPageError: text is empty or blank (endpoint not called)
            MalformedResponseError / MissingAttributeError: unusable response
            TransientAPIError / PermanentAPIError: propagated from the client
        """
        if page_text is None or not page_text.strip():
            raise EmptyPageError("Page text is empty")

        prompt = prompts.page_classification_prompt(page_text, self.max_chars)
        raw_response = self.client.complete(prompt)

        try:
            return parse_descriptor(raw_response)
        except (MalformedResponseError, MissingAttributeError) as e:
            logger.warning(f"Unusable classification output: {e}")
            raise
