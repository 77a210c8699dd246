"""Test the Anthropic-backed classification client without network access."""
from types import SimpleNamespace

import httpx
import pytest

from classification.clients import AnthropicClassificationClient
from errors import TransientAPIError

from conftest import descriptor_json


class FakeMessages:
    def __init__(self, outcome):
        self.outcome = outcome
        self.requests = []

    def create(self, **kwargs):
        self.requests.append(kwargs)
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def _client(outcome):
    messages = FakeMessages(outcome)
    return AnthropicClassificationClient(client=SimpleNamespace(messages=messages), model="test-model"), messages


def test_complete_joins_text_blocks():
    """Test that only text blocks make up the answer."""
    answer = descriptor_json()
    message = SimpleNamespace(
        content=[SimpleNamespace(type="text", text=answer[:10]), SimpleNamespace(type="tool_use"),
                 SimpleNamespace(type="text", text=answer[10:])],
        usage=SimpleNamespace(input_tokens=120, output_tokens=40)
    )
    client, messages = _client(message)

    assert client.complete("classify this") == answer
    assert client.complete("classify this") == answer
    assert messages.requests[0]["model"] == "test-model"
    assert messages.requests[0]["messages"] == [{"role": "user", "content": "classify this"}]


def test_timeout_is_transient():
    """Test that a transport timeout is reported as retryable."""
    client, _ = _client(httpx.ReadTimeout("read timed out"))

    with pytest.raises(TransientAPIError):
        client.complete("classify this")
