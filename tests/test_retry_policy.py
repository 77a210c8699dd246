"""Test the retry/backoff policy."""
import pytest

from errors import EmptyPageError, MalformedResponseError, PermanentAPIError, TransientAPIError
from pipeline.retry_policy import RetryPolicy


class Flaky:
    """Fails with the given errors, then returns 'ok'."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


def _policy(**kwargs):
    sleeps = []
    defaults = dict(max_attempts=5, base_delay=1.0, max_delay=60, multiplier=2,
                    retry_on=(TransientAPIError,), sleep=sleeps.append)
    defaults.update(kwargs)
    return RetryPolicy(**defaults), sleeps


def test_succeeds_after_transient_failures():
    """Test recovery within the allowed attempts."""
    policy, sleeps = _policy()
    func = Flaky(TransientAPIError("timeout"), TransientAPIError("429"))

    assert policy.call(func) == "ok"
    assert func.calls == 3
    assert sleeps == [1.0, 2.0]


def test_exhaustion_raises_permanent_error():
    """Test that running out of attempts is deterministic and permanent."""
    policy, sleeps = _policy()
    func = Flaky(*[TransientAPIError(f"fail {n}") for n in range(10)])

    with pytest.raises(PermanentAPIError) as exc_info:
        policy.call(func, label="page 7")

    assert func.calls == 5
    assert sleeps == [1.0, 2.0, 4.0, 8.0]
    assert "page 7" in str(exc_info.value)
    assert isinstance(exc_info.value.__cause__, TransientAPIError)


def test_non_retryable_errors_propagate_immediately():
    """Test that unlisted errors are not retried."""
    policy, sleeps = _policy()
    func = Flaky(ValueError("bug"))

    with pytest.raises(ValueError):
        policy.call(func)

    assert func.calls == 1
    assert sleeps == []


def test_never_retry_overrides_retry_on():
    """Test exclusion of a subclass from an otherwise retryable family."""
    policy, _ = _policy(retry_on=(TransientAPIError, MalformedResponseError, EmptyPageError),
                        never_retry=(EmptyPageError,))
    func = Flaky(EmptyPageError("blank"))

    with pytest.raises(EmptyPageError):
        policy.call(func)
    assert func.calls == 1


def test_delay_is_capped():
    """Test the backoff formula and its cap."""
    policy, _ = _policy(max_delay=5)

    assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5, 5]


def test_sleeps_follow_delay_schedule():
    """Test that the waits between attempts are the capped backoff delays."""
    policy, sleeps = _policy(max_delay=3)
    func = Flaky(*[TransientAPIError(f"fail {n}") for n in range(4)])

    assert policy.call(func) == "ok"
    assert sleeps == [policy.delay_for(n) for n in range(1, 5)] == [1.0, 2.0, 3, 3]


def test_passes_arguments_through():
    """Test that positional and keyword arguments reach the callable."""
    policy, _ = _policy()

    assert policy.call(lambda a, b=0: a + b, 2, b=3) == 5


def test_rejects_zero_attempts():
    """Test validation of the attempt count."""
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
