"""
Unit tests for the backoff policy.
"""
import random

import pytest

from mailsift.core.errors import PermanentAuthError, TransientProviderError
from mailsift.core.retry_manager import BackoffPolicy


def _transient(error: BaseException) -> bool:
    return isinstance(error, TransientProviderError)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


class TestBackoffPolicy:
    """Test exponential backoff with jitter"""

    def test_delay_without_jitter(self):
        """Test delays double and are capped"""
        policy = BackoffPolicy(base_delay=1.0, max_delay=5.0, jitter=0.0)
        assert [policy.calculate_delay(a) for a in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_delay_jitter_bounds(self):
        """Test jitter stays within the configured fraction"""
        policy = BackoffPolicy(base_delay=2.0, jitter=0.25, rng=random.Random(7))
        for _ in range(50):
            assert 1.5 <= policy.calculate_delay(0) <= 2.5

    def test_invalid_configuration(self):
        """Test bad attempts/jitter are rejected"""
        with pytest.raises(ValueError):
            BackoffPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            BackoffPolicy(jitter=1.5)

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self):
        """Test transient failures are retried with delays"""
        sleep = RecordingSleep()
        policy = BackoffPolicy(max_attempts=3, base_delay=1.0, jitter=0.0, sleep=sleep)
        attempts = []

        async def operation():
            attempts.append(1)
            if len(attempts) < 3:
                raise TransientProviderError("timeout")
            return "ok"

        assert await policy.run(operation, _transient) == "ok"
        assert len(attempts) == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self):
        """Test non-retryable errors surface immediately"""
        sleep = RecordingSleep()
        policy = BackoffPolicy(max_attempts=5, sleep=sleep)
        attempts = []

        async def operation():
            attempts.append(1)
            raise PermanentAuthError("bad password")

        with pytest.raises(PermanentAuthError):
            await policy.run(operation, _transient)
        assert len(attempts) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        """Test the last transient error is raised after max_attempts"""
        policy = BackoffPolicy(max_attempts=2, jitter=0.0, sleep=RecordingSleep())
        attempts = []

        async def operation():
            attempts.append(1)
            raise TransientProviderError(f"attempt {len(attempts)}")

        with pytest.raises(TransientProviderError, match="attempt 2"):
            await policy.run(operation, _transient)
        assert len(attempts) == 2
