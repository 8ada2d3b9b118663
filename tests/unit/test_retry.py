"""
Retry Executor Tests

Bounded exponential backoff: max_retries + 1 attempts, delay
base_delay * backoff_factor ** (attempt - 1), no jitter.
"""

import pytest

from utils.errors import RetriesExhausted
from utils.retry import RetryPolicy, execute


class Flaky:
    """Operation failing a fixed number of times before succeeding."""

    def __init__(self, failures: int, result: str = "ok") -> None:
        self.failures = failures
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError(f"failure {self.calls}")
        return self.result


class TestExecute:
    async def test_succeeds_on_fourth_call_after_three_failures(self, sleep):
        operation = Flaky(failures=3, result="page")

        result = await execute(operation, max_retries=3, base_delay=0.1, sleep=sleep)

        assert result == "page"
        assert operation.calls == 4

    async def test_always_failing_operation_exhausts_after_max_retries_plus_one(self, sleep):
        operation = Flaky(failures=100)

        with pytest.raises(RetriesExhausted) as exc_info:
            await execute(operation, max_retries=3, base_delay=0.1, sleep=sleep)

        assert operation.calls == 4
        assert exc_info.value.attempts == 4
        assert isinstance(exc_info.value.last_error, ConnectionError)
        assert str(exc_info.value.last_error) == "failure 4"

    async def test_delays_grow_exponentially_without_jitter(self, sleep):
        """base_delay=100, factor=2.0 gives 100, 200, 400 before attempts 2, 3, 4."""
        with pytest.raises(RetriesExhausted):
            await execute(Flaky(failures=100), max_retries=3, base_delay=100, backoff_factor=2.0, sleep=sleep)

        assert sleep.delays == [100, 200, 400]

    async def test_on_retry_receives_attempt_delay_and_error(self, sleep):
        seen = []

        await execute(
            Flaky(failures=2),
            max_retries=3,
            base_delay=0.5,
            backoff_factor=3.0,
            on_retry=lambda attempt, delay, error: seen.append((attempt, delay, str(error))),
            sleep=sleep,
        )

        assert seen == [(1, 0.5, "failure 1"), (2, 1.5, "failure 2")]

    async def test_zero_retries_makes_a_single_attempt(self, sleep):
        operation = Flaky(failures=1)

        with pytest.raises(RetriesExhausted) as exc_info:
            await execute(operation, max_retries=0, sleep=sleep)

        assert operation.calls == 1
        assert exc_info.value.attempts == 1
        assert sleep.delays == []

    async def test_lambda_returning_coroutine_is_awaited_and_retried(self, sleep):
        operation = Flaky(failures=100)

        with pytest.raises(RetriesExhausted) as exc_info:
            await execute(lambda: operation(), max_retries=3, base_delay=100, sleep=sleep)

        assert operation.calls == 4
        assert exc_info.value.attempts == 4
        assert sleep.delays == [100, 200, 400]

    async def test_lambda_success_returns_awaited_value(self, sleep):
        operation = Flaky(failures=1, result="page")

        result = await execute(lambda: operation(), max_retries=3, base_delay=0.1, sleep=sleep)

        assert result == "page"
        assert operation.calls == 2

    async def test_invocations_do_not_share_attempt_state(self, sleep):
        first = Flaky(failures=2)
        second = Flaky(failures=2)

        await execute(first, max_retries=2, sleep=sleep)
        await execute(second, max_retries=2, sleep=sleep)

        assert first.calls == second.calls == 3


class TestRetryPolicy:
    def test_delay_for_attempt(self):
        policy = RetryPolicy(max_retries=3, base_delay=2.0, backoff_factor=2.0)

        assert [policy.delay_for(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]

    async def test_execute_uses_policy_budget(self, sleep):
        policy = RetryPolicy(max_retries=1, base_delay=0.25, backoff_factor=2.0)
        operation = Flaky(failures=5)

        with pytest.raises(RetriesExhausted):
            await policy.execute(lambda: operation(), sleep=sleep)

        assert operation.calls == 2
        assert sleep.delays == [0.25]
