"""
Unit tests for retry and timeout helpers.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from orderflow.gateways.exceptions import UpstreamRejected, UpstreamUnavailable
from orderflow.utils.retry import call_with_retry, retry_on_transient_error, with_timeout


@pytest.fixture
def no_sleep(monkeypatch):
    sleep = AsyncMock()
    monkeypatch.setattr("orderflow.utils.retry.asyncio.sleep", sleep)
    return sleep


@pytest.mark.unit
@pytest.mark.asyncio
async def test_call_with_retry_recovers():
    """Test transient failures are retried until success."""
    operation = AsyncMock(side_effect=[UpstreamUnavailable("503"), UpstreamUnavailable("503"), "ok"])

    result = await call_with_retry(operation, max_attempts=3, initial_delay=0)

    assert result == "ok"
    assert operation.await_count == 3


@pytest.mark.unit
@pytest.mark.asyncio
async def test_call_with_retry_gives_up():
    """Test the last error is raised after max attempts."""
    operation = AsyncMock(side_effect=UpstreamUnavailable("down"))

    with pytest.raises(UpstreamUnavailable):
        await call_with_retry(operation, max_attempts=2, initial_delay=0)

    assert operation.await_count == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_permanent_errors_not_retried():
    """Test rejected calls fail immediately."""
    operation = AsyncMock(side_effect=UpstreamRejected("400"))

    with pytest.raises(UpstreamRejected):
        await call_with_retry(operation, max_attempts=5, initial_delay=0)

    assert operation.await_count == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_decorator_backoff(no_sleep):
    """Test exponential backoff delays of the decorator."""
    calls = []

    @retry_on_transient_error(max_attempts=3, backoff_base=2)
    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise UpstreamUnavailable("busy")
        return "done"

    assert await flaky() == "done"
    assert [c.args[0] for c in no_sleep.await_args_list] == [1.0, 2.0]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_with_timeout_maps_to_unavailable():
    """Test a missed deadline becomes a retryable upstream error."""
    with pytest.raises(UpstreamUnavailable) as exc_info:
        await with_timeout(asyncio.sleep(1), 0.01, operation="refund", provider="paystack")

    assert exc_info.value.provider == "paystack"
    assert await with_timeout(asyncio.sleep(0, result=5), 1, operation="noop") == 5
