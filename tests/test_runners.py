"""
Tests for the task runners in kvloader.runners.
"""

import asyncio
import threading
import typing as t

import pytest

from kvloader.results import Err, LoaderError, Ok, Result
from kvloader.runners import (
    AsyncioTaskRunner,
    BatchOutcome,
    SerialTaskRunner,
    ThreadPoolTaskRunner,
    failed_outcomes,
)
from tests.mocks.loaders import ConcurrencyTracker, make_clock


def _echo_unit(batch_key: t.Hashable, keys: frozenset[t.Any]) -> Result:
    return Ok(value={key: (batch_key, key) for key in keys})


def _assert_timed_out(outcome: BatchOutcome) -> None:
    assert isinstance(outcome.result, Err)
    assert isinstance(outcome.result.reason, LoaderError)
    assert isinstance(outcome.result.reason.reason, TimeoutError)


def test_serial_runner_preserves_input_order() -> None:
    """Test that outcomes follow the order of the input batches."""
    batches = {"b": frozenset({1}), "a": frozenset({2}), "c": frozenset({3})}

    outcomes = SerialTaskRunner().run_tasks(batches, _echo_unit, max_concurrency=1, timeout=5.0)

    assert [outcome.batch_key for outcome in outcomes] == ["b", "a", "c"]
    assert outcomes[1] == BatchOutcome(
        batch_key="a", keys=frozenset({2}), result=Ok(value={2: ("a", 2)})
    )


def test_serial_runner_captures_unit_exception() -> None:
    """Test that a raising unit fails only its own batch."""
    error = ValueError("bad batch")

    def unit(batch_key: t.Hashable, keys: frozenset[t.Any]) -> Result:
        if batch_key == "bad":
            raise error
        return _echo_unit(batch_key, keys)

    batches = {"bad": frozenset({1}), "good": frozenset({2})}
    outcomes = SerialTaskRunner().run_tasks(batches, unit, max_concurrency=1, timeout=5.0)

    assert outcomes[0].result == Err(reason=LoaderError(reason=error))
    assert outcomes[1].result == Ok(value={2: ("good", 2)})


def test_serial_runner_times_out_units_after_deadline() -> None:
    """Test that units starting after the deadline are reported as timed out."""
    calls: list[t.Hashable] = []

    def unit(batch_key: t.Hashable, keys: frozenset[t.Any]) -> Result:
        calls.append(batch_key)
        return _echo_unit(batch_key, keys)

    runner = SerialTaskRunner(clock=make_clock(0.0, 0.5, 5.0))
    batches = {"fast": frozenset({1}), "late": frozenset({2, 3})}

    outcomes = runner.run_tasks(batches, unit, max_concurrency=1, timeout=1.0)

    assert calls == ["fast"]
    assert outcomes[0].result == Ok(value={1: ("fast", 1)})
    _assert_timed_out(outcomes[1])
    assert outcomes[1].keys == frozenset({2, 3})


def test_thread_pool_runner_empty_batches() -> None:
    """Test that no batches yields no outcomes."""
    assert ThreadPoolTaskRunner().run_tasks({}, _echo_unit, max_concurrency=2, timeout=1.0) == []


def test_thread_pool_runner_returns_outcome_per_batch() -> None:
    """Test that every batch is reported once in input order."""
    batches = {f"batch-{index}": frozenset({index}) for index in range(5)}

    outcomes = ThreadPoolTaskRunner().run_tasks(
        batches, _echo_unit, max_concurrency=3, timeout=5.0
    )

    assert [outcome.batch_key for outcome in outcomes] == list(batches)
    assert all(isinstance(outcome.result, Ok) for outcome in outcomes)


def test_thread_pool_runner_bounds_concurrency() -> None:
    """Test that no more than max_concurrency units overlap."""
    tracker = ConcurrencyTracker(delay=0.05)

    def unit(batch_key: t.Hashable, keys: frozenset[t.Any]) -> Result:
        return Ok(value=tracker(batch_key, keys))

    batches = {index: frozenset({index}) for index in range(6)}
    outcomes = ThreadPoolTaskRunner().run_tasks(batches, unit, max_concurrency=2, timeout=5.0)

    assert len(outcomes) == 6
    assert 1 <= tracker.max_active <= 2


def test_thread_pool_runner_times_out_slow_batch() -> None:
    """Test that a unit exceeding the deadline is reported as timed out."""
    release = threading.Event()

    def unit(batch_key: t.Hashable, keys: frozenset[t.Any]) -> Result:
        if batch_key == "slow":
            release.wait(timeout=5.0)
        return _echo_unit(batch_key, keys)

    batches = {"slow": frozenset({1}), "fast": frozenset({2})}
    try:
        outcomes = ThreadPoolTaskRunner().run_tasks(
            batches, unit, max_concurrency=2, timeout=0.2
        )
    finally:
        release.set()

    _assert_timed_out(outcomes[0])
    assert outcomes[1].result == Ok(value={2: ("fast", 2)})


def test_thread_pool_runner_captures_unit_exception() -> None:
    """Test that worker exceptions are turned into loader errors."""
    error = RuntimeError("worker crashed")

    def unit(batch_key: t.Hashable, keys: frozenset[t.Any]) -> Result:
        raise error

    outcomes = ThreadPoolTaskRunner().run_tasks(
        {"users": frozenset({1})}, unit, max_concurrency=1, timeout=5.0
    )

    assert outcomes == [
        BatchOutcome(
            batch_key="users",
            keys=frozenset({1}),
            result=Err(reason=LoaderError(reason=error)),
        )
    ]


@pytest.mark.asyncio
async def test_asyncio_runner_empty_batches() -> None:
    """Test that no batches yields no outcomes."""

    async def unit(batch_key: t.Hashable, keys: frozenset[t.Any]) -> Result:
        return _echo_unit(batch_key, keys)

    assert await AsyncioTaskRunner().run_tasks({}, unit, max_concurrency=1, timeout=1.0) == []


@pytest.mark.asyncio
async def test_asyncio_runner_bounds_concurrency() -> None:
    """Test that the semaphore caps overlapping units."""
    active = 0
    max_active = 0

    async def unit(batch_key: t.Hashable, keys: frozenset[t.Any]) -> Result:
        nonlocal active, max_active
        active += 1
        max_active = max(max_active, active)
        await asyncio.sleep(0.01)
        active -= 1
        return _echo_unit(batch_key, keys)

    batches = {index: frozenset({index}) for index in range(6)}
    outcomes = await AsyncioTaskRunner().run_tasks(batches, unit, max_concurrency=2, timeout=5.0)

    assert [outcome.batch_key for outcome in outcomes] == list(range(6))
    assert max_active == 2


@pytest.mark.asyncio
async def test_asyncio_runner_times_out_and_cancels() -> None:
    """Test that pending tasks are cancelled at the deadline."""
    cancelled = asyncio.Event()

    async def unit(batch_key: t.Hashable, keys: frozenset[t.Any]) -> Result:
        if batch_key == "slow":
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise
        return _echo_unit(batch_key, keys)

    batches = {"slow": frozenset({1}), "fast": frozenset({2})}
    outcomes = await AsyncioTaskRunner().run_tasks(batches, unit, max_concurrency=2, timeout=0.05)

    _assert_timed_out(outcomes[0])
    assert outcomes[1].result == Ok(value={2: ("fast", 2)})
    assert cancelled.is_set()


@pytest.mark.asyncio
async def test_asyncio_runner_captures_unit_exception() -> None:
    """Test that a raising coroutine fails only its batch."""
    error = KeyError("missing")

    async def unit(batch_key: t.Hashable, keys: frozenset[t.Any]) -> Result:
        raise error

    outcomes = await AsyncioTaskRunner().run_tasks(
        {"users": frozenset({1})}, unit, max_concurrency=1, timeout=1.0
    )

    assert outcomes[0].result == Err(reason=LoaderError(reason=error))


def test_failed_outcomes_covers_every_batch() -> None:
    """Test that a runner failure is reported once per batch, in order."""
    error = RuntimeError("pool exhausted")
    batches = {"users": frozenset({1, 2}), "teams": frozenset({"red"})}

    outcomes = failed_outcomes(batches=batches, error=error)

    assert outcomes == [
        BatchOutcome(
            batch_key="users",
            keys=frozenset({1, 2}),
            result=Err(reason=LoaderError(reason=error)),
        ),
        BatchOutcome(
            batch_key="teams",
            keys=frozenset({"red"}),
            result=Err(reason=LoaderError(reason=error)),
        ),
    ]
