"""
Task runners executing one unit of work per batch identifier.

A runner receives the drained pending batches and a unit of work, runs the
units under a concurrency cap and a run-wide deadline, and reports exactly one
``BatchOutcome`` per input batch, in input order. Failures never escape a
runner: exceptions and timeouts become ``Err(LoaderError(...))`` outcomes.
"""

from __future__ import annotations

import asyncio
import time
import typing as t
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass

import structlog

from kvloader.results import Err, LoaderError, Result, as_loader_error

log = structlog.get_logger(__name__)

Batches = t.Mapping[t.Hashable, frozenset[t.Any]]
Unit = t.Callable[[t.Hashable, frozenset[t.Any]], Result]
AsyncUnit = t.Callable[[t.Hashable, frozenset[t.Any]], t.Awaitable[Result]]


@dataclass(frozen=True)
class BatchOutcome:
    """
    Outcome of loading one batch.

    Parameters
    ----------
    batch_key : typing.Hashable
        Batch identifier.
    keys : frozenset[typing.Any]
        Keys requested for the batch.
    result : Result
        ``Ok(mapping)`` with the loaded values, or ``Err`` for the whole batch.
    """

    batch_key: t.Hashable
    keys: frozenset[t.Any]
    result: Result


class TaskRunner(t.Protocol):
    """
    Blocking execution facility used by ``KVLoader.run``.
    """

    def run_tasks(
        self,
        batches: Batches,
        unit: Unit,
        *,
        max_concurrency: int,
        timeout: float,
    ) -> list[BatchOutcome]: ...


def _timeout_outcome(*, batch_key: t.Hashable, keys: frozenset[t.Any], timeout: float) -> BatchOutcome:
    log.error(
        event="Batch load timed out",
        batch_key=repr(batch_key),
        key_count=len(keys),
        timeout_seconds=timeout,
    )
    return BatchOutcome(
        batch_key=batch_key,
        keys=keys,
        result=Err(reason=LoaderError(reason=TimeoutError(f"Batch load exceeded {timeout}s"))),
    )


def _failure_outcome(
    *, batch_key: t.Hashable, keys: frozenset[t.Any], error: BaseException
) -> BatchOutcome:
    log.error(
        event="Batch load failed",
        batch_key=repr(batch_key),
        key_count=len(keys),
        error=str(object=error),
        error_type=type(error).__name__,
    )
    return BatchOutcome(batch_key=batch_key, keys=keys, result=as_loader_error(reason=error))


def failed_outcomes(*, batches: Batches, error: BaseException) -> list[BatchOutcome]:
    """
    Report every batch as failed with the same error.

    Parameters
    ----------
    batches : Batches
        Batches handed to a runner that could not complete.
    error : BaseException
        Failure raised by the runner itself.

    Returns
    -------
    list[BatchOutcome]
        One ``Err(LoaderError(error))`` outcome per batch, in input order.
    """
    return [
        _failure_outcome(batch_key=batch_key, keys=keys, error=error)
        for batch_key, keys in batches.items()
    ]


def _call_unit(*, unit: Unit, batch_key: t.Hashable, keys: frozenset[t.Any]) -> BatchOutcome:
    """
    Run one unit of work and capture any exception as an outcome.

    Parameters
    ----------
    unit : Unit
        Unit of work to call.
    batch_key : typing.Hashable
        Batch identifier.
    keys : frozenset[typing.Any]
        Keys requested for the batch.

    Returns
    -------
    BatchOutcome
        Outcome for the batch.
    """
    try:
        result = unit(batch_key, keys)
    except Exception as error:
        return _failure_outcome(batch_key=batch_key, keys=keys, error=error)
    return BatchOutcome(batch_key=batch_key, keys=keys, result=result)


class SerialTaskRunner:
    """
    Run units one after another on the caller thread.

    Deterministic and dependency-free, which makes it the runner of choice
    in tests. Units starting after the deadline are reported as timed out; a
    unit that is already running is never interrupted.

    Parameters
    ----------
    clock : typing.Callable[[], float], optional
        Monotonic clock used for the deadline.
    """

    def __init__(self, clock: t.Callable[[], float] = time.monotonic) -> None:
        self._clock = clock

    def run_tasks(
        self,
        batches: Batches,
        unit: Unit,
        *,
        max_concurrency: int,
        timeout: float,
    ) -> list[BatchOutcome]:
        deadline = self._clock() + timeout
        outcomes: list[BatchOutcome] = []
        for batch_key, keys in batches.items():
            if self._clock() >= deadline:
                outcomes.append(_timeout_outcome(batch_key=batch_key, keys=keys, timeout=timeout))
                continue
            outcomes.append(_call_unit(unit=unit, batch_key=batch_key, keys=keys))
        return outcomes


class ThreadPoolTaskRunner:
    """
    Run units on a thread pool bounded by ``max_concurrency``.

    A fresh pool is created for each run and shut down without waiting once
    the deadline passes, so a slow loader never blocks the caller beyond the
    timeout. Queued units are cancelled; units already running finish in the
    background and their results are discarded.

    Parameters
    ----------
    thread_name_prefix : str, optional
        Prefix for worker thread names.
    """

    def __init__(self, thread_name_prefix: str = "kvloader") -> None:
        self._thread_name_prefix = thread_name_prefix

    def run_tasks(
        self,
        batches: Batches,
        unit: Unit,
        *,
        max_concurrency: int,
        timeout: float,
    ) -> list[BatchOutcome]:
        if not batches:
            return []

        executor = ThreadPoolExecutor(
            max_workers=max_concurrency,
            thread_name_prefix=self._thread_name_prefix,
        )
        futures: dict[t.Hashable, Future[BatchOutcome]] = {}
        try:
            for batch_key, keys in batches.items():
                futures[batch_key] = executor.submit(
                    _call_unit, unit=unit, batch_key=batch_key, keys=keys
                )
            done, _ = wait(fs=futures.values(), timeout=timeout)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        outcomes: list[BatchOutcome] = []
        for batch_key, keys in batches.items():
            future = futures[batch_key]
            if future in done:
                outcomes.append(future.result())
            else:
                future.cancel()
                outcomes.append(_timeout_outcome(batch_key=batch_key, keys=keys, timeout=timeout))
        return outcomes


class AsyncioTaskRunner:
    """
    Run coroutine units as asyncio tasks bounded by a semaphore.

    Tasks still pending at the deadline are cancelled and reported as timed
    out.
    """

    async def run_tasks(
        self,
        batches: Batches,
        unit: AsyncUnit,
        *,
        max_concurrency: int,
        timeout: float,
    ) -> list[BatchOutcome]:
        if not batches:
            return []

        semaphore = asyncio.Semaphore(value=max_concurrency)

        async def bounded(batch_key: t.Hashable, keys: frozenset[t.Any]) -> BatchOutcome:
            async with semaphore:
                try:
                    result = await unit(batch_key, keys)
                except Exception as error:
                    return _failure_outcome(batch_key=batch_key, keys=keys, error=error)
                return BatchOutcome(batch_key=batch_key, keys=keys, result=result)

        tasks = {
            batch_key: asyncio.create_task(
                coro=bounded(batch_key, keys),
                name=f"kvloader_batch_{batch_key!r}",
            )
            for batch_key, keys in batches.items()
        }
        try:
            done, _ = await asyncio.wait(tasks.values(), timeout=timeout)
        finally:
            unfinished = [task for task in tasks.values() if not task.done()]
            for task in unfinished:
                task.cancel()
            if unfinished:
                await asyncio.gather(*unfinished, return_exceptions=True)

        outcomes: list[BatchOutcome] = []
        for batch_key, keys in batches.items():
            task = tasks[batch_key]
            if task in done:
                outcomes.append(task.result())
            else:
                outcomes.append(_timeout_outcome(batch_key=batch_key, keys=keys, timeout=timeout))
        return outcomes
