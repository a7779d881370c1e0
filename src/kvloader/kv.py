"""
Key/value batching source.
Collects point and bulk key requests per batch identifier, loads each batch
with one call to a user-supplied function, and caches per-key outcomes so
keys that are already resolved are never requested again.
"""

from __future__ import annotations

import asyncio
import inspect
import typing as t
from collections.abc import Mapping

import structlog

from kvloader.options import LoaderOptions
from kvloader.results import (
    Err,
    NotFound,
    Ok,
    Result,
    UnknownBatch,
    as_loader_error,
    is_unresolved,
)
from kvloader.runners import (
    AsyncioTaskRunner,
    BatchOutcome,
    TaskRunner,
    ThreadPoolTaskRunner,
    failed_outcomes,
)
from kvloader.source import BaseSource
from kvloader.utils.logging import logging_context

log = structlog.get_logger(__name__)

LoadFunction = t.Callable[[t.Any, frozenset[t.Any]], t.Any]


class KVLoader(BaseSource):
    """
    Deduplicating, batching, cache-backed key lookup.

    Requests accumulate with ``load``/``load_many`` until ``run`` dispatches
    one loader call per batch identifier through the task runner. Results are
    then read with ``fetch``/``fetch_many``.

    Notes
    -----
    An instance is meant to be owned by a single caller for one unit of work.
    Nothing is evicted from the cache until the instance is discarded.
    """

    def __init__(
        self,
        loader: LoadFunction,
        *,
        max_concurrency: int | None = None,
        timeout: int | None = None,
        name: str | None = None,
        options: LoaderOptions | None = None,
        runner: TaskRunner | None = None,
        async_runner: AsyncioTaskRunner | None = None,
    ) -> None:
        """
        Initialize the loader.

        Parameters
        ----------
        loader : LoadFunction
            Called as ``loader(batch_key, keys)``; returns a mapping of key to
            value (optionally wrapped in ``Ok``), an ``Err``, or raises.
        max_concurrency : int | None, optional
            Maximum number of batches loaded at once.
        timeout : int | None, optional
            Run budget in milliseconds.
        name : str | None, optional
            Loader name bound to log records during runs.
        options : LoaderOptions | None, optional
            Pre-built options; explicit keyword arguments override its fields.
        runner : TaskRunner | None, optional
            Execution facility for ``run``. Defaults to a thread pool.
        async_runner : AsyncioTaskRunner | None, optional
            Execution facility for ``arun``.
        """
        overrides = {
            "max_concurrency": max_concurrency,
            "timeout": timeout,
            "name": name,
        }
        overrides = {key: value for key, value in overrides.items() if value is not None}
        if options is None:
            options = LoaderOptions(**overrides)
        elif overrides:
            options = LoaderOptions(**{**options.model_dump(exclude_none=True), **overrides})

        self._loader = loader
        self._options = options
        self._name = options.name or getattr(loader, "__qualname__", repr(loader))
        self._runner: TaskRunner = runner or ThreadPoolTaskRunner()
        self._async_runner = async_runner or AsyncioTaskRunner()

        self._pending: dict[t.Hashable, set[t.Any]] = {}
        self._cache: dict[t.Hashable, dict[t.Any, Result]] = {}

        log.debug(
            event="Initialized KVLoader",
            loader=self._name,
            max_concurrency=options.max_concurrency,
            timeout=options.timeout,
        )

    @property
    def options(self) -> LoaderOptions:
        return self._options

    @property
    def timeout(self) -> int:
        return self._options.timeout

    # Request tracking

    def load(self, batch_key: t.Hashable, key: t.Any) -> None:
        """
        Request one key unless it is already cached.

        Parameters
        ----------
        batch_key : typing.Hashable
            Batch identifier passed to the loader.
        key : typing.Any
            Key to load. ``None`` is ignored.
        """
        if key is None:
            return
        if not is_unresolved(self.fetch(batch_key, key)):
            return
        self._pending.setdefault(batch_key, set()).add(key)
        log.debug(event="Queued key", loader=self._name, batch_key=repr(batch_key))

    def load_many(self, batch_key: t.Hashable, keys: t.Iterable[t.Any] | None) -> None:
        """
        Request several keys, skipping the ones already cached.

        Parameters
        ----------
        batch_key : typing.Hashable
            Batch identifier passed to the loader.
        keys : typing.Iterable[typing.Any] | None
            Keys to load. ``None`` entries are ignored.
        """
        if not keys:
            return
        requested = {key for key in keys if key is not None}
        cached = self._cache.get(batch_key)
        # An empty cached batch still goes through the per-key difference.
        to_load = requested if cached is None else requested.difference(cached)
        if not to_load:
            return
        self._pending.setdefault(batch_key, set()).update(to_load)
        log.debug(
            event="Queued keys",
            loader=self._name,
            batch_key=repr(batch_key),
            queued_count=len(to_load),
            pending_count=len(self._pending[batch_key]),
        )

    def pending_batches(self) -> bool:
        return bool(self._pending)

    # Dispatch

    def run(self) -> None:
        """
        Load every pending batch and merge the outcomes into the cache.

        Blocks until the task runner returns. Loader failures and timeouts
        are cached as ``Err`` for every key of the affected batch, and a
        runner that raises fails every drained batch the same way; this
        method does not raise for them.
        """
        if not self._pending:
            return
        batches = self._drain_pending()
        with logging_context(loader=self._name):
            log.info(
                event="Running batches",
                batch_count=len(batches),
                key_count=sum(len(keys) for keys in batches.values()),
            )
            try:
                outcomes = self._runner.run_tasks(
                    batches,
                    self._load_batch,
                    max_concurrency=self._options.max_concurrency,
                    timeout=self._options.timeout_seconds,
                )
            except Exception as error:
                outcomes = failed_outcomes(batches=batches, error=error)
            self._merge_outcomes(outcomes=outcomes)

    async def arun(self) -> None:
        """
        Coroutine counterpart of ``run``.

        Coroutine loaders are awaited; plain loaders run in a worker thread.
        Cancelling the caller cancels the in-flight batch tasks.
        """
        if not self._pending:
            return
        batches = self._drain_pending()
        with logging_context(loader=self._name):
            log.info(
                event="Running batches",
                batch_count=len(batches),
                key_count=sum(len(keys) for keys in batches.values()),
            )
            try:
                outcomes = await self._async_runner.run_tasks(
                    batches,
                    self._aload_batch,
                    max_concurrency=self._options.max_concurrency,
                    timeout=self._options.timeout_seconds,
                )
            except Exception as error:
                outcomes = failed_outcomes(batches=batches, error=error)
            self._merge_outcomes(outcomes=outcomes)

    def _drain_pending(self) -> dict[t.Hashable, frozenset[t.Any]]:
        batches = {batch_key: frozenset(keys) for batch_key, keys in self._pending.items()}
        self._pending = {}
        log.debug(event="Drained pending batches", loader=self._name, batch_count=len(batches))
        return batches

    def _load_batch(self, batch_key: t.Hashable, keys: frozenset[t.Any]) -> Result:
        value = self._loader(batch_key, keys)
        if inspect.isawaitable(value):
            if inspect.iscoroutine(value):
                value.close()
            return as_loader_error(
                reason=TypeError("Coroutine loaders must be run with KVLoader.arun()"),
            )
        return self._normalize(value=value)

    async def _aload_batch(self, batch_key: t.Hashable, keys: frozenset[t.Any]) -> Result:
        if inspect.iscoroutinefunction(self._loader):
            value = await self._loader(batch_key, keys)
        else:
            value = await asyncio.to_thread(self._loader, batch_key, keys)
            if inspect.isawaitable(value):
                value = await value
        return self._normalize(value=value)

    @staticmethod
    def _normalize(*, value: t.Any) -> Result:
        """
        Coerce a loader return value into a batch result.

        Parameters
        ----------
        value : typing.Any
            Mapping, ``Ok(mapping)`` or ``Err(reason)`` returned by the loader.

        Returns
        -------
        Result
            ``Ok(dict)`` or ``Err(LoaderError)``.
        """
        if isinstance(value, Err):
            return as_loader_error(reason=value.reason)
        if isinstance(value, Ok):
            value = value.value
        if not isinstance(value, Mapping):
            return as_loader_error(
                reason=TypeError(f"Loader must return a mapping, got {type(value).__name__}"),
            )
        return Ok(value=dict(value))

    def _merge_outcomes(self, *, outcomes: t.Iterable[BatchOutcome]) -> None:
        for outcome in outcomes:
            self._merge_outcome(outcome=outcome)

    def _merge_outcome(self, *, outcome: BatchOutcome) -> None:
        """
        Merge one batch outcome into the cache.

        Values overwrite per key and batches are unioned. A failed batch
        records its error for every requested key.

        Parameters
        ----------
        outcome : BatchOutcome
            Outcome reported by the task runner.
        """
        cached = self._cache.setdefault(outcome.batch_key, {})
        result = outcome.result
        if isinstance(result, Err):
            for key in outcome.keys:
                cached[key] = result
            log.error(
                event="Batch cached as error",
                batch_key=repr(outcome.batch_key),
                key_count=len(outcome.keys),
                error=str(object=result.reason),
            )
            return

        for key, value in result.value.items():
            cached[key] = Ok(value=value)
        missing_count = len(outcome.keys.difference(result.value))
        log.debug(
            event="Batch cached",
            batch_key=repr(outcome.batch_key),
            resolved_count=len(result.value),
            missing_count=missing_count,
        )

    # Reads

    def fetch(self, batch_key: t.Hashable, key: t.Any) -> Result:
        """
        Read one cached outcome.

        Parameters
        ----------
        batch_key : typing.Hashable
            Batch identifier.
        key : typing.Any
            Key within the batch.

        Returns
        -------
        Result
            ``Ok(value)``, the cached ``Err``, ``Err(NotFound())`` for a key
            that was never resolved, or ``Err(UnknownBatch(batch_key))`` for a
            batch that was never populated.
        """
        cached = self._cache.get(batch_key)
        if cached is None:
            return Err(reason=UnknownBatch(batch_key=batch_key))
        return cached.get(key, Err(reason=NotFound()))

    def fetch_many(self, batch_key: t.Hashable, keys: t.Iterable[t.Any]) -> Result:
        """
        Read several keys in input order, stopping at the first error.

        Parameters
        ----------
        batch_key : typing.Hashable
            Batch identifier.
        keys : typing.Iterable[typing.Any]
            Keys within the batch.

        Returns
        -------
        Result
            ``Ok(list_of_values)`` in input order, or the first ``Err``.
        """
        values: list[t.Any] = []
        for key in keys:
            result = self.fetch(batch_key, key)
            if isinstance(result, Err):
                return result
            values.append(result.value)
        return Ok(value=values)

    def put(self, batch_key: t.Hashable, key: t.Any, result: t.Any) -> None:
        """
        Seed the cache without running the loader.

        Parameters
        ----------
        batch_key : typing.Hashable
            Batch identifier.
        key : typing.Any
            Key within the batch.
        result : typing.Any
            ``Ok``/``Err`` stored as-is, any other value stored as ``Ok``.
            ``None`` is ignored.
        """
        if result is None:
            return
        if not isinstance(result, (Ok, Err)):
            result = Ok(value=result)
        self._cache.setdefault(batch_key, {})[key] = result
