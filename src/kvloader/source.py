from __future__ import annotations

import typing as t
from abc import ABC, abstractmethod

from kvloader.results import Result


class BaseSource(ABC):
    """
    Standard interface for a batching, caching data source.

    Sources implement:
    - load / load_many: record keys to fetch on the next run
    - run: fetch every pending batch and cache the outcome
    - fetch / fetch_many: read cached outcomes
    - put: seed the cache directly

    An orchestrator holding several sources calls ``run`` on each one until
    none of them reports ``pending_batches()``.
    """

    @abstractmethod
    def put(self, batch_key: t.Hashable, key: t.Any, result: t.Any) -> None: ...

    @abstractmethod
    def load(self, batch_key: t.Hashable, key: t.Any) -> None: ...

    @abstractmethod
    def load_many(self, batch_key: t.Hashable, keys: t.Iterable[t.Any] | None) -> None: ...

    @abstractmethod
    def fetch(self, batch_key: t.Hashable, key: t.Any) -> Result: ...

    @abstractmethod
    def fetch_many(self, batch_key: t.Hashable, keys: t.Iterable[t.Any]) -> Result: ...

    @abstractmethod
    def run(self) -> None: ...

    @abstractmethod
    def pending_batches(self) -> bool: ...

    @property
    @abstractmethod
    def timeout(self) -> int:
        """Run budget in milliseconds."""
