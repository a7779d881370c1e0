"""
Result values stored in the loader cache.

A cached entry is either ``Ok(value)`` or ``Err(reason)``. Reasons are tagged
variants so callers can branch on why a key is not available.
"""

from __future__ import annotations

import typing as t
from dataclasses import dataclass

from kvloader.exceptions import ResultError

V = t.TypeVar(name="V")


@dataclass(frozen=True)
class NotFound:
    """The batch is known but the key was never resolved."""

    def __str__(self) -> str:
        return "not found"


@dataclass(frozen=True)
class UnknownBatch:
    """
    The batch identifier has never been populated.

    Parameters
    ----------
    batch_key : typing.Hashable
        Batch identifier that was looked up.
    """

    batch_key: t.Hashable

    def __str__(self) -> str:
        return f"Unable to find batch {self.batch_key!r}"


@dataclass(frozen=True)
class LoaderError:
    """
    The loader (or the task runner executing it) failed for a whole batch.

    Parameters
    ----------
    reason : typing.Any
        Opaque failure payload: a message, an exception or any value the
        loader returned inside ``Err``.
    """

    reason: t.Any

    def __str__(self) -> str:
        return str(self.reason)


ErrorReason = NotFound | UnknownBatch | LoaderError


@dataclass(frozen=True)
class Ok(t.Generic[V]):
    """Successful lookup holding the loaded value."""

    value: V

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> V:
        return self.value


@dataclass(frozen=True)
class Err:
    """Failed lookup holding a tagged error reason."""

    reason: ErrorReason

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self) -> t.NoReturn:
        """
        Raise the error reason.

        Raises
        ------
        ResultError
            Always; chained from the loader exception when there is one.
        """
        cause = None
        if isinstance(self.reason, LoaderError) and isinstance(self.reason.reason, BaseException):
            cause = self.reason.reason
        raise ResultError(reason=self.reason) from cause


Result = Ok[t.Any] | Err


def as_loader_error(*, reason: t.Any) -> Err:
    """
    Wrap an arbitrary failure payload into a loader error result.

    Parameters
    ----------
    reason : typing.Any
        Payload returned or raised by the loader.

    Returns
    -------
    Err
        ``Err(LoaderError(reason))``, or ``Err(reason)`` when the payload is
        already a ``LoaderError``. Lookup reasons such as ``NotFound`` are
        wrapped too, so a failed batch is never mistaken for an unloaded one.
    """
    if isinstance(reason, LoaderError):
        return Err(reason=reason)
    return Err(reason=LoaderError(reason=reason))


def is_unresolved(result: Result) -> bool:
    """
    Check whether a fetch result means "never loaded".

    Parameters
    ----------
    result : Result
        Outcome of a point fetch.

    Returns
    -------
    bool
        ``True`` for ``NotFound`` and ``UnknownBatch`` errors, ``False`` for
        values and loader errors.
    """
    return isinstance(result, Err) and isinstance(result.reason, (NotFound, UnknownBatch))
