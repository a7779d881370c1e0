"""
kvloader-specific runtime exceptions.
"""

from __future__ import annotations

import typing as t


class ResultError(RuntimeError):
    """
    Raised when unwrapping an ``Err`` result.

    Parameters
    ----------
    reason : typing.Any
        Tagged error reason carried by the result.
    """

    def __init__(self, *, reason: t.Any) -> None:
        super().__init__(str(reason))
        self.reason = reason
