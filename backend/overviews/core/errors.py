"""Exceptions raised by the overview engine.

Failures name the construct involved and, where one exists, carry a hint
telling the caller what to do instead. A strategy that does not apply to a
dataset is not an error: it returns None so a driver can try another one.

Example:
    >>> from overviews.core import errors
    >>> try:
    ...     reduce.reduce(reduce.ReduceStrategy.SAMPLING, dataset, 10, 9)
    ... except errors.UnsupportedOperationError as e:
    ...     print(e, e.hint)
"""

from __future__ import annotations


class OverviewError(RuntimeError):
    """Base class for overview engine failures.

    Attributes:
        hint: Optional actionable suggestion shown alongside the message.
    """

    def __init__(self, message: str, hint: str | None = None) -> None:
        super().__init__(message)
        self.hint = hint

    def __str__(self) -> str:
        message = super().__str__()
        if self.hint:
            return f"{message} (hint: {self.hint})"
        return message


class InvalidInputError(OverviewError, ValueError):
    """A required parameter is missing, empty or out of range."""


class UnsupportedOperationError(OverviewError, NotImplementedError):
    """The named operation exists but is disabled in this version."""
