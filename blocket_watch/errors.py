from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from blocket_watch.worker import RunSummary


class TransportError(Exception):
    def __init__(
        self,
        message: str,
        *,
        url: str,
        status_code: int | None = None,
        retryable: bool = False,
        error_kind: str | None = None,
    ) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.retryable = retryable
        self.error_kind = error_kind


class ParseError(Exception):
    """Page content did not have the structure the extractor expects."""


class PersistenceError(Exception):
    """A catalog read or write failed."""


class RunError(Exception):
    def __init__(self, message: str, *, run_id: int | None = None, summary: RunSummary | None = None) -> None:
        super().__init__(message)
        self.run_id = run_id
        self.summary = summary


class RunCancelled(RunError):
    pass
