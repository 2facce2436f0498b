from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator
import sqlite3

if TYPE_CHECKING:
    from backend.recommender.batch import RecomputeReport


class RecommenderError(Exception):
    """Base class for errors raised by the recommendation core."""


class StoreError(RecommenderError):
    """A backing store (sqlite) could not serve a read or write."""


class InvalidInteractionType(RecommenderError, ValueError):
    def __init__(self, raw: object):
        self.raw = raw
        super().__init__(f"unknown interaction type: {raw!r}")


class RecomputeCancelled(RecommenderError):
    """A batch recompute hit its deadline or was cancelled.

    Rows upserted before the cut-off stay in place; `report` describes
    how far the run got.
    """

    def __init__(self, report: "RecomputeReport"):
        self.report = report
        super().__init__(
            f"{report.job} cancelled after {report.rows_written} rows "
            f"({report.processed}/{report.total} processed)"
        )


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as e:
        raise StoreError(f"{operation} failed: {e}") from e
