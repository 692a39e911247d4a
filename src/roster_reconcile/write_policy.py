"""roster_reconcile.write_policy

Retry policy and write-error classification for the apply stage.

A RetryPolicy is an ordered list of strategies tried for one chunk:
  bulk     one multi-row statement for the whole chunk
  per_row  one statement per row; failures are isolated per row

The classifier maps psycopg errors to WriteError values.  A uniqueness
failure on (collection_id, sequence_no) is the expected merge target: the
row already exists under the same start number, so the write counts as
done.  Any failure on bulk, merge target included, falls through to the
next strategy, so each row is then tolerated, written or failed on its
own; on per_row a failure other than the merge target is a failed row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Generic, TypeVar

import psycopg
from psycopg import errors as pg_errors

from roster_reconcile.shared import WriteConflictFatal

log = logging.getLogger(__name__)

STRATEGY_BULK = "bulk"
STRATEGY_PER_ROW = "per_row"

STATUS_CONFLICT = "conflict"
STATUS_VALIDATION = "validation"
STATUS_CONNECTION = "connection"
STATUS_UNKNOWN = "unknown"

MERGE_TARGET_CONSTRAINT = "roster_entry_collection_sequence_key"

T = TypeVar("T")


@dataclass(frozen=True)
class WriteError:
    status: str
    message: str
    is_conflict: bool = False
    is_expected_merge_target: bool = False
    constraint: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "status": self.status,
            "message": self.message,
            "is_conflict": self.is_conflict,
            "is_expected_merge_target": self.is_expected_merge_target,
            "constraint": self.constraint,
        }


def classify_write_error(exc: BaseException) -> WriteError:
    """Map a store exception onto the write-error taxonomy."""
    message = str(exc).strip().splitlines()[0] if str(exc).strip() else type(exc).__name__
    if isinstance(exc, WriteConflictFatal):
        return WriteError(STATUS_CONFLICT, message, is_conflict=True)
    if isinstance(exc, pg_errors.UniqueViolation):
        constraint = getattr(exc.diag, "constraint_name", None)
        return WriteError(
            STATUS_CONFLICT,
            message,
            is_conflict=True,
            is_expected_merge_target=constraint == MERGE_TARGET_CONSTRAINT,
            constraint=constraint,
        )
    if isinstance(exc, (psycopg.IntegrityError, psycopg.DataError)):
        constraint = getattr(getattr(exc, "diag", None), "constraint_name", None)
        return WriteError(STATUS_VALIDATION, message, constraint=constraint)
    if isinstance(exc, psycopg.OperationalError):
        return WriteError(STATUS_CONNECTION, message)
    return WriteError(STATUS_UNKNOWN, message)


@dataclass
class ChunkResult(Generic[T]):
    succeeded: list[T] = field(default_factory=list)
    tolerated: list[T] = field(default_factory=list)
    failed: list[tuple[T, WriteError]] = field(default_factory=list)
    strategy: str | None = None
    fallbacks: list[WriteError] = field(default_factory=list)


class RetryPolicy:
    """Ordered write strategies plus a failure classifier."""

    def __init__(
        self,
        strategies: tuple[str, ...] = (STRATEGY_BULK, STRATEGY_PER_ROW),
        classifier: Callable[[BaseException], WriteError] = classify_write_error,
        retryable: tuple[type[BaseException], ...] = (psycopg.Error, WriteConflictFatal),
    ) -> None:
        unknown = [s for s in strategies if s not in (STRATEGY_BULK, STRATEGY_PER_ROW)]
        if not strategies or unknown:
            raise ValueError(f"invalid retry strategies: {list(strategies)}")
        self.strategies = tuple(strategies)
        self.classifier = classifier
        self.retryable = retryable

    def run(
        self,
        items: list[T],
        single: Callable[[T], object],
        bulk: Callable[[list[T]], object] | None = None,
    ) -> ChunkResult[T]:
        """Write items with the first strategy that completes.

        Without a bulk callable every item is written per row.  Exceptions
        outside self.retryable propagate unchanged.
        """
        result: ChunkResult[T] = ChunkResult()
        if not items:
            return result
        last_error: WriteError | None = None
        strategies = self.strategies if bulk is not None else (STRATEGY_PER_ROW,)

        for strategy in strategies:
            if strategy == STRATEGY_BULK:
                try:
                    bulk(items)
                except self.retryable as exc:
                    # The savepoint discarded the whole batch, merge-target
                    # collision included; rows are re-tried one by one.
                    err = self.classifier(exc)
                    log.warning("bulk write of %d row(s) failed: %s", len(items), err.message)
                    result.fallbacks.append(err)
                    last_error = err
                    continue
                result.succeeded = list(items)
                result.strategy = STRATEGY_BULK
                return result

            result.strategy = STRATEGY_PER_ROW
            for item in items:
                try:
                    single(item)
                except self.retryable as exc:
                    err = self.classifier(exc)
                    if err.is_expected_merge_target:
                        result.tolerated.append(item)
                    else:
                        result.failed.append((item, err))
                    continue
                result.succeeded.append(item)
            return result

        assert last_error is not None
        result.failed = [(item, last_error) for item in items]
        return result
