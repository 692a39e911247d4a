"""roster_reconcile.shared

Shared utilities used by every stage of a reconcile run.
Includes the error taxonomy, RejectWriter, RunCounters and report-writing
support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ReconcileError(Exception):
    """Base class for reconcile failures."""


class ParseError(ReconcileError):
    """Raised when an input file cannot be turned into a table."""


class ConfigurationError(ReconcileError):
    """Raised for missing target collection, unmapped required columns, or
    unusable options.  Always raised before any write is attempted."""


class ConflictUnresolved(ReconcileError):
    """Raised when apply is attempted while conflicts are still pending."""

    def __init__(self, pending: list[str]) -> None:
        self.pending = list(pending)
        super().__init__(
            f"{len(self.pending)} conflict(s) still pending resolution: "
            f"{', '.join(self.pending[:5])}"
            + (" ..." if len(self.pending) > 5 else "")
        )


class WriteConflictFatal(ReconcileError):
    """A uniqueness failure on something other than the expected merge target."""

    def __init__(self, message: str, original_index: int | None = None) -> None:
        self.original_index = original_index
        super().__init__(message)


class PartialApplyFailure(ReconcileError):
    """Raised after apply when one or more rows could not be written."""

    def __init__(self, failed: list[dict[str, Any]]) -> None:
        self.failed = list(failed)
        super().__init__(f"{len(self.failed)} row(s) failed to apply")


@dataclass(frozen=True)
class RowValidationError:
    """A row that cannot enter the write set.  Collected, never raised."""

    original_index: int
    reason: str
    field: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"original_index": self.original_index, "field": self.field, "reason": self.reason}


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    def write(self, row: dict[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    rows_read: int = 0
    rows_footer_dropped: int = 0
    rows_invalid: int = 0
    conflicts_detected: int = 0
    conflicts_pending: int = 0
    rows_dropped_by_resolution: int = 0
    dedup_creates: int = 0
    dedup_updates: int = 0
    dedup_skips: int = 0
    dedup_review: int = 0
    rows_created: int = 0
    rows_updated: int = 0
    rows_skipped: int = 0
    rows_failed: int = 0
    merges_tolerated: int = 0
    db_phase_errors: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_read": self.rows_read,
            "rows_footer_dropped": self.rows_footer_dropped,
            "rows_invalid": self.rows_invalid,
            "conflicts_detected": self.conflicts_detected,
            "conflicts_pending": self.conflicts_pending,
            "rows_dropped_by_resolution": self.rows_dropped_by_resolution,
            "dedup_creates": self.dedup_creates,
            "dedup_updates": self.dedup_updates,
            "dedup_skips": self.dedup_skips,
            "dedup_review": self.dedup_review,
            "rows_created": self.rows_created,
            "rows_updated": self.rows_updated,
            "rows_skipped": self.rows_skipped,
            "rows_failed": self.rows_failed,
            "merges_tolerated": self.merges_tolerated,
            "db_phase_errors": self.db_phase_errors,
            "warnings": self.warnings[:50],
        }


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, Any],
    counters: RunCounters,
    extra: dict[str, Any] | None = None,
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": utc_now_iso(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
        **(extra or {}),
    }
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
