"""roster_reconcile.workbook

Turns an uploaded roster file (CSV or XLSX) into a ParsedTable.

Exports from tournament software rarely start on row 1: they carry titles,
arbiter names and blank rows above the real header.  detect_header_row()
scores the first rows of every sheet and picks the best candidate.

parse_with_fallback() runs the local parse under a timeout and, when a
remote parse endpoint is configured, retries there on timeout or
ParseError.
"""

from __future__ import annotations

import csv
import hashlib
import io
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import requests
from openpyxl import load_workbook

from roster_reconcile.column_mapping import normalize_header
from roster_reconcile.shared import ParseError

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAX_ROWS_TO_SCAN = 25
HEADER_SCORE_MIN = 15

_CORE_TOKENS = ("rank", "name", "sno", "rtg", "irtg", "rating", "birth", "dob")
_SECONDARY_TOKENS = ("fide", "gender", "fed", "club", "state", "city")
_EXCEL_SUFFIXES = frozenset({".xlsx", ".xlsm"})

SOURCE_SWISS_MANAGER = "swiss-manager"
SOURCE_ORGANIZER_TEMPLATE = "organizer-template"
SOURCE_UNKNOWN = "unknown"
SOURCE_REMOTE = "remote"


# ---------------------------------------------------------------------------
# ParsedTable
# ---------------------------------------------------------------------------

@dataclass
class ParsedTable:
    sheet_name: str
    header_row_index: int
    headers: list[str]
    rows: list[dict[str, Any]] = field(default_factory=list)
    file_hash: str = ""
    source: str = SOURCE_UNKNOWN
    header_score: int = 0
    parsed_by: str = "local"

    def to_dict(self) -> dict[str, Any]:
        return {
            "sheet_name": self.sheet_name,
            "header_row_index": self.header_row_index,
            "headers": self.headers,
            "row_count": len(self.rows),
            "file_hash": self.file_hash,
            "source": self.source,
            "header_score": self.header_score,
            "parsed_by": self.parsed_by,
        }


@dataclass(frozen=True)
class HeaderCandidate:
    sheet_name: str
    row_index: int
    score: int
    headers: list[str]


# ---------------------------------------------------------------------------
# Header detection
# ---------------------------------------------------------------------------

def _cell_text(cell: Any) -> str:
    return "" if cell is None else str(cell).strip()


def _header_token(cell: Any) -> str:
    s = _cell_text(cell).replace("\u00a0", " ")
    s = re.sub(r"\s+", "_", s)
    return re.sub(r"[^a-z0-9_]", "", s.lower())


def _as_number(cell: Any) -> float | None:
    if isinstance(cell, bool):
        return None
    if isinstance(cell, (int, float)):
        return float(cell)
    try:
        return float(_cell_text(cell))
    except ValueError:
        return None


def score_header_row(row: list[Any]) -> int:
    tokens = [_header_token(c) for c in row]
    score = 0
    score += 10 * sum(1 for t in _CORE_TOKENS if any(t in cell for cell in tokens))
    score += 3 * sum(1 for t in _SECONDARY_TOKENS if any(t in cell for cell in tokens))

    if any(re.fullmatch(r"\d{4}", cell) for cell in tokens):
        score -= 20
    numbers = [_as_number(c) for c in row]
    if any(n is not None and n > 100 for n in numbers):
        score -= 10
    if sum(1 for c in row if _cell_text(c)) < 3:
        score -= 15

    if "rank" in tokens:
        score += 5
    if "sno" in tokens or "startno" in tokens:
        score += 5
    if "rtg" in tokens:
        score += 5
    return score


def with_unique_headers(row: list[Any]) -> list[str]:
    """'Name', 'Name' → 'Name', 'Name (2)'; blank cells → '__EMPTY_COL_<idx>'."""
    seen: dict[str, int] = {}
    out: list[str] = []
    for idx, cell in enumerate(row):
        text = _cell_text(cell)
        if not text:
            out.append(f"__EMPTY_COL_{idx}")
            continue
        count = seen.get(text, 0)
        seen[text] = count + 1
        out.append(text if count == 0 else f"{text} ({count + 1})")
    return out


def detect_header_row(
    sheets: dict[str, list[list[Any]]],
    max_rows_to_scan: int = MAX_ROWS_TO_SCAN,
) -> HeaderCandidate:
    """Return the best-scoring header row across all sheets.

    Raises:
        ParseError: if no row scores above HEADER_SCORE_MIN.
    """
    candidates: list[HeaderCandidate] = []
    for sheet_name, rows in sheets.items():
        for idx, row in enumerate(rows[:max_rows_to_scan]):
            if not row or len(row) < 3:
                continue
            score = score_header_row(row)
            if score > HEADER_SCORE_MIN:
                candidates.append(HeaderCandidate(sheet_name, idx, score, with_unique_headers(row)))

    if not candidates:
        raise ParseError(
            "No valid header row found. The file must contain player data "
            "with Rank and Name columns."
        )
    # Stable sort keeps the earliest sheet/row on equal scores.
    candidates.sort(key=lambda c: -c.score)
    best = candidates[0]
    log.info(
        "header row detected: sheet=%s row=%d score=%d",
        best.sheet_name, best.row_index, best.score,
    )
    return best


def detect_source(headers: list[str]) -> str:
    keys = {normalize_header(h) for h in headers}
    if "sno" in keys and ("rtg" in keys or "irtg" in keys):
        return SOURCE_SWISS_MANAGER
    if {"rank", "name"} <= keys and keys & {"dob", "date_of_birth", "birth"}:
        return SOURCE_ORGANIZER_TEMPLATE
    return SOURCE_UNKNOWN


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------

def _read_csv_sheets(data: bytes) -> dict[str, list[list[Any]]]:
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError:
        text = data.decode("latin-1")
    return {"csv": [list(r) for r in csv.reader(io.StringIO(text))]}


def _read_xlsx_sheets(data: bytes) -> dict[str, list[list[Any]]]:
    try:
        wb = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    except Exception as exc:
        raise ParseError(f"cannot open workbook: {exc}") from exc
    try:
        sheets: dict[str, list[list[Any]]] = {}
        for ws in wb.worksheets:
            sheets[ws.title] = [list(r) for r in ws.iter_rows(values_only=True)]
        return sheets
    finally:
        wb.close()


def _rows_below_header(
    grid: list[list[Any]],
    header_row_index: int,
    headers: list[str],
) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for raw in grid[header_row_index + 1:]:
        if not any(_cell_text(c) for c in raw):
            continue
        padded = list(raw) + [None] * (len(headers) - len(raw))
        rows.append({h: padded[i] for i, h in enumerate(headers)})
    return rows


def read_table(data: bytes, filename: str) -> ParsedTable:
    """Parse CSV or XLSX bytes into a ParsedTable.

    Raises:
        ParseError: unsupported extension, unreadable file, or no header row.
    """
    suffix = Path(filename).suffix.lower()
    if suffix == ".csv":
        sheets = _read_csv_sheets(data)
    elif suffix in _EXCEL_SUFFIXES:
        sheets = _read_xlsx_sheets(data)
    else:
        raise ParseError(f"unsupported file type {suffix!r}; expected .csv or .xlsx")

    best = detect_header_row(sheets)
    grid = sheets[best.sheet_name]
    return ParsedTable(
        sheet_name=best.sheet_name,
        header_row_index=best.row_index,
        headers=best.headers,
        rows=_rows_below_header(grid, best.row_index, best.headers),
        file_hash=hashlib.sha256(data).hexdigest(),
        source=detect_source(best.headers),
        header_score=best.score,
    )


# ---------------------------------------------------------------------------
# Remote fallback
# ---------------------------------------------------------------------------

def parse_remote(
    data: bytes,
    filename: str,
    url: str,
    timeout_seconds: float,
    session: requests.Session | None = None,
) -> ParsedTable:
    """POST the file to a remote parse endpoint.

    The endpoint answers with JSON: {sheet_name, header_row_index, headers,
    rows, source?}.
    """
    http = session or requests.Session()
    try:
        resp = http.post(
            url,
            files={"file": (filename, data)},
            timeout=timeout_seconds,
        )
        resp.raise_for_status()
        body = resp.json()
    except requests.RequestException as exc:
        raise ParseError(f"remote parse failed: {exc}") from exc
    except ValueError as exc:
        raise ParseError(f"remote parse returned invalid JSON: {exc}") from exc

    try:
        headers = [str(h) for h in body["headers"]]
        table = ParsedTable(
            sheet_name=str(body.get("sheet_name") or "remote"),
            header_row_index=int(body.get("header_row_index") or 0),
            headers=headers,
            rows=[dict(r) for r in body["rows"]],
            file_hash=hashlib.sha256(data).hexdigest(),
            source=str(body.get("source") or detect_source(headers)),
            parsed_by=SOURCE_REMOTE,
        )
    except (KeyError, TypeError) as exc:
        raise ParseError(f"remote parse response missing field: {exc}") from exc
    return table


def parse_with_fallback(
    data: bytes,
    filename: str,
    remote_url: str | None = None,
    timeout_seconds: float = 30.0,
    session: requests.Session | None = None,
) -> ParsedTable:
    """Parse locally under a timeout; fall back to remote_url when given."""
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="roster-parse")
    future = executor.submit(read_table, data, filename)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError:
        reason = f"local parse exceeded {timeout_seconds:.1f}s"
        if not remote_url:
            raise ParseError(reason)
    except ParseError as exc:
        if not remote_url:
            raise
        reason = str(exc)
    finally:
        executor.shutdown(wait=False, cancel_futures=True)

    log.warning("local parse failed (%s); falling back to %s", reason, remote_url)
    return parse_remote(data, filename, remote_url, timeout_seconds, session)
