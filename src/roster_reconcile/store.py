"""roster_reconcile.store

PostgreSQL access for roster collections (psycopg 3).

Responsibilities:
  - Snapshot the existing entries of a collection as ExistingEntity values
  - Bulk upsert keyed on (collection_id, sequence_no)
  - Single-row insert and update, each inside its own savepoint
  - Full replacement through the import_replace_roster() server function,
    which validates the whole batch before deleting anything
  - Audit rows in import_log

Every write method runs inside a SAVEPOINT so a failure leaves the outer
transaction usable; the caller owns commit/rollback.
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import date
from typing import Any, Iterator

import psycopg

from roster_reconcile.records import PAYLOAD_FIELDS, ExistingEntity

log = logging.getLogger(__name__)

_ENTRY_COLUMNS = ", ".join(PAYLOAD_FIELDS)
_ENTRY_PLACEHOLDERS = ", ".join(["%s"] * len(PAYLOAD_FIELDS))
_UPSERT_SET = ", ".join(
    f"{f} = EXCLUDED.{f}" for f in PAYLOAD_FIELDS if f != "sequence_no"
)

_EXISTING_COLUMNS = (
    "id", "name", "rank", "sequence_no", "rating", "dob", "dob_original",
    "identifier", "full_name", "gender", "state", "city", "club",
    "federation", "disability", "notes",
)

# Columns an update may touch.
UPDATABLE_COLUMNS = frozenset(PAYLOAD_FIELDS)


def _payload_params(collection_id: str, payload: dict[str, Any]) -> tuple:
    return (collection_id, *(payload.get(f) for f in PAYLOAD_FIELDS))


def _as_entity(row: tuple) -> ExistingEntity:
    values = dict(zip(_EXISTING_COLUMNS, row))
    values["id"] = str(values["id"])
    if isinstance(values["dob"], date):
        values["dob"] = values["dob"].isoformat()
    return ExistingEntity(**values)


class RosterStore:
    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn
        self._sp_seq = 0

    # ------------------------------------------------------------------
    # Savepoints
    # ------------------------------------------------------------------

    @contextmanager
    def savepoint(self, prefix: str = "rr") -> Iterator[None]:
        self._sp_seq += 1
        name = f"{prefix}_{self._sp_seq}"
        self.conn.execute(f"SAVEPOINT {name}")
        try:
            yield
        except BaseException:
            self.conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            raise
        self.conn.execute(f"RELEASE SAVEPOINT {name}")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def collection_exists(self, collection_id: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM roster_collection WHERE id = %s",
            (collection_id,),
        ).fetchone()
        return row is not None

    def create_collection(self, name: str) -> str:
        row = self.conn.execute(
            "INSERT INTO roster_collection (name) VALUES (%s) RETURNING id",
            (name,),
        ).fetchone()
        return str(row[0])

    def fetch_existing(self, collection_id: str) -> list[ExistingEntity]:
        rows = self.conn.execute(
            f"""
            SELECT {", ".join(_EXISTING_COLUMNS)}
            FROM roster_entry
            WHERE collection_id = %s
            ORDER BY rank, id
            """,
            (collection_id,),
        ).fetchall()
        return [_as_entity(r) for r in rows]

    def count_entries(self, collection_id: str) -> int:
        row = self.conn.execute(
            "SELECT count(*) FROM roster_entry WHERE collection_id = %s",
            (collection_id,),
        ).fetchone()
        return int(row[0])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def bulk_upsert(self, collection_id: str, payloads: list[dict[str, Any]]) -> int:
        """Insert payloads; rows sharing a sequence_no with an existing entry update it."""
        if not payloads:
            return 0
        with self.savepoint("bulk"), self.conn.cursor() as cur:
            cur.executemany(
                f"""
                INSERT INTO roster_entry (collection_id, {_ENTRY_COLUMNS})
                VALUES (%s, {_ENTRY_PLACEHOLDERS})
                ON CONFLICT (collection_id, sequence_no)
                DO UPDATE SET {_UPSERT_SET}, updated_at = now()
                """,
                [_payload_params(collection_id, p) for p in payloads],
            )
        log.debug("bulk upsert wrote %d row(s) to %s", len(payloads), collection_id)
        return len(payloads)

    def insert_one(self, collection_id: str, payload: dict[str, Any]) -> str:
        with self.savepoint("ins"):
            row = self.conn.execute(
                f"""
                INSERT INTO roster_entry (collection_id, {_ENTRY_COLUMNS})
                VALUES (%s, {_ENTRY_PLACEHOLDERS})
                RETURNING id
                """,
                _payload_params(collection_id, payload),
            ).fetchone()
        return str(row[0])

    def update_one(self, collection_id: str, entry_id: str, changes: dict[str, Any]) -> bool:
        """Apply changes to one entry; returns False when nothing matched."""
        columns = [c for c in changes if c in UPDATABLE_COLUMNS]
        if not columns:
            return False
        assignments = ", ".join(f"{c} = %s" for c in columns)
        with self.savepoint("upd"):
            result = self.conn.execute(
                f"""
                UPDATE roster_entry
                SET {assignments}, updated_at = now()
                WHERE id = %s AND collection_id = %s
                """,
                (*(changes[c] for c in columns), entry_id, collection_id),
            )
        return result.rowcount == 1

    def replace_all(
        self, collection_id: str, rows: list[dict[str, Any]]
    ) -> tuple[int, list[dict[str, Any]]]:
        """Swap the whole collection for rows; returns (inserted_count, error_rows).

        The server function writes nothing when any row is rejected.
        """
        with self.savepoint("repl"):
            row = self.conn.execute(
                "SELECT inserted_count, error_rows FROM import_replace_roster(%s, %s::jsonb)",
                (collection_id, json.dumps(rows, default=str)),
            ).fetchone()
        inserted, errors = int(row[0]), row[1]
        if isinstance(errors, str):
            errors = json.loads(errors)
        return inserted, list(errors or [])

    def insert_import_log(self, record: dict[str, Any]) -> str:
        row = self.conn.execute(
            """
            INSERT INTO import_log
              (collection_id, run_id, import_mode, file_hash, rules_version,
               policy_fingerprint, started_at, finished_at, duration_ms,
               total_rows, accepted_count, created_count, updated_count,
               skipped_count, failed_count, tolerated_count, top_reasons,
               sample_errors, merge_policy_snapshot, error_rows, meta)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                    %s::jsonb, %s::jsonb, %s::jsonb, %s::jsonb, %s::jsonb)
            RETURNING id
            """,
            (
                record["collection_id"],
                record["run_id"],
                record["import_mode"],
                record.get("file_hash"),
                record.get("rules_version"),
                record.get("policy_fingerprint"),
                record["started_at"],
                record["finished_at"],
                record["duration_ms"],
                record["total_rows"],
                record.get("accepted_rows", 0),
                record["created"],
                record["updated"],
                record["skipped"],
                record["failed"],
                record["tolerated"],
                json.dumps(record.get("top_reasons") or [], default=str),
                json.dumps(record.get("sample_errors") or [], default=str),
                json.dumps(record.get("merge_policy_snapshot") or {}, default=str),
                json.dumps(record.get("error_rows") or [], default=str),
                json.dumps(record.get("meta") or {}, default=str),
            ),
        ).fetchone()
        return str(row[0])
