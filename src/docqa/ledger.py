"""Durable idempotency ledger mapping client keys to request outcomes."""
from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .models import IdempotencyRecord, IdempotencyStatus, utcnow
from .storage import Database, from_db_timestamp, to_db_timestamp

LOGGER = logging.getLogger(__name__)


class BeginOutcome(str, Enum):
    PROCEED = "proceed"
    ALREADY_COMPLETED = "already_completed"
    CONFLICT = "conflict"
    IN_PROGRESS = "in_progress"


@dataclass(frozen=True, slots=True)
class BeginResult:
    outcome: BeginOutcome
    result: Optional[str] = None


class IdempotencyLedger:
    """Atomic check-and-claim of idempotency keys.

    ``begin`` is the single decision point. Claiming a new key relies on the
    primary key of ``idempotency_records``: ``INSERT ... ON CONFLICT DO
    NOTHING`` either inserts the row (the caller proceeds) or reports zero
    affected rows, in which case the existing record decides the outcome.
    Two racing callers therefore never both observe a fresh claim.
    """

    def __init__(self, database: Database) -> None:
        self._db = database

    def begin(self, key: str, fingerprint: str) -> BeginResult:
        if not key:
            raise ValueError("idempotency key must be a non-empty string")
        now = to_db_timestamp(utcnow())
        with self._db.transaction() as conn:
            inserted = conn.execute(
                """
                INSERT INTO idempotency_records(key, fingerprint, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(key) DO NOTHING
                """,
                (key, fingerprint, IdempotencyStatus.IN_PROGRESS.value, now, now),
            ).rowcount
            if inserted == 1:
                LOGGER.debug("Claimed idempotency key %s", key)
                return BeginResult(BeginOutcome.PROCEED)

            row = conn.execute(
                "SELECT fingerprint, status, result FROM idempotency_records WHERE key = ?",
                (key,),
            ).fetchone()
            if row["fingerprint"] != fingerprint:
                return BeginResult(BeginOutcome.CONFLICT)

            status = IdempotencyStatus(row["status"])
            if status is IdempotencyStatus.COMPLETED:
                return BeginResult(BeginOutcome.ALREADY_COMPLETED, row["result"])
            if status is IdempotencyStatus.IN_PROGRESS:
                return BeginResult(BeginOutcome.IN_PROGRESS, row["result"])

            # A failed attempt for the same request may be retried under the same key.
            reclaimed = conn.execute(
                """
                UPDATE idempotency_records
                SET status = ?, result = NULL, error = NULL, updated_at = ?
                WHERE key = ? AND status = ?
                """,
                (IdempotencyStatus.IN_PROGRESS.value, now, key, IdempotencyStatus.FAILED.value),
            ).rowcount
            if reclaimed == 1:
                LOGGER.info("Re-claimed failed idempotency key %s", key)
                return BeginResult(BeginOutcome.PROCEED)
            return BeginResult(BeginOutcome.IN_PROGRESS)

    def attach(self, key: str, result: str) -> None:
        """Record the result reference of an in-progress request once known."""

        self._update(key, IdempotencyStatus.IN_PROGRESS, result=result, error=None)

    def complete(self, key: str, result: str) -> None:
        self._update(key, IdempotencyStatus.COMPLETED, result=result, error=None)

    def fail(self, key: str, reason: str) -> None:
        record = self.get(key)
        result = record.result if record else None
        self._update(key, IdempotencyStatus.FAILED, result=result, error=reason)

    def get(self, key: str) -> Optional[IdempotencyRecord]:
        row = self._db.fetchone("SELECT * FROM idempotency_records WHERE key = ?", (key,))
        return _row_to_record(row) if row is not None else None

    def _update(
        self,
        key: str,
        status: IdempotencyStatus,
        *,
        result: Optional[str],
        error: Optional[str],
    ) -> None:
        with self._db.transaction() as conn:
            updated = conn.execute(
                """
                UPDATE idempotency_records
                SET status = ?, result = ?, error = ?, updated_at = ?
                WHERE key = ? AND status = ?
                """,
                (
                    status.value,
                    result,
                    error,
                    to_db_timestamp(utcnow()),
                    key,
                    IdempotencyStatus.IN_PROGRESS.value,
                ),
            ).rowcount
        if updated != 1:
            raise KeyError(f"No in-progress idempotency record for key {key!r}")


def _row_to_record(row: sqlite3.Row) -> IdempotencyRecord:
    return IdempotencyRecord(
        key=row["key"],
        fingerprint=row["fingerprint"],
        status=IdempotencyStatus(row["status"]),
        result=row["result"],
        error=row["error"],
        created_at=from_db_timestamp(row["created_at"]),
        updated_at=from_db_timestamp(row["updated_at"]),
    )


__all__ = ["BeginOutcome", "BeginResult", "IdempotencyLedger"]
