"""Relational persistence of documents and their lifecycle."""
from __future__ import annotations

import logging
import sqlite3
import uuid
from typing import List, Optional

from .errors import DocumentNotFound, IllegalTransition
from .models import Document, DocumentStatus
from .storage import Database, from_db_timestamp, to_db_timestamp

LOGGER = logging.getLogger(__name__)


class DocumentRepository:
    """CRUD over the ``documents`` table with guarded status transitions."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def create(
        self,
        *,
        owner_id: str,
        content_hash: str,
        file_name: Optional[str] = None,
        content_type: Optional[str] = None,
        size_bytes: int = 0,
    ) -> Document:
        document = Document(
            id=uuid.uuid4().hex,
            owner_id=owner_id,
            content_hash=content_hash,
            status=DocumentStatus.PENDING,
            file_name=file_name,
            content_type=content_type,
            size_bytes=size_bytes,
        )
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO documents(
                    id, owner_id, content_hash, status, file_name, content_type,
                    size_bytes, chunk_count, text_length, error, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    document.id,
                    document.owner_id,
                    document.content_hash,
                    document.status.value,
                    document.file_name,
                    document.content_type,
                    document.size_bytes,
                    document.chunk_count,
                    document.text_length,
                    document.error,
                    to_db_timestamp(document.created_at),
                    to_db_timestamp(document.updated_at),
                ),
            )
        LOGGER.debug("Created document %s for owner %s", document.id, owner_id)
        return document

    def get(self, document_id: str) -> Optional[Document]:
        row = self._db.fetchone("SELECT * FROM documents WHERE id = ?", (document_id,))
        return _row_to_document(row) if row is not None else None

    def get_for_owner(self, owner_id: str, document_id: str) -> Document:
        document = self.get(document_id)
        if document is None or document.owner_id != owner_id:
            raise DocumentNotFound(f"Document {document_id} not found")
        return document

    def list_for_owner(self, owner_id: str, status: Optional[DocumentStatus] = None) -> List[Document]:
        if status is None:
            rows = self._db.fetchall(
                "SELECT * FROM documents WHERE owner_id = ? ORDER BY created_at, id",
                (owner_id,),
            )
        else:
            rows = self._db.fetchall(
                "SELECT * FROM documents WHERE owner_id = ? AND status = ? ORDER BY created_at, id",
                (owner_id, status.value),
            )
        return [_row_to_document(row) for row in rows]

    def transition(self, document_id: str, target: DocumentStatus, **changes: object) -> Document:
        """Move a document to ``target``, rejecting illegal transitions.

        The update is conditional on the status read inside the same
        transaction, so a concurrent writer cannot slip an intermediate
        state in between the check and the write.
        """

        with self._db.transaction() as conn:
            row = conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone()
            if row is None:
                raise DocumentNotFound(f"Document {document_id} not found")
            current = _row_to_document(row)
            updated = current.transitioned(target, **changes)
            affected = conn.execute(
                """
                UPDATE documents
                SET status = ?, chunk_count = ?, text_length = ?, error = ?, updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    updated.status.value,
                    updated.chunk_count,
                    updated.text_length,
                    updated.error,
                    to_db_timestamp(updated.updated_at),
                    document_id,
                    current.status.value,
                ),
            ).rowcount
            if affected != 1:
                raise IllegalTransition(
                    f"Document {document_id} changed status concurrently; refusing {target.value}"
                )
        LOGGER.info(
            "Document %s transitioned %s -> %s", document_id, current.status.value, target.value
        )
        return updated

    def delete(self, document_id: str) -> bool:
        with self._db.transaction() as conn:
            deleted = conn.execute("DELETE FROM documents WHERE id = ?", (document_id,)).rowcount
        return deleted == 1


def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        id=row["id"],
        owner_id=row["owner_id"],
        content_hash=row["content_hash"],
        status=DocumentStatus(row["status"]),
        file_name=row["file_name"],
        content_type=row["content_type"],
        size_bytes=row["size_bytes"],
        chunk_count=row["chunk_count"],
        text_length=row["text_length"],
        error=row["error"],
        created_at=from_db_timestamp(row["created_at"]),
        updated_at=from_db_timestamp(row["updated_at"]),
    )


__all__ = ["DocumentRepository"]
