"""Document metadata records."""

from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from kbchat.models import DocumentRecord, DocumentStatus, DocumentVisibility, utcnow
from kbchat.storage.database import Session


class DocumentRepository:
    def create(
        self,
        session: Session,
        *,
        owner_id: str,
        name: str,
        description: str = "",
        labels: Sequence[str] = (),
        visibility: DocumentVisibility = DocumentVisibility.PRIVATE,
    ) -> DocumentRecord:
        now = utcnow()
        record = DocumentRecord(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            name=name,
            description=description,
            visibility=visibility,
            labels=tuple(dict.fromkeys(labels)),
            status=DocumentStatus.PENDING,
            chunk_count=0,
            created_at=now,
            updated_at=now,
        )
        session.begin()
        session.execute(
            """
            INSERT INTO documents
                (id, owner_id, name, description, visibility, labels, status, chunk_count, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.owner_id,
                record.name,
                record.description,
                record.visibility.value,
                json.dumps(list(record.labels)),
                record.status.value,
                record.chunk_count,
                record.created_at.isoformat(),
                record.updated_at.isoformat(),
            ),
        )
        return record

    def get(self, session: Session, document_id: str) -> Optional[DocumentRecord]:
        row = session.fetchone("SELECT * FROM documents WHERE id = ?", (document_id,))
        return self._to_record(row) if row else None

    def set_status(
        self,
        session: Session,
        document_id: str,
        status: DocumentStatus,
        *,
        chunk_count: Optional[int] = None,
    ) -> None:
        session.begin()
        if chunk_count is None:
            session.execute(
                "UPDATE documents SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, utcnow().isoformat(), document_id),
            )
        else:
            session.execute(
                "UPDATE documents SET status = ?, chunk_count = ?, updated_at = ? WHERE id = ?",
                (status.value, chunk_count, utcnow().isoformat(), document_id),
            )

    def update(
        self,
        session: Session,
        document_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        labels: Optional[Sequence[str]] = None,
        visibility: Optional[DocumentVisibility] = None,
    ) -> None:
        assignments: list[str] = []
        params: list = []
        if name is not None:
            assignments.append("name = ?")
            params.append(name)
        if description is not None:
            assignments.append("description = ?")
            params.append(description)
        if labels is not None:
            assignments.append("labels = ?")
            params.append(json.dumps(list(dict.fromkeys(labels))))
        if visibility is not None:
            assignments.append("visibility = ?")
            params.append(DocumentVisibility(visibility).value)
        if not assignments:
            return
        assignments.append("updated_at = ?")
        params.append(utcnow().isoformat())
        session.begin()
        session.execute(f"UPDATE documents SET {', '.join(assignments)} WHERE id = ?", [*params, document_id])

    def delete(self, session: Session, document_id: str) -> None:
        session.begin()
        session.execute("DELETE FROM documents WHERE id = ?", (document_id,))

    def list_by_owner(
        self,
        session: Session,
        owner_id: str,
        *,
        page: int = 1,
        limit: int = 20,
        search: str = "",
        labels: Sequence[str] = (),
    ) -> Tuple[List[DocumentRecord], int]:
        clauses = ["owner_id = ?"]
        params: list = [owner_id]
        if search:
            clauses.append("(name LIKE ? OR description LIKE ?)")
            params.extend([f"%{search}%", f"%{search}%"])
        for label in labels:
            clauses.append("EXISTS (SELECT 1 FROM json_each(documents.labels) WHERE json_each.value = ?)")
            params.append(label)
        where = " AND ".join(clauses)
        total = session.fetchone(f"SELECT COUNT(*) AS n FROM documents WHERE {where}", params)["n"]
        offset = (max(page, 1) - 1) * limit
        rows = session.fetchall(
            f"SELECT * FROM documents WHERE {where} ORDER BY updated_at DESC LIMIT ? OFFSET ?",
            [*params, limit, offset],
        )
        return [self._to_record(row) for row in rows], int(total)

    def unique_labels(self, session: Session, owner_id: str) -> List[str]:
        rows = session.fetchall(
            """
            SELECT DISTINCT json_each.value AS label
            FROM documents, json_each(documents.labels)
            WHERE documents.owner_id = ?
            ORDER BY label
            """,
            (owner_id,),
        )
        return [row["label"] for row in rows]

    @staticmethod
    def _to_record(row: sqlite3.Row) -> DocumentRecord:
        return DocumentRecord(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            description=row["description"],
            visibility=DocumentVisibility(row["visibility"]),
            labels=tuple(json.loads(row["labels"] or "[]")),
            status=DocumentStatus(row["status"]),
            chunk_count=row["chunk_count"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
