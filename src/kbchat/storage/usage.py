"""Append-only usage event log."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional

from kbchat.models import UsageEvent
from kbchat.storage.database import Database


class UsageEventRepository:
    """Writes on its own short-lived connection, outside any request transaction."""

    def __init__(self, database: Database) -> None:
        self._database = database

    def insert(self, event: UsageEvent) -> None:
        with self._database.session() as session:
            session.begin()
            session.execute(
                """
                INSERT INTO usage_events (user_id, provider, model_name, token_count, event_type, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event.user_id,
                    event.provider,
                    event.model_name,
                    int(event.token_count),
                    event.event_type.value,
                    event.created_at.isoformat(),
                ),
            )

    def totals(
        self,
        *,
        user_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """Token totals per event type, optionally limited to a user and a time window."""

        clauses: list[str] = []
        params: list = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if start is not None:
            clauses.append("created_at >= ?")
            params.append(start.isoformat())
        if end is not None:
            clauses.append("created_at < ?")
            params.append(end.isoformat())
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._database.session() as session:
            rows = session.fetchall(
                f"SELECT event_type, SUM(token_count) AS tokens FROM usage_events {where} GROUP BY event_type",
                params,
            )
        return {row["event_type"]: int(row["tokens"] or 0) for row in rows}
