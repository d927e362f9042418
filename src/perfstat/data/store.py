from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, datetime
from typing import Any, Iterable, Optional

import pandas as pd

from perfstat.data.storage import Database
from perfstat.domain.fields import FieldKey, FieldKind
from perfstat.domain.models import PerformanceStatistic, StatisticStatus, User
from perfstat.engine.submission import record_key
from perfstat.exceptions import PersistenceFailure

logger = logging.getLogger(__name__)

_DOCUMENT_KINDS = {FieldKind.PDF.value, FieldKind.WORD.value}


def reporting_month_year(now: Optional[datetime] = None) -> str:
    """
    Statistics are filed against the previous calendar month, e.g. "SEP 2026" during October.
    """
    now = now or datetime.now(UTC)
    year, month = (now.year, now.month - 1) if now.month > 1 else (now.year - 1, 12)
    return datetime(year, month, 1).strftime("%b %Y").upper()


class StatisticStore:
    """
    Persisted performance statistics, one row per
    (user, month, question, subtopic, company, field kind, entry index).
    Saving the same field again updates the row; status never moves backwards.
    """

    def __init__(self, db: Database, uploads_base_url: str = "/uploads/performanceDocs/"):
        self.db = db
        self.uploads_base_url = uploads_base_url
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with self.db._connect() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS performance_statistics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id INTEGER NOT NULL,
                    battalion_id INTEGER,
                    month_year TEXT NOT NULL,
                    module_id INTEGER NOT NULL,
                    topic_id INTEGER NOT NULL,
                    question_id INTEGER NOT NULL,
                    sub_topic_id INTEGER,
                    company_id INTEGER,
                    field_kind TEXT NOT NULL DEFAULT 'value',
                    entry_index INTEGER,
                    value TEXT,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_stats_user_month_topic "
                "ON performance_statistics (user_id, month_year, topic_id);"
            )
            conn.commit()

    def save(
        self,
        records: Iterable[PerformanceStatistic],
        user: User,
        month_year: Optional[str] = None,
    ) -> int:
        month_year = month_year or reporting_month_year()
        now = datetime.now(UTC).isoformat()
        saved = 0
        try:
            with self.db._connect() as conn:
                cur = conn.cursor()
                for record in records:
                    self._upsert(cur, record, user, month_year, now)
                    saved += 1
                conn.commit()
        except sqlite3.Error as exc:
            logger.error("Saving statistics failed", extra={"user_id": user.id, "error": str(exc)})
            raise PersistenceFailure(f"Could not save statistics: {exc}") from exc
        logger.info("Saved statistics", extra={"user_id": user.id, "month_year": month_year, "count": saved})
        return saved

    def _upsert(self, cur, record: PerformanceStatistic, user: User, month_year: str, now: str) -> None:
        value = self._compact(record.value, record.field_kind)
        cur.execute(
            """
            SELECT id, status FROM performance_statistics
            WHERE user_id = ? AND month_year = ? AND question_id = ?
              AND sub_topic_id IS ? AND company_id IS ? AND field_kind = ? AND entry_index IS ?
            """,
            (
                user.id,
                month_year,
                record.question_id,
                record.sub_topic_id,
                record.company_id,
                record.field_kind,
                record.entry_index,
            ),
        )
        row = cur.fetchone()
        if row is None:
            cur.execute(
                """
                INSERT INTO performance_statistics
                    (user_id, battalion_id, month_year, module_id, topic_id, question_id, sub_topic_id,
                     company_id, field_kind, entry_index, value, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user.id,
                    user.battalion_id,
                    month_year,
                    record.module_id,
                    record.topic_id,
                    record.question_id,
                    record.sub_topic_id,
                    record.company_id,
                    record.field_kind,
                    record.entry_index,
                    value,
                    record.status.value,
                    now,
                    now,
                ),
            )
            return
        row_id, current = row
        status = record.status
        if StatisticStatus(current).rank > status.rank:
            status = StatisticStatus(current)
        cur.execute(
            """
            UPDATE performance_statistics
            SET value = ?, status = ?, module_id = ?, topic_id = ?, battalion_id = ?, updated_at = ?
            WHERE id = ?
            """,
            (value, status.value, record.module_id, record.topic_id, user.battalion_id, now, row_id),
        )

    def list_records(
        self,
        user_id: int,
        month_year: str,
        topic_id: Optional[int] = None,
    ) -> list[PerformanceStatistic]:
        query = (
            "SELECT module_id, topic_id, question_id, sub_topic_id, company_id, field_kind, entry_index, value, status "
            "FROM performance_statistics WHERE user_id = ? AND month_year = ?"
        )
        params: list[Any] = [user_id, month_year]
        if topic_id is not None:
            query += " AND topic_id = ?"
            params.append(topic_id)
        query += " ORDER BY id"

        with self.db._connect() as conn:
            df = pd.read_sql_query(query, conn, params=params)

        if df.empty:
            return []

        df = df.astype(object).where(pd.notna(df), None)
        records: list[PerformanceStatistic] = []
        for row in df.to_dict("records"):
            records.append(
                PerformanceStatistic(
                    module_id=int(row["module_id"]),
                    topic_id=int(row["topic_id"]),
                    question_id=int(row["question_id"]),
                    sub_topic_id=_opt_int(row["sub_topic_id"]),
                    company_id=_opt_int(row["company_id"]),
                    field_kind=row["field_kind"],
                    entry_index=_opt_int(row["entry_index"]),
                    value=self._expand(row["value"] or "", row["field_kind"]),
                    status=StatisticStatus(row["status"]),
                )
            )
        return records

    def prior_values(self, user_id: int, topic_id: int, month_year: str) -> dict[FieldKey, str]:
        return {record_key(r): r.value for r in self.list_records(user_id, month_year, topic_id)}

    def is_submitted(self, user_id: int, topic_id: int, month_year: str) -> bool:
        with self.db._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM performance_statistics "
                "WHERE user_id = ? AND topic_id = ? AND month_year = ? AND status = ? LIMIT 1",
                (user_id, topic_id, month_year, StatisticStatus.SUBMITTED.value),
            ).fetchone()
        return row is not None

    def status_summary(self, user_id: int, month_year: str) -> dict[str, Any]:
        """Topic and row counts per status for one reporting month."""
        query = (
            "SELECT status, COUNT(*) AS records, COUNT(DISTINCT topic_id) AS topics "
            "FROM performance_statistics WHERE user_id = ? AND month_year = ? GROUP BY status"
        )
        with self.db._connect() as conn:
            df = pd.read_sql_query(query, conn, params=[user_id, month_year])

        summary: dict[str, Any] = {
            "monthYear": month_year,
            "statuses": {s.value: {"records": 0, "topics": 0} for s in StatisticStatus},
        }
        for row in df.to_dict("records"):
            summary["statuses"][row["status"]] = {"records": int(row["records"]), "topics": int(row["topics"])}
        return summary

    def _compact(self, value: str, field_kind: str) -> str:
        if field_kind in _DOCUMENT_KINDS and self.uploads_base_url in value:
            return value.split(self.uploads_base_url, 1)[1]
        return value

    def _expand(self, value: str, field_kind: str) -> str:
        if field_kind in _DOCUMENT_KINDS and value and "/" not in value:
            return f"{self.uploads_base_url}{value}"
        return value


def _opt_int(value: Any) -> Optional[int]:
    return None if value is None else int(value)
