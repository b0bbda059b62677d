"""
Processing log repository.

One row per processing attempt.  A row is opened as `started` and closed
exactly once, as `completed` or `failed`; the close is a guarded UPDATE so
a second terminal write for the same attempt raises instead of overwriting.
"""
from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import func, select, update

from mosaic.errors import InvalidTransitionError
from mosaic.schemas import LogStatus, ProcessingLogEntry, ProcessingStats
from mosaic.storage.database import Database
from mosaic.storage.models import ItemRow, ProcessingLogRow


def _to_entry(row: ProcessingLogRow, item_title: Optional[str] = None) -> ProcessingLogEntry:
    return ProcessingLogEntry(
        id=row.id,
        item_id=row.item_id,
        operation=row.operation,
        status=LogStatus(row.status),
        message=row.message,
        error_details=row.error_details,
        processing_time_ms=row.processing_time_ms,
        created_at=row.created_at,
        item_title=item_title,
    )


class ProcessingLogRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    def start(self, item_id: str, operation: str, message: str | None = None) -> str:
        row = ProcessingLogRow(
            item_id=item_id,
            operation=operation,
            status=LogStatus.STARTED.value,
            message=message,
        )
        with self.db.session() as session:
            session.add(row)
            session.flush()
            return row.id

    def complete(self, log_id: str, message: str, processing_time_ms: int) -> None:
        self._close(
            log_id,
            status=LogStatus.COMPLETED,
            message=message,
            processing_time_ms=processing_time_ms,
        )

    def fail(
        self,
        log_id: str,
        message: str,
        error_details: dict[str, Any],
        processing_time_ms: int | None = None,
    ) -> None:
        self._close(
            log_id,
            status=LogStatus.FAILED,
            message=message,
            error_details=error_details,
            processing_time_ms=processing_time_ms,
        )

    def _close(self, log_id: str, status: LogStatus, **values: Any) -> None:
        stmt = (
            update(ProcessingLogRow)
            .where(
                ProcessingLogRow.id == log_id,
                ProcessingLogRow.status == LogStatus.STARTED.value,
            )
            .values(status=status.value, **values)
        )
        with self.db.session() as session:
            if session.execute(stmt).rowcount != 1:
                current = session.scalar(
                    select(ProcessingLogRow.status).where(ProcessingLogRow.id == log_id)
                )
                raise InvalidTransitionError(log_id, str(current), status.value)

    # --- Queries --------------------------------------------------------------

    def logs_for_item(self, item_id: str) -> list[ProcessingLogEntry]:
        stmt = (
            select(ProcessingLogRow)
            .where(ProcessingLogRow.item_id == item_id)
            .order_by(ProcessingLogRow.created_at)
        )
        with self.db.session() as session:
            return [_to_entry(r) for r in session.scalars(stmt)]

    def list_logs(
        self,
        user_id: str,
        item_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ProcessingLogEntry]:
        """Newest first, scoped to the user's items, with the item title joined in."""
        stmt = (
            select(ProcessingLogRow, ItemRow.title)
            .join(ItemRow, ItemRow.id == ProcessingLogRow.item_id)
            .where(ItemRow.user_id == user_id)
        )
        if item_id:
            stmt = stmt.where(ProcessingLogRow.item_id == item_id)
        stmt = stmt.order_by(ProcessingLogRow.created_at.desc()).limit(limit).offset(offset)

        with self.db.session() as session:
            return [_to_entry(row, title) for row, title in session.execute(stmt)]

    def recent_failures(self, user_id: str, limit: int = 10) -> list[ProcessingLogEntry]:
        stmt = (
            select(ProcessingLogRow, ItemRow.title)
            .join(ItemRow, ItemRow.id == ProcessingLogRow.item_id)
            .where(
                ItemRow.user_id == user_id,
                ProcessingLogRow.status == LogStatus.FAILED.value,
            )
            .order_by(ProcessingLogRow.created_at.desc())
            .limit(limit)
        )
        with self.db.session() as session:
            return [_to_entry(row, title) for row, title in session.execute(stmt)]

    def stats(self, user_id: str) -> ProcessingStats:
        stmt = (
            select(ProcessingLogRow.status, func.count(), func.avg(ProcessingLogRow.processing_time_ms))
            .join(ItemRow, ItemRow.id == ProcessingLogRow.item_id)
            .where(ItemRow.user_id == user_id)
            .group_by(ProcessingLogRow.status)
        )
        counts: dict[str, int] = {}
        avg_completed: Optional[float] = None
        with self.db.session() as session:
            for status, count, avg_ms in session.execute(stmt):
                counts[status] = count
                if status == LogStatus.COMPLETED.value and avg_ms is not None:
                    avg_completed = round(float(avg_ms), 1)

        return ProcessingStats(
            total=sum(counts.values()),
            completed=counts.get(LogStatus.COMPLETED.value, 0),
            failed=counts.get(LogStatus.FAILED.value, 0),
            in_progress=counts.get(LogStatus.STARTED.value, 0),
            avg_processing_time_ms=avg_completed,
        )
