"""
Item repository: notes / tasks / events, their tags and their chunks.

Item CRUD for end users lives outside the pipeline; this repository only
offers what the processing, graph and search stages need, plus
create_item() for seeding and for AI-generated downstream items.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional

from loguru import logger
from sqlalchemy import delete, select, update

from mosaic.chunking.schemas import Chunk
from mosaic.schemas import ItemOrigin, ItemStatus, ItemType, SourceItem
from mosaic.storage.database import Database
from mosaic.storage.models import ChunkRow, ItemRow, ItemTagRow, TagRow
from mosaic.utils.helpers import normalise_tag, utcnow

_UPDATABLE_FIELDS = {
    "title", "raw_text", "summary", "language", "status", "file_url", "metadata",
    "priority", "due_date", "task_status", "location", "start_datetime",
    "end_datetime", "all_day",
}


def _to_item(row: ItemRow, tags: list[str] | None = None) -> SourceItem:
    return SourceItem(
        id=row.id,
        user_id=row.user_id,
        item_type=ItemType(row.item_type),
        title=row.title,
        raw_text=row.raw_text,
        summary=row.summary,
        language=row.language,
        status=ItemStatus(row.status),
        file_url=row.file_url,
        metadata=dict(row.meta or {}),
        priority=row.priority,
        due_date=row.due_date,
        task_status=row.task_status,
        location=row.location,
        start_datetime=row.start_datetime,
        end_datetime=row.end_datetime,
        all_day=bool(row.all_day),
        source_type=ItemOrigin(row.source_type),
        source_item_id=row.source_item_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
        tags=tags or [],
    )


def _to_chunk(row: ChunkRow) -> Chunk:
    return Chunk(
        chunk_id=row.id,
        item_id=row.item_id,
        order_index=row.order_index,
        text=row.chunk_text,
        embedding=row.embedding,
        token_estimate=row.token_estimate,
    )


class ItemRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    # --- Items ----------------------------------------------------------------

    def create_item(
        self,
        user_id: str,
        item_type: ItemType,
        *,
        title: Optional[str] = None,
        raw_text: Optional[str] = None,
        status: ItemStatus = ItemStatus.RAW,
        source_type: ItemOrigin = ItemOrigin.MANUAL,
        source_item_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
        **fields: Any,
    ) -> SourceItem:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise TypeError(f"Unknown item fields: {sorted(unknown)}")
        now = utcnow()
        row = ItemRow(
            user_id=user_id,
            item_type=ItemType(item_type).value,
            title=title,
            raw_text=raw_text,
            status=ItemStatus(status).value,
            source_type=ItemOrigin(source_type).value,
            source_item_id=source_item_id,
            meta=dict(metadata or {}),
            created_at=created_at or now,
            updated_at=created_at or now,
            **fields,
        )
        with self.db.session() as session:
            session.add(row)
            session.flush()
            return _to_item(row)

    def get_item(self, item_id: str) -> SourceItem | None:
        with self.db.session() as session:
            row = session.get(ItemRow, item_id)
            if row is None:
                return None
            return _to_item(row, self._tags(session, [row.id]).get(row.id, []))

    def list_items(
        self,
        user_id: str,
        item_type: ItemType | None = None,
        status: ItemStatus | None = None,
    ) -> list[SourceItem]:
        stmt = select(ItemRow).where(ItemRow.user_id == user_id)
        if item_type is not None:
            stmt = stmt.where(ItemRow.item_type == ItemType(item_type).value)
        if status is not None:
            stmt = stmt.where(ItemRow.status == ItemStatus(status).value)
        stmt = stmt.order_by(ItemRow.created_at, ItemRow.id)

        with self.db.session() as session:
            rows = session.scalars(stmt).all()
            tags = self._tags(session, [r.id for r in rows])
            return [_to_item(r, tags.get(r.id, [])) for r in rows]

    def try_begin_processing(self, item_id: str, allowed_from: Iterable[ItemStatus]) -> bool:
        """
        Compare-and-swap `status -> processing`.

        Returns True only for the caller whose UPDATE matched, so two racing
        runs for the same item can never both proceed.
        """
        allowed = [ItemStatus(s).value for s in allowed_from]
        stmt = (
            update(ItemRow)
            .where(ItemRow.id == item_id, ItemRow.status.in_(allowed))
            .values(status=ItemStatus.PROCESSING.value, updated_at=utcnow())
        )
        with self.db.session() as session:
            result = session.execute(stmt)
            return result.rowcount == 1

    def set_status(self, item_id: str, status: ItemStatus) -> None:
        self.update_item(item_id, status=status)

    def update_item(self, item_id: str, **fields: Any) -> None:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise TypeError(f"Unknown item fields: {sorted(unknown)}")
        with self.db.session() as session:
            row = session.get(ItemRow, item_id)
            if row is None:
                raise LookupError(f"Item {item_id} not found")
            for key, value in fields.items():
                if key == "metadata":
                    row.meta = dict(value or {})
                elif key == "status":
                    row.status = ItemStatus(value).value
                else:
                    setattr(row, key, value)
            row.updated_at = utcnow()

    # --- Tags -----------------------------------------------------------------

    def get_tags(self, item_id: str) -> list[str]:
        with self.db.session() as session:
            return self._tags(session, [item_id]).get(item_id, [])

    def add_tag(self, item_id: str, name: str) -> bool:
        """Link a tag to an item, creating the tag if needed. False if already linked."""
        tag_name = normalise_tag(name)
        if not tag_name:
            raise ValueError("Tag name is empty")
        with self.db.session() as session:
            tag = session.scalars(select(TagRow).where(TagRow.name == tag_name)).first()
            if tag is None:
                tag = TagRow(name=tag_name)
                session.add(tag)
                session.flush()
            if session.get(ItemTagRow, (item_id, tag.id)) is not None:
                return False
            session.add(ItemTagRow(item_id=item_id, tag_id=tag.id))
            return True

    @staticmethod
    def _tags(session, item_ids: list[str]) -> dict[str, list[str]]:
        if not item_ids:
            return {}
        stmt = (
            select(ItemTagRow.item_id, TagRow.name)
            .join(TagRow, TagRow.id == ItemTagRow.tag_id)
            .where(ItemTagRow.item_id.in_(item_ids))
            .order_by(TagRow.name)
        )
        tags: dict[str, list[str]] = {}
        for item_id, name in session.execute(stmt):
            tags.setdefault(item_id, []).append(name)
        return tags

    # --- Chunks ---------------------------------------------------------------

    def replace_chunks(self, item_id: str, chunks: list[Chunk]) -> int:
        """Delete every chunk of the item and insert the new set in one transaction."""
        with self.db.session() as session:
            session.execute(delete(ChunkRow).where(ChunkRow.item_id == item_id))
            for chunk in sorted(chunks, key=lambda c: c.order_index):
                session.add(
                    ChunkRow(
                        id=chunk.chunk_id,
                        item_id=item_id,
                        chunk_text=chunk.text,
                        embedding=chunk.embedding,
                        order_index=chunk.order_index,
                        token_estimate=chunk.token_estimate,
                    )
                )
        logger.debug(f"[Items] {item_id[:8]} | chunks replaced -> {len(chunks)}")
        return len(chunks)

    def get_chunks(self, item_id: str) -> list[Chunk]:
        stmt = select(ChunkRow).where(ChunkRow.item_id == item_id).order_by(ChunkRow.order_index)
        with self.db.session() as session:
            return [_to_chunk(r) for r in session.scalars(stmt)]

    def first_chunk_embedding(self, item_id: str) -> list[float] | None:
        stmt = (
            select(ChunkRow.embedding)
            .where(ChunkRow.item_id == item_id)
            .order_by(ChunkRow.order_index)
            .limit(1)
        )
        with self.db.session() as session:
            return session.scalars(stmt).first()

    def user_chunks(self, user_id: str) -> list[Chunk]:
        """Every embedded chunk belonging to the user's items."""
        stmt = (
            select(ChunkRow)
            .join(ItemRow, ItemRow.id == ChunkRow.item_id)
            .where(ItemRow.user_id == user_id, ChunkRow.embedding.is_not(None))
            .order_by(ChunkRow.item_id, ChunkRow.order_index)
        )
        with self.db.session() as session:
            return [_to_chunk(r) for r in session.scalars(stmt) if r.embedding]

    # --- AI-generated downstream items ----------------------------------------

    def create_generated_item(
        self,
        parent: SourceItem,
        item_type: ItemType,
        title: str,
        description: Optional[str] = None,
        **fields: Any,
    ) -> SourceItem:
        """Store a task or event extracted from `parent`, flagged as AI-generated."""
        if item_type == ItemType.NOTE:
            raise ValueError("Only tasks and events are generated from notes")
        return self.create_item(
            parent.user_id,
            item_type,
            title=title,
            raw_text=description,
            status=ItemStatus.PROCESSED,
            source_type=ItemOrigin.AI_GENERATED,
            source_item_id=parent.id,
            **fields,
        )
