"""Projection repository: persisted 2D positions keyed by (user, item_type, item_id)."""
from __future__ import annotations

from sqlalchemy import select

from mosaic.schemas import Projection
from mosaic.storage.database import Database
from mosaic.storage.models import ProjectionRow
from mosaic.utils.helpers import utcnow


class ProjectionRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    def save(self, user_id: str, positions: list[Projection]) -> int:
        """Upsert every position in a single transaction. Rows not in `positions` are left alone."""
        now = utcnow()
        with self.db.session() as session:
            existing = {
                (r.item_type, r.item_id): r
                for r in session.scalars(
                    select(ProjectionRow).where(ProjectionRow.user_id == user_id)
                )
            }
            for pos in positions:
                row = existing.get((pos.item_type, pos.item_id))
                if row is None:
                    row = ProjectionRow(
                        user_id=user_id,
                        item_type=pos.item_type,
                        item_id=pos.item_id,
                        x=pos.x,
                        y=pos.y,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(row)
                    existing[(pos.item_type, pos.item_id)] = row
                else:
                    row.x = pos.x
                    row.y = pos.y
                    row.updated_at = now
        return len(positions)

    def load(self, user_id: str) -> list[Projection]:
        stmt = (
            select(ProjectionRow)
            .where(ProjectionRow.user_id == user_id)
            .order_by(ProjectionRow.item_type, ProjectionRow.item_id)
        )
        with self.db.session() as session:
            return [
                Projection(item_type=r.item_type, item_id=r.item_id, x=r.x, y=r.y)
                for r in session.scalars(stmt)
            ]
