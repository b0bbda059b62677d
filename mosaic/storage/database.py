"""
Database engine and session management.

Usage:
    db = Database("sqlite:///data/mosaic.db")
    db.create_all()
    with db.session() as session:   # commits on success, rolls back on error
        ...
"""
from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from loguru import logger
from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from mosaic.storage.models import Base


class Database:
    def __init__(self, url: str = "sqlite:///data/mosaic.db", echo: bool = False) -> None:
        self.url = url
        parsed = make_url(url)
        kwargs: dict = {"echo": echo}

        if parsed.get_backend_name() == "sqlite":
            kwargs["connect_args"] = {"check_same_thread": False}
            if parsed.database in (None, "", ":memory:"):
                # One shared connection, otherwise every session sees an empty DB
                kwargs["poolclass"] = StaticPool
            else:
                Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)

        self.engine = create_engine(url, **kwargs)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    @classmethod
    def from_config(cls, config: dict) -> "Database":
        return cls(config.get("database", {}).get("url", "sqlite:///data/mosaic.db"))

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)
        logger.info(f"[Database] Schema ready -> {self.engine.url.render_as_string(hide_password=True)}")

    def drop_all(self) -> None:
        Base.metadata.drop_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Transactional scope: one commit per block, rollback on any exception."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
