"""Database utilities for the catalog service."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import MetaData, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker


class Base(DeclarativeBase):
    """Declarative base with consistent naming conventions."""

    metadata = MetaData()


class Database:
    """Thin wrapper managing the SQLAlchemy engine and sessions."""

    def __init__(self, database_url: str):
        self._engine: Engine = create_engine(database_url, future=True)
        self.session_factory: sessionmaker[Session] = sessionmaker(
            self._engine, expire_on_commit=False
        )

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_all(self) -> None:
        """Create database tables if they do not yet exist."""

        # Registers the ORM models on Base.metadata.
        from . import db_models  # noqa: F401

        Base.metadata.create_all(self._engine)

    def dispose(self) -> None:
        """Dispose of the underlying database engine."""

        self._engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Provide a transactional scope around a series of operations."""

        with self.session_factory() as session:
            with session.begin():
                yield session
