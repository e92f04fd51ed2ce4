"""Key/blob storage backends injected into the engine."""

from __future__ import annotations

import threading
from datetime import datetime
from pathlib import Path
from typing import Protocol

from sqlalchemy import Column, DateTime, LargeBinary
from sqlalchemy import delete as sa_delete
from sqlalchemy.engine import Engine
from sqlmodel import Field, Session, SQLModel, col, select

from agent_command.persistence.common import build_sqlite_engine, utc_now


class KeyValueStore(Protocol):
    """Minimal durable storage contract: opaque bytes under string keys."""

    def get(self, key: str) -> bytes | None:
        """Return stored bytes or ``None``."""

    def put(self, key: str, value: bytes) -> None:
        """Store bytes, replacing any previous value."""

    def delete(self, key: str) -> None:
        """Remove a key; missing keys are ignored."""

    def keys(self, prefix: str = "") -> list[str]:
        """Sorted keys starting with ``prefix``."""


class InMemoryKeyValueStore:
    """Process-local store for tests and ephemeral runs."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> bytes | None:
        with self._lock:
            return self._data.get(key)

    def put(self, key: str, value: bytes) -> None:
        with self._lock:
            self._data[key] = bytes(value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(key for key in self._data if key.startswith(prefix))


class StateBlob(SQLModel, table=True):
    __tablename__ = "state_blobs"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SqliteKeyValueStore:
    """Key/blob store backed by SQLModel + SQLite (WAL, busy timeout)."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine: Engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def init_schema(self) -> None:
        SQLModel.metadata.create_all(
            self.engine,
            tables=[StateBlob.__table__],  # type: ignore[attr-defined]
        )

    def close(self) -> None:
        self.engine.dispose()

    def get(self, key: str) -> bytes | None:
        with Session(self.engine) as session:
            row = session.get(StateBlob, key)
            return bytes(row.value) if row is not None else None

    def put(self, key: str, value: bytes) -> None:
        with Session(self.engine) as session:
            row = session.get(StateBlob, key)
            if row is None:
                session.add(StateBlob(key=key, value=bytes(value), updated_at=utc_now()))
            else:
                row.value = bytes(value)
                row.updated_at = utc_now()
                session.add(row)
            session.commit()

    def delete(self, key: str) -> None:
        with Session(self.engine) as session:
            session.exec(sa_delete(StateBlob).where(col(StateBlob.key) == key))
            session.commit()

    def keys(self, prefix: str = "") -> list[str]:
        with Session(self.engine) as session:
            statement = select(StateBlob.key).order_by(col(StateBlob.key))
            if prefix:
                statement = statement.where(
                    col(StateBlob.key).startswith(prefix, autoescape=True),
                )
            return list(session.exec(statement).all())
