"""Key-value persistence for cache, queue and quota snapshots.

The discovery engine never talks to a database directly. It reads and writes
whole JSON documents through a ``KeyValueStore`` so the backend can be swapped
(SQLite via SQLModel in production, a plain dict in tests).
"""

import logging
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy.engine import Engine
from sqlmodel import Session

from episodarr.core.database import KeyValueEntry, create_db_and_tables

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Minimal persistent key-value interface."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryKeyValueStore:
    """In-process store, state is lost on exit."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def delete(self, key: str) -> None:
        self.data.pop(key, None)


class SQLKeyValueStore:
    """Store backed by the ``kv_store`` table."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        create_db_and_tables(engine)

    def get(self, key: str) -> str | None:
        with Session(self.engine) as session:
            entry = session.get(KeyValueEntry, key)
            return entry.value if entry else None

    def set(self, key: str, value: str) -> None:
        with Session(self.engine) as session:
            entry = session.get(KeyValueEntry, key)
            if entry is None:
                entry = KeyValueEntry(key=key, value=value)
            else:
                entry.value = value
                entry.updated_at = datetime.now(timezone.utc)
            session.add(entry)
            session.commit()
        logger.debug("Persisted %s (%d bytes)", key, len(value))

    def delete(self, key: str) -> None:
        with Session(self.engine) as session:
            entry = session.get(KeyValueEntry, key)
            if entry is not None:
                session.delete(entry)
                session.commit()
