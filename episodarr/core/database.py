"""Database setup for Episodarr using SQLModel."""

from datetime import datetime, timezone

from sqlalchemy.engine import Engine
from sqlmodel import Field, SQLModel, create_engine

from episodarr.core.config import Settings


class KeyValueEntry(SQLModel, table=True):
    """A single JSON snapshot stored under a string key."""

    __tablename__ = "kv_store"

    key: str = Field(primary_key=True)
    value: str
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def create_db_engine(settings: Settings) -> Engine:
    """Create the engine for the configured database URL."""
    connect_args = {}
    if settings.database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False  # Needed for SQLite
    return create_engine(
        settings.database_url,
        echo=settings.debug,
        connect_args=connect_args,
    )


def create_db_and_tables(engine: Engine) -> None:
    """Create all database tables."""
    SQLModel.metadata.create_all(engine)
