"""Shared SQLite database handle used by all repositories."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy.engine import Engine

from chapter_radar.storage.alembic_runner import current_revision, upgrade_head
from chapter_radar.storage.common import build_sqlite_engine


class Database:
    """Owns the engine for one SQLite file; repositories borrow it."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine: Engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=busy_timeout_ms,
        )

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def schema_revision(self) -> str | None:
        return current_revision(self.engine)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
