"""SQLite-backed durable store for task descriptors."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlmodel import Session, SQLModel, col, select

from scene_studio.orchestrator.models import TaskDescriptor
from scene_studio.storage.common import build_sqlite_engine, ensure_utc
from scene_studio.storage.sqlmodel_models import TaskDescriptorRow


class SqliteDescriptorBackend:
    """Descriptor persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Create the descriptor table if it does not exist yet."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        SQLModel.metadata.create_all(self.engine, tables=[TaskDescriptorRow.__table__])

    def read_descriptors(self) -> list[TaskDescriptor]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskDescriptorRow).order_by(
                    col(TaskDescriptorRow.started_at).asc(),
                    col(TaskDescriptorRow.entity_id).asc(),
                ),
            ).all()
            return [
                TaskDescriptor(
                    entity_id=row.entity_id,
                    kind=row.kind,
                    started_at=ensure_utc(row.started_at),
                )
                for row in rows
            ]

    def write_descriptors(self, descriptors: list[TaskDescriptor]) -> None:
        with Session(self.engine) as session:
            session.exec(sa_delete(TaskDescriptorRow))
            for descriptor in descriptors:
                session.add(
                    TaskDescriptorRow(
                        entity_id=descriptor.entity_id,
                        kind=descriptor.kind,
                        started_at=descriptor.started_at,
                    ),
                )
            session.commit()
