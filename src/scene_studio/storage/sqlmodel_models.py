"""SQLModel ORM tables for durable orchestration state."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, PrimaryKeyConstraint
from sqlmodel import Field, SQLModel


class TaskDescriptorRow(SQLModel, table=True):
    __tablename__ = "task_descriptors"  # type: ignore[bad-override]
    __table_args__ = (PrimaryKeyConstraint("entity_id", "kind", name="pk_task_descriptors"),)

    entity_id: str
    kind: str = Field(index=True)
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
