"""TaskRun model: one row per scheduled task firing."""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON


class TaskRun(SQLModel, table=True):
    __tablename__ = "task_run"

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(index=True)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: str  # "success", "error", "skipped"
    message: str | None = None
    intents_submitted: int = 0
    intents_failed: int = 0
    duration_seconds: float | None = None
    details: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
