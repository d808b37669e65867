"""Job execution history model."""

import enum
from datetime import datetime
from uuid import uuid4

from sqlalchemy import Enum, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from postpilot.models.base import Base


class JobRunStatus(str, enum.Enum):
    """Execution status. RUNNING moves to exactly one terminal value."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self is not JobRunStatus.RUNNING


class JobRun(Base):
    """Records each execution of a scheduled job."""

    __tablename__ = "job_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    job_id: Mapped[str] = mapped_column(String(100), index=True)
    job_name: Mapped[str] = mapped_column(String(200))
    status: Mapped[JobRunStatus] = mapped_column(
        Enum(
            JobRunStatus,
            values_callable=lambda e: [x.value for x in e],
            native_enum=False,
            length=20,
        ),
        default=JobRunStatus.RUNNING,
        index=True,
    )
    started_at: Mapped[datetime] = mapped_column(index=True)
    finished_at: Mapped[datetime | None]
    duration_ms: Mapped[int | None] = mapped_column(Integer)

    # Item counters reported by the job body
    items_processed: Mapped[int] = mapped_column(Integer, default=0)
    items_successful: Mapped[int] = mapped_column(Integer, default=0)
    items_failed: Mapped[int] = mapped_column(Integer, default=0)

    error_message: Mapped[str | None] = mapped_column(Text)
    result_summary: Mapped[str | None] = mapped_column(Text)

    def __repr__(self) -> str:
        return f"<JobRun {self.job_id} {self.status.value} started={self.started_at}>"
