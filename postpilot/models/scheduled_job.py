"""Persisted scheduler registry state."""

from datetime import datetime

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from postpilot.core.datetime_utils import utc_now
from postpilot.models.base import Base


class ScheduledJobState(Base):
    """
    Admin-visible state of a registered job.

    Jobs themselves come from the static registry at startup; this row keeps
    the enabled flag and the last/next run times across restarts. The
    in-flight `running` flag is never persisted.
    """

    __tablename__ = "scheduled_jobs"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    schedule: Mapped[str] = mapped_column(String(100))
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    last_run_at: Mapped[datetime | None]
    next_run_at: Mapped[datetime | None]
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, onupdate=utc_now)
