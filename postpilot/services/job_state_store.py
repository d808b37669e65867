"""Persistence for the admin-visible scheduler registry state."""

from datetime import datetime

from sqlalchemy import select

from postpilot.core.database import SessionFactory, session_scope
from postpilot.models.scheduled_job import ScheduledJobState


class JobStateStore:
    """Reads and upserts rows of the `scheduled_jobs` table."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    async def get_job(self, job_id: str) -> ScheduledJobState | None:
        async with session_scope(self._session_factory) as db:
            return await db.get(ScheduledJobState, job_id)

    async def list_jobs(self) -> list[ScheduledJobState]:
        async with session_scope(self._session_factory) as db:
            result = await db.execute(select(ScheduledJobState).order_by(ScheduledJobState.id))
            return list(result.scalars().all())

    async def upsert_job_state(
        self,
        job_id: str,
        name: str,
        schedule: str,
        enabled: bool,
        last_run_at: datetime | None,
        next_run_at: datetime | None,
    ) -> ScheduledJobState:
        async with session_scope(self._session_factory) as db:
            state = await db.get(ScheduledJobState, job_id)
            if state is None:
                state = ScheduledJobState(id=job_id)
                db.add(state)

            state.name = name
            state.schedule = schedule
            state.enabled = enabled
            state.last_run_at = last_run_at
            state.next_run_at = next_run_at
        return state
