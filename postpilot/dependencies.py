from typing import Annotated

from fastapi import Depends

from postpilot.config import AppConfig, get_config
from postpilot.core.database import AsyncSessionLocal
from postpilot.core.scheduler import JobScheduler, get_job_scheduler
from postpilot.services.experiment_store import ExperimentStore


def get_experiment_store() -> ExperimentStore:
    """Dependency that provides the experiment store."""
    return ExperimentStore(AsyncSessionLocal)


# Type aliases for dependency injection
Config = Annotated[AppConfig, Depends(get_config)]
SchedulerDep = Annotated[JobScheduler, Depends(get_job_scheduler)]
ExperimentStoreDep = Annotated[ExperimentStore, Depends(get_experiment_store)]
