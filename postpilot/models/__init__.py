from postpilot.models.base import Base
from postpilot.models.experiment import Experiment, ExperimentStatus, Variant
from postpilot.models.job_run import JobRun, JobRunStatus
from postpilot.models.scheduled_job import ScheduledJobState

__all__ = [
    "Base",
    "Experiment",
    "ExperimentStatus",
    "Variant",
    "JobRun",
    "JobRunStatus",
    "ScheduledJobState",
]
