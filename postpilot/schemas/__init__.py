from postpilot.schemas.experiment import (
    CancelResponse,
    ExperimentCreate,
    ExperimentResponse,
    ExperimentSummaryResponse,
    VariantCreate,
    VariantEvents,
    VariantResponse,
)
from postpilot.schemas.scheduler import (
    ExecutionOutcomeResponse,
    JobEnabledUpdate,
    JobResponse,
    JobRunResponse,
    JobStatsResponse,
    SchedulerStatusResponse,
)

__all__ = [
    "CancelResponse",
    "ExperimentCreate",
    "ExperimentResponse",
    "ExperimentSummaryResponse",
    "VariantCreate",
    "VariantEvents",
    "VariantResponse",
    "ExecutionOutcomeResponse",
    "JobEnabledUpdate",
    "JobResponse",
    "JobRunResponse",
    "JobStatsResponse",
    "SchedulerStatusResponse",
]
