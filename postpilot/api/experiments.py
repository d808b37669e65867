"""Subject line experiment admin endpoints."""

from fastapi import APIRouter, HTTPException, Query, status

from postpilot.core.errors import (
    ExperimentNotFoundError,
    InvalidStateError,
    VariantNotFoundError,
)
from postpilot.dependencies import Config, ExperimentStoreDep
from postpilot.models.experiment import ExperimentStatus
from postpilot.schemas.experiment import (
    CancelResponse,
    ExperimentCreate,
    ExperimentResponse,
    ExperimentSummaryResponse,
    VariantCreate,
    VariantEvents,
    VariantResponse,
)
from postpilot.stats.summary import summarize_experiment

router = APIRouter()


def _not_found(e: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _conflict(e: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post(
    "/experiments",
    response_model=ExperimentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_experiment(
    request: ExperimentCreate,
    store: ExperimentStoreDep,
    config: Config,
) -> ExperimentResponse:
    """Create a draft experiment. Thresholds default to config.yml values."""
    defaults = config.experiments
    experiment = await store.create_experiment(
        name=request.name,
        template_type=request.template_type,
        confidence_level=request.confidence_level or defaults.default_confidence_level,
        min_sample_size=request.min_sample_size or defaults.default_min_sample_size,
    )
    return ExperimentResponse.model_validate(experiment)


@router.get("/experiments", response_model=list[ExperimentResponse])
async def list_experiments(
    store: ExperimentStoreDep,
    experiment_status: ExperimentStatus | None = Query(default=None, alias="status"),
) -> list[ExperimentResponse]:
    """List experiments, newest first, optionally filtered by status."""
    experiments = await store.list_experiments(status=experiment_status)
    return [ExperimentResponse.model_validate(e) for e in experiments]


@router.get("/experiments/{experiment_id}", response_model=ExperimentResponse)
async def get_experiment(experiment_id: int, store: ExperimentStoreDep) -> ExperimentResponse:
    try:
        experiment = await store.get_experiment(experiment_id)
    except ExperimentNotFoundError as e:
        raise _not_found(e) from e
    return ExperimentResponse.model_validate(experiment)


@router.post(
    "/experiments/{experiment_id}/variants",
    response_model=VariantResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_variant(
    experiment_id: int,
    request: VariantCreate,
    store: ExperimentStoreDep,
) -> VariantResponse:
    """Add a subject line variant. Only allowed while the experiment is a draft."""
    try:
        variant = await store.add_variant(
            experiment_id,
            label=request.label,
            weight=request.weight,
            preview_text=request.preview_text,
        )
    except ExperimentNotFoundError as e:
        raise _not_found(e) from e
    except InvalidStateError as e:
        raise _conflict(e) from e
    return VariantResponse.model_validate(variant)


@router.post("/experiments/{experiment_id}/start", response_model=ExperimentResponse)
async def start_experiment(experiment_id: int, store: ExperimentStoreDep) -> ExperimentResponse:
    """Start a draft experiment; it needs at least two variants."""
    try:
        experiment = await store.start_experiment(experiment_id)
    except ExperimentNotFoundError as e:
        raise _not_found(e) from e
    except InvalidStateError as e:
        raise _conflict(e) from e
    return ExperimentResponse.model_validate(experiment)


@router.post("/experiments/{experiment_id}/cancel", response_model=CancelResponse)
async def cancel_experiment(experiment_id: int, store: ExperimentStoreDep) -> CancelResponse:
    """
    Cancel a running experiment.

    Cancelling an experiment that already completed (or was already
    cancelled) changes nothing and returns `cancelled: false`.
    """
    try:
        cancelled = await store.cancel_experiment(experiment_id)
        experiment = await store.get_experiment(experiment_id)
    except ExperimentNotFoundError as e:
        raise _not_found(e) from e
    except InvalidStateError as e:
        raise _conflict(e) from e
    return CancelResponse(
        cancelled=cancelled,
        experiment=ExperimentResponse.model_validate(experiment),
    )


@router.get(
    "/experiments/{experiment_id}/summary",
    response_model=ExperimentSummaryResponse,
)
async def get_experiment_summary(
    experiment_id: int,
    store: ExperimentStoreDep,
) -> ExperimentSummaryResponse:
    """Per-variant rates, significance versus the leader and sample size progress."""
    try:
        experiment = await store.get_experiment(experiment_id)
    except ExperimentNotFoundError as e:
        raise _not_found(e) from e
    return ExperimentSummaryResponse.model_validate(summarize_experiment(experiment))


@router.post("/variants/{variant_id}/events", response_model=VariantResponse)
async def record_variant_events(
    variant_id: int,
    request: VariantEvents,
    store: ExperimentStoreDep,
) -> VariantResponse:
    """Record sends, opens and clicks for a variant of a running experiment."""
    try:
        variant = await store.increment_variant_counters(
            variant_id,
            sent=request.sent,
            opened=request.opened,
            clicked=request.clicked,
        )
    except VariantNotFoundError as e:
        raise _not_found(e) from e
    except InvalidStateError as e:
        raise _conflict(e) from e
    return VariantResponse.model_validate(variant)
