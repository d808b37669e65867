from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from postpilot.models.experiment import ExperimentStatus
from postpilot.stats.significance import Decision


class ExperimentCreate(BaseModel):
    """Request body for creating a draft experiment."""

    name: str = Field(min_length=1, max_length=200)
    template_type: str = Field(default="digest", max_length=50)
    confidence_level: int | None = Field(default=None, ge=80, le=99)
    min_sample_size: int | None = Field(default=None, ge=1)


class VariantCreate(BaseModel):
    """Request body for adding a subject line variant."""

    label: str = Field(min_length=1, max_length=500)
    preview_text: str | None = Field(default=None, max_length=500)
    weight: float = Field(default=1.0, gt=0)


class VariantEvents(BaseModel):
    """Engagement increments for one variant."""

    sent: int = Field(default=0, ge=0)
    opened: int = Field(default=0, ge=0)
    clicked: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def check_not_empty(self) -> "VariantEvents":
        if self.sent == 0 and self.opened == 0 and self.clicked == 0:
            raise ValueError("At least one of sent, opened or clicked must be positive")
        return self


class VariantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    experiment_id: int
    label: str
    preview_text: str | None
    weight: float
    sent_count: int
    opened_count: int
    clicked_count: int
    open_rate: float
    click_rate: float


class ExperimentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    template_type: str
    status: ExperimentStatus
    confidence_level: int
    min_sample_size: int
    winning_variant_id: int | None
    total_sent: int
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    cancelled_at: datetime | None
    variants: list[VariantResponse]


class CancelResponse(BaseModel):
    """Result of a cancel request; `cancelled` is false when it was a no-op."""

    cancelled: bool
    experiment: ExperimentResponse


class VerdictResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    decision: Decision
    reason: str
    variant_id: int | None
    rate_difference: float | None
    z_score: float | None
    p_value: float | None


class VariantSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    variant_id: int
    label: str
    sent: int
    opened: int
    clicked: int
    open_rate: float
    click_rate: float
    is_leader: bool
    z_score: float | None
    p_value: float | None
    relative_improvement: float | None


class ExperimentSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    experiment_id: int
    status: ExperimentStatus
    confidence_level: int
    min_sample_size: int
    total_sent: int
    leader_id: int | None
    required_sample_size: int
    progress: float
    verdict: VerdictResponse | None
    variants: list[VariantSummaryResponse]
