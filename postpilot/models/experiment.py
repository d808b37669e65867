"""Subject line experiment (A/B test) models."""

import enum
from datetime import datetime

from sqlalchemy import CheckConstraint, Enum, Float, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from postpilot.models.base import Base, TimestampMixin


class ExperimentStatus(str, enum.Enum):
    """Experiment lifecycle status."""

    DRAFT = "draft"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExperimentStatus.COMPLETED, ExperimentStatus.CANCELLED)


# Allowed status transitions; enforced by the store's compare-and-set
EXPERIMENT_TRANSITIONS: dict[ExperimentStatus, frozenset[ExperimentStatus]] = {
    ExperimentStatus.DRAFT: frozenset({ExperimentStatus.RUNNING}),
    ExperimentStatus.RUNNING: frozenset({ExperimentStatus.COMPLETED, ExperimentStatus.CANCELLED}),
    ExperimentStatus.COMPLETED: frozenset(),
    ExperimentStatus.CANCELLED: frozenset(),
}


def can_transition(current: ExperimentStatus, target: ExperimentStatus) -> bool:
    """Check whether `current -> target` is a legal experiment transition."""
    return target in EXPERIMENT_TRANSITIONS[current]


class Experiment(Base, TimestampMixin):
    """A subject line test comparing two or more variants by open rate."""

    __tablename__ = "experiments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200))
    template_type: Mapped[str] = mapped_column(String(50), default="digest")
    status: Mapped[ExperimentStatus] = mapped_column(
        Enum(
            ExperimentStatus,
            values_callable=lambda e: [x.value for x in e],
            native_enum=False,
            length=20,
        ),
        default=ExperimentStatus.DRAFT,
        index=True,
    )

    # Decision thresholds
    confidence_level: Mapped[int] = mapped_column(Integer, default=95)
    min_sample_size: Mapped[int] = mapped_column(Integer, default=100)

    # Outcome (set only on completion)
    winning_variant_id: Mapped[int | None] = mapped_column(Integer)

    started_at: Mapped[datetime | None]
    completed_at: Mapped[datetime | None]
    cancelled_at: Mapped[datetime | None]

    # Relationships
    variants: Mapped[list["Variant"]] = relationship(
        back_populates="experiment",
        cascade="all, delete-orphan",
        order_by="Variant.id",
    )

    @property
    def total_sent(self) -> int:
        return sum(v.sent_count for v in self.variants)

    @property
    def winning_variant(self) -> "Variant | None":
        if self.winning_variant_id is None:
            return None
        return next((v for v in self.variants if v.id == self.winning_variant_id), None)

    def __repr__(self) -> str:
        return f"<Experiment {self.id} {self.name!r} status={self.status.value}>"


class Variant(Base, TimestampMixin):
    """One subject line option within an experiment, with its engagement counters."""

    __tablename__ = "experiment_variants"
    __table_args__ = (
        CheckConstraint("opened_count <= sent_count", name="ck_variant_opened_le_sent"),
        CheckConstraint("clicked_count <= opened_count", name="ck_variant_clicked_le_opened"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    experiment_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("experiments.id", ondelete="CASCADE"), index=True
    )
    label: Mapped[str] = mapped_column(String(500))
    preview_text: Mapped[str | None] = mapped_column(String(500))
    weight: Mapped[float] = mapped_column(Float, default=1.0)

    # Engagement counters (monotonic while the experiment runs)
    sent_count: Mapped[int] = mapped_column(Integer, default=0)
    opened_count: Mapped[int] = mapped_column(Integer, default=0)
    clicked_count: Mapped[int] = mapped_column(Integer, default=0)

    # Relationships
    experiment: Mapped["Experiment"] = relationship(back_populates="variants")

    @property
    def open_rate(self) -> float:
        return self.opened_count / self.sent_count if self.sent_count > 0 else 0.0

    @property
    def click_rate(self) -> float:
        return self.clicked_count / self.sent_count if self.sent_count > 0 else 0.0

    def __repr__(self) -> str:
        return f"<Variant {self.id} exp={self.experiment_id} sent={self.sent_count}>"
