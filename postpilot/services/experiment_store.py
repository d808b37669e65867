"""
Experiment store: subject line experiments, their variants and counters.

Status changes go through `transition_experiment_status`, a single
conditional UPDATE on the expected current status. When an admin cancel
races the scheduled auto-completion, whichever commits first wins and the
other sees zero affected rows and is discarded.
"""

import random
from collections.abc import Sequence
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from postpilot.core.database import SessionFactory, session_scope
from postpilot.core.datetime_utils import utc_now
from postpilot.core.errors import (
    ExperimentNotFoundError,
    InvalidStateError,
    VariantNotFoundError,
)
from postpilot.core.logging import get_logger
from postpilot.models.experiment import Experiment, ExperimentStatus, Variant, can_transition
from postpilot.stats.significance import validate_confidence_level

logger = get_logger(__name__)

MIN_VARIANTS_TO_START = 2


class ExperimentStore:
    """Persistence and state machine for experiments and variants."""

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _load(self, db: AsyncSession, experiment_id: int) -> Experiment:
        result = await db.execute(
            select(Experiment)
            .options(selectinload(Experiment.variants))
            .where(Experiment.id == experiment_id)
        )
        experiment = result.scalar_one_or_none()
        if experiment is None:
            raise ExperimentNotFoundError(experiment_id)
        return experiment

    async def get_experiment(self, experiment_id: int) -> Experiment:
        """Load an experiment with its variants in one consistent read."""
        async with session_scope(self._session_factory) as db:
            return await self._load(db, experiment_id)

    async def list_experiments(self, status: ExperimentStatus | None = None) -> list[Experiment]:
        query = (
            select(Experiment)
            .options(selectinload(Experiment.variants))
            .order_by(Experiment.created_at.desc(), Experiment.id.desc())
        )
        if status is not None:
            query = query.where(Experiment.status == status)

        async with session_scope(self._session_factory) as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def list_running_experiments(self) -> list[Experiment]:
        """Running experiments, oldest first, each with its variant counters."""
        query = (
            select(Experiment)
            .options(selectinload(Experiment.variants))
            .where(Experiment.status == ExperimentStatus.RUNNING)
            .order_by(Experiment.id)
        )
        async with session_scope(self._session_factory) as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def get_variant(self, variant_id: int) -> Variant:
        async with session_scope(self._session_factory) as db:
            variant = await db.get(Variant, variant_id)
            if variant is None:
                raise VariantNotFoundError(variant_id)
            return variant

    async def get_variants(self, experiment_id: int) -> list[Variant]:
        experiment = await self.get_experiment(experiment_id)
        return list(experiment.variants)

    # ------------------------------------------------------------------
    # Draft editing
    # ------------------------------------------------------------------

    async def create_experiment(
        self,
        name: str,
        template_type: str = "digest",
        confidence_level: int = 95,
        min_sample_size: int = 100,
    ) -> Experiment:
        """Create a draft experiment with no variants."""
        validate_confidence_level(confidence_level)
        if min_sample_size < 1:
            raise ValueError("Minimum sample size must be at least 1")

        experiment = Experiment(
            name=name,
            template_type=template_type,
            status=ExperimentStatus.DRAFT,
            confidence_level=confidence_level,
            min_sample_size=min_sample_size,
            variants=[],
        )
        async with session_scope(self._session_factory) as db:
            db.add(experiment)

        logger.bind(experiment_id=experiment.id, name=name).info("experiment_created")
        return experiment

    async def add_variant(
        self,
        experiment_id: int,
        label: str,
        weight: float = 1.0,
        preview_text: str | None = None,
    ) -> Variant:
        """
        Add a subject line variant to a draft experiment.

        Raises:
            InvalidStateError: If the experiment is not a draft
            ValueError: If the weight is not positive
        """
        if weight <= 0:
            raise ValueError("Variant weight must be greater than 0")

        async with session_scope(self._session_factory) as db:
            result = await db.execute(
                select(Experiment).where(Experiment.id == experiment_id).with_for_update()
            )
            experiment = result.scalar_one_or_none()
            if experiment is None:
                raise ExperimentNotFoundError(experiment_id)
            if experiment.status is not ExperimentStatus.DRAFT:
                raise InvalidStateError(
                    f"Cannot add variants to a {experiment.status.value} experiment"
                )

            variant = Variant(
                experiment_id=experiment_id,
                label=label,
                preview_text=preview_text,
                weight=weight,
                sent_count=0,
                opened_count=0,
                clicked_count=0,
            )
            db.add(variant)

        logger.bind(experiment_id=experiment_id, variant_id=variant.id).info("variant_added")
        return variant

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _transition(
        self,
        db: AsyncSession,
        experiment_id: int,
        expected: ExperimentStatus,
        target: ExperimentStatus,
        **fields: Any,
    ) -> bool:
        if not can_transition(expected, target):
            raise InvalidStateError(
                f"Illegal experiment transition {expected.value} -> {target.value}"
            )

        result = await db.execute(
            update(Experiment)
            .where(Experiment.id == experiment_id, Experiment.status == expected)
            .values(status=target, **fields)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def transition_experiment_status(
        self,
        experiment_id: int,
        expected: ExperimentStatus,
        target: ExperimentStatus,
        **fields: Any,
    ) -> bool:
        """
        Compare-and-set the experiment status.

        Returns:
            True if the row was still in `expected` and moved to `target`,
            False if another transition committed first

        Raises:
            InvalidStateError: If `expected -> target` is not a legal transition
        """
        async with session_scope(self._session_factory) as db:
            applied = await self._transition(db, experiment_id, expected, target, **fields)

        logger.bind(
            experiment_id=experiment_id,
            expected=expected.value,
            target=target.value,
            applied=applied,
        ).debug("experiment_transition")
        return applied

    async def start_experiment(self, experiment_id: int) -> Experiment:
        """
        Move a draft experiment to running.

        Raises:
            InvalidStateError: If it is not a draft or has fewer than two variants
        """
        async with session_scope(self._session_factory) as db:
            experiment = await self._load(db, experiment_id)
            if experiment.status is not ExperimentStatus.DRAFT:
                raise InvalidStateError(
                    f"Only draft experiments can be started (status: {experiment.status.value})"
                )

            variant_count = (
                await db.execute(
                    select(func.count(Variant.id)).where(Variant.experiment_id == experiment_id)
                )
            ).scalar_one()
            if variant_count < MIN_VARIANTS_TO_START:
                raise InvalidStateError(
                    f"An experiment needs at least {MIN_VARIANTS_TO_START} variants to start "
                    f"(has {variant_count})"
                )

            applied = await self._transition(
                db,
                experiment_id,
                ExperimentStatus.DRAFT,
                ExperimentStatus.RUNNING,
                started_at=utc_now(),
            )
            if not applied:
                raise InvalidStateError("Experiment changed state while starting")

        logger.bind(experiment_id=experiment_id, variants=variant_count).info("experiment_started")
        return await self.get_experiment(experiment_id)

    async def cancel_experiment(self, experiment_id: int) -> bool:
        """
        Cancel a running experiment.

        Cancelling an experiment that already reached a terminal state is a
        no-op and returns False.

        Raises:
            InvalidStateError: If the experiment is still a draft
        """
        experiment = await self.get_experiment(experiment_id)
        if experiment.status is ExperimentStatus.DRAFT:
            raise InvalidStateError("Draft experiments cannot be cancelled")
        if experiment.status.is_terminal:
            logger.bind(
                experiment_id=experiment_id, status=experiment.status.value
            ).info("experiment_cancel_ignored")
            return False

        applied = await self.transition_experiment_status(
            experiment_id,
            ExperimentStatus.RUNNING,
            ExperimentStatus.CANCELLED,
            cancelled_at=utc_now(),
        )
        if applied:
            logger.bind(experiment_id=experiment_id).info("experiment_cancelled")
        else:
            logger.bind(experiment_id=experiment_id).info("experiment_cancel_discarded")
        return applied

    async def complete_experiment(self, experiment_id: int, winning_variant_id: int) -> bool:
        """
        Record a winner and move a running experiment to completed.

        Only the batch evaluation job calls this, after a winner verdict.

        Returns:
            False if the experiment left the running state first (e.g. cancelled)
        """
        return await self.transition_experiment_status(
            experiment_id,
            ExperimentStatus.RUNNING,
            ExperimentStatus.COMPLETED,
            winning_variant_id=winning_variant_id,
            completed_at=utc_now(),
        )

    # ------------------------------------------------------------------
    # Sending and engagement
    # ------------------------------------------------------------------

    async def select_variant(
        self, experiment_id: int, rng: random.Random | None = None
    ) -> Variant:
        """
        Pick a variant for one recipient, proportionally to variant weights.

        Raises:
            InvalidStateError: If the experiment is not running
        """
        experiment = await self.get_experiment(experiment_id)
        if experiment.status is not ExperimentStatus.RUNNING:
            raise InvalidStateError(
                f"Variants can only be assigned while running (status: {experiment.status.value})"
            )

        chooser = rng or random
        variants: Sequence[Variant] = experiment.variants
        return chooser.choices(variants, weights=[v.weight for v in variants], k=1)[0]

    async def increment_variant_counters(
        self,
        variant_id: int,
        sent: int = 0,
        opened: int = 0,
        clicked: int = 0,
    ) -> Variant:
        """
        Atomically add to a variant's counters.

        The update only applies while the experiment is running and when the
        result keeps clicked <= opened <= sent.

        Raises:
            ValueError: If any delta is negative
            VariantNotFoundError: If the variant does not exist
            InvalidStateError: If the experiment is not running or the
                counters would become inconsistent
        """
        if sent < 0 or opened < 0 or clicked < 0:
            raise ValueError("Counter increments must be non-negative")

        running_experiments = select(Experiment.id).where(
            Experiment.status == ExperimentStatus.RUNNING
        )
        stmt = (
            update(Variant)
            .where(
                Variant.id == variant_id,
                Variant.experiment_id.in_(running_experiments),
                Variant.opened_count + opened <= Variant.sent_count + sent,
                Variant.clicked_count + clicked <= Variant.opened_count + opened,
            )
            .values(
                sent_count=Variant.sent_count + sent,
                opened_count=Variant.opened_count + opened,
                clicked_count=Variant.clicked_count + clicked,
            )
            .execution_options(synchronize_session=False)
        )

        async with session_scope(self._session_factory) as db:
            result = await db.execute(stmt)
            if result.rowcount == 1:
                return await self._refresh_variant(db, variant_id)

            variant = await db.get(Variant, variant_id)
            if variant is None:
                raise VariantNotFoundError(variant_id)
            experiment = await db.get(Experiment, variant.experiment_id)
            if experiment is None or experiment.status is not ExperimentStatus.RUNNING:
                status = experiment.status.value if experiment else "missing"
                raise InvalidStateError(
                    f"Counters can only change while the experiment is running (status: {status})"
                )
            raise InvalidStateError(
                "Counter update would leave more opens than sends or more clicks than opens"
            )

    async def _refresh_variant(self, db: AsyncSession, variant_id: int) -> Variant:
        result = await db.execute(
            select(Variant)
            .where(Variant.id == variant_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def record_sent(self, variant_id: int, count: int = 1) -> Variant:
        return await self.increment_variant_counters(variant_id, sent=count)

    async def record_open(self, variant_id: int) -> Variant:
        return await self.increment_variant_counters(variant_id, opened=1)

    async def record_click(self, variant_id: int) -> Variant:
        return await self.increment_variant_counters(variant_id, clicked=1)
