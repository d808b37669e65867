"""
Domain exceptions for the scheduler and the experiment engine.

Operational errors (job body failures, persistence failures) are caught by
the scheduler and recorded in the execution ledger; state errors are raised
to the admin surface as rejected operations.
"""


class PostPilotError(Exception):
    """Base exception for all postpilot errors."""

    pass


class DuplicateJobError(PostPilotError):
    """Raised when registering a job whose id already exists."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job already registered: {job_id}")


class JobNotFoundError(PostPilotError):
    """Raised when a requested job does not exist."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class ExperimentNotFoundError(PostPilotError):
    """Raised when a requested experiment does not exist."""

    def __init__(self, experiment_id: int):
        self.experiment_id = experiment_id
        super().__init__(f"Experiment not found: {experiment_id}")


class VariantNotFoundError(PostPilotError):
    """Raised when a requested variant does not exist."""

    def __init__(self, variant_id: int):
        self.variant_id = variant_id
        super().__init__(f"Variant not found: {variant_id}")


class InvalidStateError(PostPilotError):
    """
    Raised when an operation is not allowed in the current state.

    Examples:
    - Starting an experiment with fewer than two variants
    - Adding a variant to an experiment that is no longer a draft
    - Recording engagement that would exceed the send count
    """

    pass


class InsufficientDataError(PostPilotError):
    """Raised internally when counters are below the sample gate."""

    pass


class JobExecutionError(PostPilotError):
    """Raised when a job body fails or exceeds its time budget."""

    def __init__(self, job_id: str, message: str):
        self.job_id = job_id
        super().__init__(message)


class PersistenceError(PostPilotError):
    """Raised when the database layer fails."""

    pass
