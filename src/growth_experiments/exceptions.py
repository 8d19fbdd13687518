"""Error taxonomy for the experimentation engine."""


class ExperimentError(Exception):
    """Base class for all engine errors."""
    kind = "experiment_error"


class ValidationError(ExperimentError):
    """Malformed experiment definition (bad metric key, start_at >= end_at, missing fields)."""
    kind = "validation_error"


class CategoryConflictError(ExperimentError):
    """Another experiment is already RUNNING for the category."""
    kind = "category_conflict"


class InvalidTransitionError(ExperimentError):
    """Operation is not permitted from the experiment's current status."""
    kind = "invalid_transition"


class AlreadyDecidedError(ExperimentError):
    """A winner has already been declared."""
    kind = "already_decided"


class NotFoundError(ExperimentError):
    """Referenced experiment does not exist."""
    kind = "not_found"


class DataSourceError(ExperimentError):
    """Metric source failed or timed out. Safe to retry the aggregation pass."""
    kind = "data_source_error"
