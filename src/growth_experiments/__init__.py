"""Growth experimentation engine: A/B lifecycle, assignment, results and promotion."""

from .schema import (
    Experiment,
    ExperimentDefinition,
    ExperimentStatus,
    HarmThreshold,
    OutcomeEvent,
    ResultsSummary,
    Variant,
)
from .exceptions import (
    AlreadyDecidedError,
    CategoryConflictError,
    DataSourceError,
    ExperimentError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from .config import EngineConfig
from .store import ExperimentStore
from .event_store import CsvOutcomeStore, InMemoryMetricSource, MetricSource
from .engine import ExperimentEngine

__all__ = [
    "Experiment",
    "ExperimentDefinition",
    "ExperimentStatus",
    "HarmThreshold",
    "OutcomeEvent",
    "ResultsSummary",
    "Variant",
    "AlreadyDecidedError",
    "CategoryConflictError",
    "DataSourceError",
    "ExperimentError",
    "InvalidTransitionError",
    "NotFoundError",
    "ValidationError",
    "EngineConfig",
    "ExperimentStore",
    "CsvOutcomeStore",
    "InMemoryMetricSource",
    "MetricSource",
    "ExperimentEngine",
]
