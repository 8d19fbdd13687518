"""
Engine facade exposed to product surfaces, operator tooling and schedulers.

Every public method returns an OperationResult; typed ExperimentErrors are
converted into structured failures and never escape to the caller.
"""

import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from . import assignment, lifecycle, promotion
from .aggregate import ResultsAggregator
from .config import EngineConfig
from .event_store import CsvOutcomeStore, MetricSource
from .exceptions import DataSourceError, ExperimentError, ValidationError
from .harm import HarmMonitor
from .schema import (
    ExperimentDefinition,
    ExperimentFilter,
    ExperimentStatus,
    OperationResult,
    utcnow,
)
from .store import ExperimentStore

logger = logging.getLogger(__name__)


def _structured(fn):
    """Wrap an engine method so ExperimentErrors become failed OperationResults."""
    @functools.wraps(fn)
    def wrapper(self, *args, **kwargs) -> OperationResult:
        try:
            return OperationResult(success=True, value=fn(self, *args, **kwargs))
        except ExperimentError as e:
            logger.info(f"{fn.__name__} failed ({e.kind}): {e}")
            return OperationResult(success=False, error=str(e), error_kind=e.kind)
    return wrapper


@dataclass
class SweepReport:
    """Summary of one scheduled pass."""
    started_at: Any = field(default_factory=utcnow)
    completed: List[str] = field(default_factory=list)
    harm_stopped: List[str] = field(default_factory=list)
    refreshed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "completed": self.completed,
            "harm_stopped": self.harm_stopped,
            "refreshed": self.refreshed,
            "failed": self.failed,
        }


class ExperimentEngine:
    """Entry point wiring the store, metric source, aggregator and monitor."""

    def __init__(
        self,
        store: Optional[ExperimentStore] = None,
        metric_source: Optional[MetricSource] = None,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.store = store or ExperimentStore(self.config.database_url, echo=self.config.echo_sql)
        self.metric_source = metric_source or CsvOutcomeStore(self.config.data_dir)
        self.aggregator = ResultsAggregator(
            self.store,
            self.metric_source,
            tie_tolerance=self.config.tie_tolerance,
            page_size=self.config.page_size,
            time_budget_seconds=self.config.time_budget_seconds,
            srm_alpha=self.config.srm_alpha,
        )
        self.harm_monitor = HarmMonitor(self.store, self.aggregator)

    @classmethod
    def from_env(cls, **overrides) -> "ExperimentEngine":
        return cls(config=EngineConfig.from_env(**overrides))

    # Lifecycle

    @_structured
    def create(self, definition):
        if isinstance(definition, dict):
            definition = ExperimentDefinition.from_dict(definition)
        return lifecycle.create_experiment(
            self.store, definition, check_category=self.config.check_category_on_create
        )

    @_structured
    def update(self, experiment_id: str, definition):
        if isinstance(definition, dict):
            definition = ExperimentDefinition.from_dict(definition)
        return lifecycle.update_experiment(self.store, experiment_id, definition)

    @_structured
    def start(self, experiment_id: str):
        return lifecycle.start_experiment(self.store, experiment_id)

    @_structured
    def stop(self, experiment_id: str, reason: Optional[str] = None):
        return lifecycle.stop_experiment(self.store, experiment_id, reason=reason)

    @_structured
    def complete(self, experiment_id: str):
        return lifecycle.complete_experiment(self.store, experiment_id)

    @_structured
    def get_experiment(self, experiment_id: str):
        return lifecycle.get_experiment(self.store, experiment_id)

    @_structured
    def list_experiments(self, status: Optional[str] = None, category: Optional[str] = None):
        try:
            flt = ExperimentFilter(
                status=ExperimentStatus(status.upper()) if status else None,
                category=category,
            )
        except ValueError:
            raise ValidationError(f"Unknown status '{status}'") from None
        return lifecycle.list_experiments(self.store, flt)

    @_structured
    def audit_trail(self, experiment_id: str):
        self.store.get_experiment(experiment_id)
        return self.store.list_audit(experiment_id)

    # Winner & promotion

    @_structured
    def declare_winner(self, experiment_id: str, variant: str):
        return promotion.declare_winner(self.store, experiment_id, variant)

    @_structured
    def promote(self, experiment_id: str, variant: str, mark_promoted: bool = True):
        computed = None
        try:
            computed = self.aggregator.get_results_summary(experiment_id, cached=True).winner
        except DataSourceError as e:
            logger.warning(f"Promoting {experiment_id} without a results summary: {e}")
        return promotion.promote(
            self.store, experiment_id, variant, mark_promoted=mark_promoted, computed_winner=computed
        )

    @_structured
    def get_live_config(self, surface: str):
        return promotion.get_live_config(self.store, surface)

    # Assignment

    @_structured
    def resolve_assignment(self, experiment_id: str, subject_id: str):
        return assignment.resolve_assignment(self.store, experiment_id, subject_id)

    @_structured
    def resolve_for_surface(self, category: str, subject_id: str):
        return assignment.resolve_for_surface(self.store, category, subject_id)

    # Results

    @_structured
    def get_results_summary(self, experiment_id: str, cached: bool = False):
        return self.aggregator.get_results_summary(experiment_id, cached=cached)

    @_structured
    def check_harm(self, experiment_id: str):
        return self.harm_monitor.check(experiment_id)

    @_structured
    def get_snapshot(self):
        counts = self.store.status_counts()
        counts["generated_at"] = utcnow().isoformat()
        return counts

    # Scheduled entry point

    @_structured
    def run_scheduled_sweep(self) -> SweepReport:
        """
        Nightly pass over RUNNING experiments.

        1. Complete experiments whose end_at has passed.
        2. Run the harm monitor.
        3. Refresh cached summaries for experiments still RUNNING.

        Failures are recorded per experiment and never abort the pass.
        """
        report = SweepReport()
        now = utcnow()
        running = self.store.list_experiments(ExperimentFilter(status=ExperimentStatus.RUNNING))

        for experiment in running:
            if experiment.end_at < now:
                try:
                    if lifecycle.complete_experiment(self.store, experiment.id, actor="scheduler").changed:
                        report.completed.append(experiment.id)
                except ExperimentError as e:
                    report.failed[experiment.id] = str(e)

        for result in self.harm_monitor.sweep():
            if result.stopped:
                report.harm_stopped.append(result.experiment_id)

        for experiment in self.store.list_experiments(ExperimentFilter(status=ExperimentStatus.RUNNING)):
            try:
                self.aggregator.refresh_snapshot(experiment.id)
                report.refreshed.append(experiment.id)
            except ExperimentError as e:
                logger.warning(f"Aggregation pass failed for {experiment.id}: {e}")
                report.failed[experiment.id] = str(e)

        logger.info(
            f"Scheduled sweep: completed={len(report.completed)}, "
            f"harm_stopped={len(report.harm_stopped)}, refreshed={len(report.refreshed)}, "
            f"failed={len(report.failed)}"
        )
        return report
