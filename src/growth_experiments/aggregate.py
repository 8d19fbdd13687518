"""
Results aggregation and winner determination.

Scans an experiment's assignments page by page, pulls attributable outcomes
from the metric source for each page, reduces them to one value per subject
and accumulates per-variant sums and counts. Subjects without outcomes count
towards assignment_count only; they never contribute a zero.

The pass is read-only: it never writes experiment or assignment rows, and a
metric source failure surfaces as DataSourceError with nothing applied.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import pandas as pd

from .config import DEFAULT_PAGE_SIZE, DEFAULT_SRM_ALPHA, DEFAULT_TIE_TOLERANCE
from .event_store import MetricSource
from .exceptions import DataSourceError
from .schema import (
    AnalysisWindow,
    Experiment,
    ResultsSummary,
    Variant,
    VariantSummary,
    get_metric,
    utcnow,
)
from .stats import check_srm
from .store import ExperimentStore

logger = logging.getLogger(__name__)


def determine_winner(
    mean_a: Optional[float],
    mean_b: Optional[float],
    tolerance: float = DEFAULT_TIE_TOLERANCE,
) -> str:
    """
    Higher mean wins. Equal within tolerance, or missing data on either
    side, is a tie. Not a significance test.
    """
    if mean_a is None or mean_b is None:
        return "tie"
    if math.isclose(mean_a, mean_b, rel_tol=tolerance, abs_tol=tolerance):
        return "tie"
    return Variant.A.value if mean_a > mean_b else Variant.B.value


@dataclass
class PartialAggregate:
    """Mergeable accumulator for one or more pages of an aggregation scan."""
    assignment_counts: Dict[Variant, int] = field(
        default_factory=lambda: {Variant.A: 0, Variant.B: 0}
    )
    sums: Dict[Tuple[str, Variant], float] = field(default_factory=dict)
    counts: Dict[Tuple[str, Variant], int] = field(default_factory=dict)

    def add(self, metric: str, variant: Variant, total: float, n: int) -> None:
        key = (metric, variant)
        self.sums[key] = self.sums.get(key, 0.0) + total
        self.counts[key] = self.counts.get(key, 0) + n

    def merge(self, other: "PartialAggregate") -> "PartialAggregate":
        for v, n in other.assignment_counts.items():
            self.assignment_counts[v] = self.assignment_counts.get(v, 0) + n
        for (metric, v), total in other.sums.items():
            self.add(metric, v, total, other.counts[(metric, v)])
        return self

    def count(self, metric: str, variant: Variant) -> int:
        return self.counts.get((metric, variant), 0)

    def mean(self, metric: str, variant: Variant) -> Optional[float]:
        n = self.count(metric, variant)
        if n == 0:
            return None
        return self.sums[(metric, variant)] / n


class ResultsAggregator:
    """Computes ResultsSummary objects for experiments."""

    def __init__(
        self,
        store: ExperimentStore,
        metric_source: MetricSource,
        tie_tolerance: float = DEFAULT_TIE_TOLERANCE,
        page_size: int = DEFAULT_PAGE_SIZE,
        time_budget_seconds: Optional[float] = None,
        srm_alpha: float = DEFAULT_SRM_ALPHA,
    ) -> None:
        self.store = store
        self.metric_source = metric_source
        self.tie_tolerance = tie_tolerance
        self.page_size = page_size
        self.time_budget_seconds = time_budget_seconds
        self.srm_alpha = srm_alpha

    def _fetch(self, subject_ids: List[str], metric: str, window: AnalysisWindow) -> pd.DataFrame:
        try:
            outcomes = self.metric_source.fetch_outcomes(subject_ids, metric, window)
        except DataSourceError:
            raise
        except Exception as e:
            raise DataSourceError(f"Metric source failed for metric '{metric}': {e}") from e
        if outcomes is None or outcomes.empty:
            return pd.DataFrame(columns=["subject_id", "value"])
        outcomes = outcomes[["subject_id", "value"]].copy()
        outcomes["subject_id"] = outcomes["subject_id"].astype(str)
        outcomes["value"] = pd.to_numeric(outcomes["value"], errors="coerce")
        return outcomes.dropna(subset=["value"])

    def scan_page(
        self,
        experiment: Experiment,
        metrics: List[str],
        cursor: Optional[str] = None,
    ) -> Tuple[PartialAggregate, Optional[str]]:
        """
        Aggregate one page of assignments.

        Args:
            experiment: Experiment to aggregate
            metrics: Metric keys to accumulate
            cursor: Last subject_id of the previous page (None = first page)

        Returns:
            Tuple of (partial aggregate, next cursor or None when done)
        """
        partial = PartialAggregate()
        page = self.store.assignment_page(experiment.id, cursor, self.page_size)
        if not page:
            return partial, None

        frame = pd.DataFrame(
            [(sid, v.value) for sid, v in page], columns=["subject_id", "variant"]
        )
        for v, n in frame["variant"].value_counts().items():
            partial.assignment_counts[Variant(v)] += int(n)

        window = AnalysisWindow(experiment.start_at, experiment.end_at)
        subject_ids = frame["subject_id"].tolist()
        for metric in metrics:
            reduction = get_metric(metric).per_subject
            outcomes = self._fetch(subject_ids, metric, window)
            if outcomes.empty:
                continue
            per_subject = outcomes.groupby("subject_id")["value"].agg(reduction).rename("value")
            merged = frame.merge(per_subject, left_on="subject_id", right_index=True, how="inner")
            grouped = merged.groupby("variant")["value"].agg(["sum", "count"])
            for v, row in grouped.iterrows():
                partial.add(metric, Variant(v), float(row["sum"]), int(row["count"]))

        next_cursor = page[-1][0] if len(page) == self.page_size else None
        return partial, next_cursor

    def aggregate(self, experiment: Experiment, metrics: List[str]) -> PartialAggregate:
        """Full scan over all pages, bounded by time_budget_seconds if set."""
        deadline = (
            time.monotonic() + self.time_budget_seconds
            if self.time_budget_seconds is not None else None
        )
        total = PartialAggregate()
        cursor = None
        pages = 0
        while True:
            partial, cursor = self.scan_page(experiment, metrics, cursor)
            total.merge(partial)
            pages += 1
            if cursor is None:
                break
            if deadline is not None and time.monotonic() > deadline:
                raise DataSourceError(
                    f"Aggregation of {experiment.id} exceeded {self.time_budget_seconds}s "
                    f"after {pages} pages; retry the pass"
                )
        logger.debug(f"Aggregated {experiment.id} over {pages} pages")
        return total

    def metric_means(
        self, experiment: Experiment, metric: str
    ) -> Tuple[Dict[Variant, Optional[float]], Dict[Variant, int]]:
        """Per-variant mean and counted subjects for a single metric."""
        agg = self.aggregate(experiment, [metric])
        means = {v: agg.mean(metric, v) for v in Variant}
        counts = {v: agg.count(metric, v) for v in Variant}
        return means, counts

    def summarize(self, experiment_id: str) -> ResultsSummary:
        """
        Compute the ResultsSummary for an experiment.

        Idempotent: the same data snapshot always yields the same summary.
        """
        experiment = self.store.get_experiment(experiment_id)
        primary = experiment.metric
        secondary = experiment.secondary_metric
        metrics = [primary] + ([secondary] if secondary and secondary != primary else [])

        agg = self.aggregate(experiment, metrics)

        arms = {}
        for v in Variant:
            arms[v] = VariantSummary(
                variant=v,
                assignment_count=agg.assignment_counts.get(v, 0),
                count=agg.count(primary, v),
                primary_mean=agg.mean(primary, v),
                secondary_mean=agg.mean(secondary, v) if secondary else None,
            )

        srm_passed, _, srm_p = check_srm(
            arms[Variant.A].assignment_count, arms[Variant.B].assignment_count, alpha=self.srm_alpha
        )
        if not srm_passed:
            logger.warning(
                f"SRM detected for {experiment_id}: A={arms[Variant.A].assignment_count}, "
                f"B={arms[Variant.B].assignment_count}, p={srm_p:.4g}"
            )

        return ResultsSummary(
            experiment_id=experiment_id,
            primary_metric=primary,
            secondary_metric=secondary,
            variant_a=arms[Variant.A],
            variant_b=arms[Variant.B],
            winner=determine_winner(
                arms[Variant.A].primary_mean, arms[Variant.B].primary_mean, self.tie_tolerance
            ),
            computed_at=utcnow(),
            srm_passed=srm_passed,
            srm_p_value=srm_p,
        )

    def refresh_snapshot(self, experiment_id: str) -> ResultsSummary:
        """Recompute and cache the summary for cheap reads."""
        summary = self.summarize(experiment_id)
        self.store.save_snapshot(experiment_id, summary.computed_at, summary.to_dict())
        return summary

    def get_results_summary(self, experiment_id: str, cached: bool = False) -> ResultsSummary:
        """Summary from the last cached pass when cached=True and one exists, else computed now."""
        if cached:
            self.store.get_experiment(experiment_id)
            snapshot = self.store.get_snapshot(experiment_id)
            if snapshot is not None:
                return ResultsSummary.from_dict(snapshot)
        return self.summarize(experiment_id)
