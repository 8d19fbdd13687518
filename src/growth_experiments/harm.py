"""
Harm monitor: guardrail auto-stop for RUNNING experiments.

Recomputes the threshold metric for both variants and stops the experiment
when either variant breaches the configured rule. This is a safety valve,
not a significance test; ambiguous comparisons resolve towards stopping.
"""

import logging
from typing import Dict, List, Optional, Tuple

from .aggregate import ResultsAggregator
from .exceptions import DataSourceError
from .lifecycle import stop_experiment
from .schema import (
    AuditEvent,
    Experiment,
    ExperimentFilter,
    ExperimentStatus,
    HarmCheckResult,
    HarmDirection,
    HarmMode,
    HarmThreshold,
    Variant,
)
from .store import ExperimentStore

logger = logging.getLogger(__name__)


def _degradation(observed: float, reference: float, direction: HarmDirection) -> float:
    """Relative move of `observed` against `reference` in the harmful direction."""
    delta = reference - observed if direction == HarmDirection.DECREASE else observed - reference
    if reference == 0:
        # no scale to normalise by: any harmful move counts as unbounded
        return float("inf") if delta > 0 else 0.0
    return delta / abs(reference)


def evaluate_threshold(
    threshold: HarmThreshold,
    means: Dict[Variant, Optional[float]],
    counts: Optional[Dict[Variant, int]] = None,
) -> Tuple[Optional[Variant], Optional[str]]:
    """
    Evaluate a harm threshold against per-variant means.

    Args:
        threshold: Configured rule
        means: Mean of threshold.metric per variant (None = no data)
        counts: Subjects behind each mean, checked against min_samples

    Returns:
        Tuple of (breaching variant, reason), or (None, None) when no breach
    """
    counts = counts or {}
    for variant in (Variant.B, Variant.A):
        observed = means.get(variant)
        if observed is None or counts.get(variant, threshold.min_samples) < threshold.min_samples:
            continue

        if threshold.mode == HarmMode.ABSOLUTE:
            breached = (
                observed < threshold.magnitude
                if threshold.direction == HarmDirection.DECREASE
                else observed > threshold.magnitude
            )
            if breached:
                side = "below" if threshold.direction == HarmDirection.DECREASE else "above"
                return variant, (
                    f"{threshold.metric} for variant {variant.value} is {observed:.4g}, "
                    f"{side} limit {threshold.magnitude:.4g}"
                )
            continue

        if threshold.mode == HarmMode.BASELINE:
            reference, label = threshold.baseline, "baseline"
        else:
            other = variant.other
            reference, label = means.get(other), f"variant {other.value}"
            if reference is None or counts.get(other, threshold.min_samples) < threshold.min_samples:
                continue

        moved = _degradation(observed, reference, threshold.direction)
        if moved > threshold.magnitude:
            verb = "dropped" if threshold.direction == HarmDirection.DECREASE else "rose"
            return variant, (
                f"{threshold.metric} for variant {variant.value} {verb} {moved:.1%} vs {label} "
                f"({observed:.4g} vs {reference:.4g}), limit {threshold.magnitude:.1%}"
            )
    return None, None


class HarmMonitor:
    """Evaluates harm thresholds and auto-stops breaching experiments."""

    def __init__(self, store: ExperimentStore, aggregator: ResultsAggregator) -> None:
        self.store = store
        self.aggregator = aggregator

    def check(self, experiment_id: str) -> HarmCheckResult:
        """
        Evaluate one experiment. Stops it on breach.

        Raises:
            NotFoundError, DataSourceError
        """
        experiment = self.store.get_experiment(experiment_id)
        result = HarmCheckResult(experiment_id=experiment_id)
        threshold = experiment.harm_threshold
        if experiment.status != ExperimentStatus.RUNNING or threshold is None:
            return result

        means, counts = self.aggregator.metric_means(experiment, threshold.metric)
        result.observed = {v.value: means[v] for v in Variant}
        variant, reason = evaluate_threshold(threshold, means, counts)
        if variant is None:
            return result

        logger.warning(f"Harm threshold breached for {experiment_id}: {reason}")
        breach = AuditEvent(experiment_id, "harm_breach", {
            "variant": variant.value,
            "reason": reason,
            "threshold": threshold.to_dict(),
            "observed": result.observed,
        })
        transition = stop_experiment(
            self.store,
            experiment_id,
            reason=f"harm: {reason}",
            actor="harm_monitor",
            extra_audit=[breach],
        )
        result.stopped = transition.changed
        result.reason = reason
        result.variant = variant
        return result

    def sweep(self) -> List[HarmCheckResult]:
        """Check every RUNNING experiment that declares a harm threshold."""
        results = []
        running: List[Experiment] = self.store.list_experiments(
            ExperimentFilter(status=ExperimentStatus.RUNNING)
        )
        for experiment in running:
            if experiment.harm_threshold is None:
                continue
            try:
                results.append(self.check(experiment.id))
            except DataSourceError as e:
                logger.warning(f"Harm check skipped for {experiment.id}: {e}")
        stopped = sum(1 for r in results if r.stopped)
        logger.info(f"Harm sweep complete: {len(results)} checked, {stopped} stopped")
        return results
