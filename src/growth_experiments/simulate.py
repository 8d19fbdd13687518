"""
Traffic and outcome simulator.

Buckets a synthetic population through the assignment resolver of a RUNNING
experiment and emits outcome events per variant the way a product surface
would. Used by the demo script and the end-to-end tests.
"""

import logging
from typing import Dict, Optional

import numpy as np

from .assignment import assign_subjects
from .schema import OutcomeEvent, Variant, utcnow
from .store import ExperimentStore

logger = logging.getLogger(__name__)

SIMULATOR_SEED = 42


def run_simulation(
    store: ExperimentStore,
    metric_source,
    experiment_id: str,
    n_subjects: int = 1000,
    metric: str = "revenue_cents",
    means: Optional[Dict[str, float]] = None,
    noise_std: float = 0.0,
    response_rate: float = 1.0,
    subject_prefix: str = "subj",
    random_seed: int = SIMULATOR_SEED,
) -> Dict:
    """
    Simulate traffic and outcomes for one experiment.

    Args:
        store: Experiment store
        metric_source: Source with append_outcomes (CsvOutcomeStore, InMemoryMetricSource)
        experiment_id: RUNNING experiment to send traffic to
        n_subjects: Number of distinct subjects
        metric: Metric key for emitted outcomes
        means: Expected outcome value per variant, e.g. {"A": 500, "B": 620}
        noise_std: Std of gaussian noise added to each outcome
        response_rate: Fraction of subjects that produce an outcome at all
        subject_prefix: Prefix for generated subject ids
        random_seed: Random seed for reproducibility

    Returns:
        Dict with n_assigned, n_a, n_b, outcomes_written
    """
    rng = np.random.default_rng(random_seed)
    means = means or {"A": 500.0, "B": 500.0}

    subject_ids = [f"{subject_prefix}_{i:05d}" for i in range(n_subjects)]
    assignments = assign_subjects(store, experiment_id, subject_ids)

    now = utcnow()
    outcomes = []
    for a in assignments:
        if response_rate < 1.0 and rng.random() >= response_rate:
            continue
        value = float(means[a.variant.value])
        if noise_std > 0:
            value += float(rng.normal(0, noise_std))
        outcomes.append(OutcomeEvent(
            subject_id=a.subject_id,
            metric=metric,
            value=value,
            observed_at=now,
            metadata={"experiment_id": experiment_id, "variant": a.variant.value},
        ))

    n_out = metric_source.append_outcomes(outcomes)

    summary = {
        "experiment_id": experiment_id,
        "n_assigned": len(assignments),
        "n_a": sum(1 for a in assignments if a.variant == Variant.A),
        "n_b": sum(1 for a in assignments if a.variant == Variant.B),
        "outcomes_written": n_out,
        "metric": metric,
        "random_seed": random_seed,
    }
    logger.info(f"Simulation complete: {summary}")
    return summary
