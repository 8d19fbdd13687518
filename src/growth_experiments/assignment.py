"""
Deterministic experiment assignment.

Hashes (subject_id, experiment_id) into a stable bucket so the same subject
always lands in the same variant. The first resolution for a RUNNING
experiment is persisted; after the experiment stops, stored assignments are
still served but no new subjects are bucketed.
"""

import hashlib
import logging
from typing import Any, Dict, List, Optional

from .config import DEFAULT_TREATMENT_ALLOCATION
from .exceptions import InvalidTransitionError, ValidationError
from .schema import Assignment, ExperimentStatus, Variant, normalize_category, utcnow
from .store import ExperimentStore

logger = logging.getLogger(__name__)


def _hash_to_bucket(subject_id: str, experiment_id: str, salt: str = "") -> int:
    """
    Deterministic hash to [0, 9999] bucket.

    Same subject + experiment_id always maps to same bucket.
    """
    key = f"{subject_id}:{experiment_id}:{salt}"
    h = hashlib.sha256(key.encode()).hexdigest()
    return int(h[:8], 16) % 10000


def assign_variant(
    subject_id: str,
    experiment_id: str,
    allocation: float = DEFAULT_TREATMENT_ALLOCATION,
) -> Variant:
    """
    Bucket a subject into A or B without touching the store.

    Args:
        subject_id: Stable subject identifier (booking, session, user)
        experiment_id: Experiment identifier
        allocation: Fraction of subjects in variant B (0.5 = 50/50)

    Returns:
        Variant.A or Variant.B
    """
    bucket = _hash_to_bucket(str(subject_id), str(experiment_id))
    threshold = int(allocation * 10000)
    return Variant.B if bucket < threshold else Variant.A


def resolve_assignment(store: ExperimentStore, experiment_id: str, subject_id: str) -> Variant:
    """
    Return the subject's variant, assigning it on first sight.

    Raises:
        NotFoundError: unknown experiment
        InvalidTransitionError: experiment not RUNNING and subject never assigned
        ValidationError: empty subject id
    """
    subject_id = str(subject_id or "").strip()
    if not subject_id:
        raise ValidationError("subject_id is required")

    existing = store.get_assignment(experiment_id, subject_id)
    if existing is not None:
        return existing.variant

    experiment = store.get_experiment(experiment_id)
    if experiment.status != ExperimentStatus.RUNNING:
        raise InvalidTransitionError(
            f"Experiment {experiment_id} is {experiment.status.value}; only RUNNING experiments accept assignments"
        )

    assignment = store.insert_assignment(Assignment(
        experiment_id=experiment_id,
        subject_id=subject_id,
        variant=assign_variant(subject_id, experiment_id),
        assigned_at=utcnow(),
    ))
    return assignment.variant


def assign_subjects(store: ExperimentStore, experiment_id: str, subject_ids: List[str]) -> List[Assignment]:
    """
    Resolve many subjects for one experiment.

    Returns:
        List of Assignment objects in input order
    """
    assignments = []
    for sid in subject_ids:
        variant = resolve_assignment(store, experiment_id, sid)
        assignments.append(Assignment(experiment_id, str(sid), variant))

    n_a = sum(1 for a in assignments if a.variant == Variant.A)
    n_b = sum(1 for a in assignments if a.variant == Variant.B)
    logger.info(
        f"Assignment complete for {experiment_id}: {len(assignments)} subjects -> "
        f"A={n_a}, B={n_b}"
    )
    return assignments


def resolve_for_surface(store: ExperimentStore, category: str, subject_id: str) -> Optional[Dict[str, Any]]:
    """
    One-stop lookup for product code.

    Returns the active experiment's variant payload for the subject when a
    RUNNING experiment inside its window holds the category, otherwise the
    promoted live config for the surface, otherwise None.
    """
    category = normalize_category(category)
    if category is None:
        raise ValidationError("category is required")

    experiment = store.running_in_category(category)
    if experiment is not None and experiment.is_active():
        variant = resolve_assignment(store, experiment.id, subject_id)
        return {
            "experiment_id": experiment.id,
            "variant": variant.value,
            "config": experiment.payload_for(variant),
            "source": "experiment",
        }

    live = store.get_live_config(category)
    if live is not None:
        return {
            "experiment_id": live.experiment_id,
            "variant": live.variant.value,
            "config": live.payload,
            "source": "live",
        }
    return None
