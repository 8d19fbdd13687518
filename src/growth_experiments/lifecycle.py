"""
Experiment lifecycle state machine.

DRAFT -> RUNNING -> {STOPPED, COMPLETE}. Transitions are compare-and-swap
updates in the store; a transition whose precondition no longer holds is
re-read to report either a no-op (already terminal) or an invalid transition.
"""

import logging
from typing import List, Optional, Sequence

from .exceptions import CategoryConflictError, InvalidTransitionError, ValidationError
from .schema import (
    AuditEvent,
    Experiment,
    ExperimentDefinition,
    ExperimentFilter,
    ExperimentStatus,
    TERMINAL_STATUSES,
    TransitionResult,
)
from .store import ExperimentStore

logger = logging.getLogger(__name__)


def create_experiment(
    store: ExperimentStore,
    definition: ExperimentDefinition,
    check_category: bool = True,
) -> Experiment:
    """
    Validate a definition and persist it as DRAFT.

    Args:
        store: Experiment store
        definition: Caller-supplied definition
        check_category: Also reject a category that is already held by a
                        RUNNING experiment (start() re-checks regardless)

    Returns:
        The created Experiment

    Raises:
        ValidationError, CategoryConflictError
    """
    if not isinstance(definition, ExperimentDefinition):
        raise ValidationError("Expected an ExperimentDefinition")
    clean = definition.normalized()
    if check_category and clean.category:
        holder = store.running_in_category(clean.category)
        if holder is not None:
            raise CategoryConflictError(
                f"Category '{clean.category}' already has RUNNING experiment {holder.id}"
            )
    experiment = store.insert_experiment(clean)
    logger.info(f"Created experiment {experiment.id} ({experiment.name}) in DRAFT")
    return experiment


def update_experiment(
    store: ExperimentStore,
    experiment_id: str,
    definition: ExperimentDefinition,
) -> Experiment:
    """Replace the definition of a DRAFT experiment."""
    clean = definition.normalized()
    current = store.get_experiment(experiment_id)
    if current.status != ExperimentStatus.DRAFT or not store.update_draft(experiment_id, clean):
        current = store.get_experiment(experiment_id)
        raise InvalidTransitionError(
            f"Experiment {experiment_id} can only be edited in DRAFT (status={current.status.value})"
        )
    logger.info(f"Updated definition of experiment {experiment_id}")
    return store.get_experiment(experiment_id)


def start_experiment(store: ExperimentStore, experiment_id: str) -> TransitionResult:
    """DRAFT -> RUNNING, enforcing one RUNNING experiment per category."""
    experiment = store.get_experiment(experiment_id)
    if experiment.status != ExperimentStatus.DRAFT:
        raise InvalidTransitionError(
            f"Cannot start experiment {experiment_id} from {experiment.status.value}"
        )
    if experiment.category:
        holder = store.running_in_category(experiment.category, exclude_id=experiment_id)
        if holder is not None:
            raise CategoryConflictError(
                f"Category '{experiment.category}' already has RUNNING experiment {holder.id}"
            )

    changed = store.transition(
        experiment_id,
        expected=(ExperimentStatus.DRAFT,),
        new_status=ExperimentStatus.RUNNING,
        audit=AuditEvent(experiment_id, "started", {"category": experiment.category}),
    )
    if not changed:
        current = store.get_experiment(experiment_id)
        raise InvalidTransitionError(
            f"Cannot start experiment {experiment_id} from {current.status.value}"
        )
    logger.info(f"Experiment {experiment_id} RUNNING (category={experiment.category})")
    return TransitionResult(store.get_experiment(experiment_id), True, ExperimentStatus.DRAFT)


def stop_experiment(
    store: ExperimentStore,
    experiment_id: str,
    reason: Optional[str] = None,
    actor: str = "operator",
    extra_audit: Sequence[AuditEvent] = (),
) -> TransitionResult:
    """
    RUNNING -> STOPPED.

    Already STOPPED or COMPLETE reports a no-op (changed=False). DRAFT raises
    InvalidTransitionError.
    """
    changed = store.transition(
        experiment_id,
        expected=(ExperimentStatus.RUNNING,),
        new_status=ExperimentStatus.STOPPED,
        audit=AuditEvent(experiment_id, "stopped", {"reason": reason, "actor": actor}),
        stop_reason=reason,
        extra_audit=extra_audit,
    )
    current = store.get_experiment(experiment_id)
    if changed:
        logger.info(f"Experiment {experiment_id} STOPPED by {actor}" + (f": {reason}" if reason else ""))
        return TransitionResult(current, True, ExperimentStatus.RUNNING)
    if current.status in TERMINAL_STATUSES:
        logger.info(f"Stop of experiment {experiment_id} is a no-op: already {current.status.value}")
        return TransitionResult(current, False, current.status)
    raise InvalidTransitionError(f"Cannot stop experiment {experiment_id} from {current.status.value}")


def complete_experiment(store: ExperimentStore, experiment_id: str, actor: str = "operator") -> TransitionResult:
    """RUNNING -> COMPLETE. Already COMPLETE reports a no-op."""
    changed = store.transition(
        experiment_id,
        expected=(ExperimentStatus.RUNNING,),
        new_status=ExperimentStatus.COMPLETE,
        audit=AuditEvent(experiment_id, "completed", {"actor": actor}),
    )
    current = store.get_experiment(experiment_id)
    if changed:
        logger.info(f"Experiment {experiment_id} COMPLETE")
        return TransitionResult(current, True, ExperimentStatus.RUNNING)
    if current.status == ExperimentStatus.COMPLETE:
        return TransitionResult(current, False, current.status)
    raise InvalidTransitionError(
        f"Cannot complete experiment {experiment_id} from {current.status.value}"
    )


def get_experiment(store: ExperimentStore, experiment_id: str) -> Experiment:
    return store.get_experiment(experiment_id)


def list_experiments(store: ExperimentStore, flt: Optional[ExperimentFilter] = None) -> List[Experiment]:
    return store.list_experiments(flt)
