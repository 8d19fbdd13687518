"""
Winner declaration and promotion of a variant into live configuration.

Promotion publishes the chosen variant's payload, unchanged, as the live
config for the experiment's surface. Repeating a promotion of the same
variant is a no-op; promoting the other variant afterwards is an override
and is logged and audited as such.
"""

import logging
from typing import Optional

from .exceptions import AlreadyDecidedError, InvalidTransitionError
from .schema import (
    AuditEvent,
    LiveConfig,
    PromotionResult,
    TERMINAL_STATUSES,
    TransitionResult,
    Variant,
    parse_variant,
)
from .store import ExperimentStore

logger = logging.getLogger(__name__)


def declare_winner(
    store: ExperimentStore,
    experiment_id: str,
    variant,
    override: bool = False,
) -> TransitionResult:
    """
    Record the winning variant of a STOPPED or COMPLETE experiment.

    Does not change live behaviour. Re-declaring requires override=True.

    Raises:
        NotFoundError, InvalidTransitionError, AlreadyDecidedError, ValidationError
    """
    variant = parse_variant(variant)
    experiment = store.get_experiment(experiment_id)
    if experiment.status not in TERMINAL_STATUSES:
        raise InvalidTransitionError(
            f"Winner can only be declared on STOPPED or COMPLETE experiments "
            f"({experiment_id} is {experiment.status.value})"
        )
    if experiment.winner_variant is not None and not override:
        raise AlreadyDecidedError(
            f"Experiment {experiment_id} already has winner {experiment.winner_variant.value}"
        )

    audit = AuditEvent(experiment_id, "winner_declared", {
        "variant": variant.value,
        "previous": experiment.winner_variant.value if experiment.winner_variant else None,
        "override": override,
    })
    if not store.set_winner(experiment_id, variant, override, audit):
        # lost a race with another writer; report what they left behind
        current = store.get_experiment(experiment_id)
        if current.winner_variant is not None:
            raise AlreadyDecidedError(
                f"Experiment {experiment_id} already has winner {current.winner_variant.value}"
            )
        raise InvalidTransitionError(
            f"Cannot declare winner on {experiment_id} in status {current.status.value}"
        )
    if override and experiment.winner_variant not in (None, variant):
        logger.warning(
            f"Winner of {experiment_id} overridden: {experiment.winner_variant.value} -> {variant.value}"
        )
    logger.info(f"Declared winner {variant.value} for experiment {experiment_id}")
    return TransitionResult(store.get_experiment(experiment_id), True, experiment.status)


def promote(
    store: ExperimentStore,
    experiment_id: str,
    variant,
    mark_promoted: bool = True,
    computed_winner: Optional[str] = None,
) -> PromotionResult:
    """
    Publish a variant's payload as live configuration.

    Args:
        store: Experiment store
        experiment_id: STOPPED or COMPLETE experiment
        variant: 'A' or 'B'
        mark_promoted: Set promoted_at
        computed_winner: Winner from the latest ResultsSummary, if the caller
                         has one; disagreement is audited, not refused

    Returns:
        PromotionResult (noop=True when this variant is already promoted and
        nothing is left to stamp, override=True when it replaces the other
        variant)

    Raises:
        NotFoundError, InvalidTransitionError, ValidationError
    """
    variant = parse_variant(variant)
    experiment = store.get_experiment(experiment_id)
    if experiment.status not in TERMINAL_STATUSES:
        raise InvalidTransitionError(
            f"Only STOPPED or COMPLETE experiments can be promoted "
            f"({experiment_id} is {experiment.status.value})"
        )

    if experiment.promoted_variant == variant and mark_promoted and experiment.promoted_at is None:
        # payload is already live; only the promotion timestamp is missing
        marked = store.mark_promoted(
            experiment_id,
            variant,
            AuditEvent(experiment_id, "promotion_marked", {"variant": variant.value}),
        )
        if marked is None:
            return promote(store, experiment_id, variant, mark_promoted, computed_winner)
        logger.info(f"Marked {experiment_id} variant {variant.value} promoted at {marked.promoted_at}")
        return PromotionResult(
            experiment=marked,
            variant=variant,
            published=False,
            noop=False,
            payload=marked.payload_for(variant),
        )

    if experiment.promoted_variant == variant:
        logger.info(f"Promotion of {experiment_id} variant {variant.value} is a no-op: already promoted")
        return PromotionResult(
            experiment=experiment,
            variant=variant,
            published=False,
            noop=True,
            payload=experiment.payload_for(variant),
        )

    notes = []
    audit = []
    override = experiment.promoted_variant is not None
    if override:
        notes.append(
            f"override: replaces previously promoted variant {experiment.promoted_variant.value}"
        )
        audit.append(AuditEvent(experiment_id, "promotion_override", {
            "from": experiment.promoted_variant.value,
            "to": variant.value,
        }))
    if experiment.winner_variant is not None and experiment.winner_variant != variant:
        notes.append(f"declared winner is {experiment.winner_variant.value}")
    if computed_winner in (Variant.A.value, Variant.B.value) and computed_winner != variant.value:
        notes.append(f"computed winner is {computed_winner}")
    if computed_winner == "tie":
        notes.append("computed result is a tie")
    if len(notes) > (1 if override else 0):
        audit.append(AuditEvent(experiment_id, "winner_disagreement", {
            "promoted": variant.value,
            "declared_winner": experiment.winner_variant.value if experiment.winner_variant else None,
            "computed_winner": computed_winner,
        }))
    audit.append(AuditEvent(experiment_id, "promoted", {
        "variant": variant.value,
        "surface": experiment.surface,
        "mark_promoted": mark_promoted,
    }))

    written = store.record_promotion(experiment, variant, mark_promoted, audit)
    if written is None:
        # a concurrent promotion landed first; retry against the new state
        logger.info(f"Promotion of {experiment_id} raced another writer, re-evaluating")
        return promote(store, experiment_id, variant, mark_promoted, computed_winner)

    updated, live = written
    if override:
        logger.warning(
            f"Promotion override on {experiment_id}: {experiment.promoted_variant.value} -> "
            f"{variant.value} published to '{live.surface}'"
        )
    else:
        logger.info(f"Promoted {experiment_id} variant {variant.value} to '{live.surface}'")
    for note in notes:
        logger.warning(f"Promotion of {experiment_id} {variant.value}: {note}")

    return PromotionResult(
        experiment=updated,
        variant=variant,
        published=True,
        noop=False,
        override=override,
        payload=live.payload,
        notes=notes,
    )


def get_live_config(store: ExperimentStore, surface: str) -> Optional[LiveConfig]:
    """Payload currently live for a surface (category), if any was promoted."""
    return store.get_live_config(surface.strip())
