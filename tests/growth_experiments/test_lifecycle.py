"""Tests for the experiment lifecycle state machine."""
from datetime import timedelta

import pytest

from src.growth_experiments.exceptions import (
    CategoryConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from src.growth_experiments.lifecycle import (
    complete_experiment,
    create_experiment,
    list_experiments,
    start_experiment,
    stop_experiment,
    update_experiment,
)
from src.growth_experiments.schema import (
    AuditEvent,
    ExperimentDefinition,
    ExperimentFilter,
    ExperimentStatus,
    HarmThreshold,
    utcnow,
)


def test_create_produces_draft(store, make_definition):
    exp = create_experiment(store, make_definition(hypothesis="  higher price, same conversion "))
    assert exp.status == ExperimentStatus.DRAFT
    assert exp.hypothesis == "higher price, same conversion"
    assert exp.winner_variant is None
    assert exp.promoted_at is None
    assert store.get_experiment(exp.id).variant_b == {"multiplier": 1.2}


@pytest.mark.parametrize("overrides", [
    {"metric": "not_a_metric"},
    {"secondary_metric": "bogus"},
    {"name": "   "},
    {"variant_b": None},
])
def test_create_rejects_malformed(store, make_definition, overrides):
    with pytest.raises(ValidationError):
        create_experiment(store, make_definition(**overrides))


def test_create_rejects_inverted_window(store, make_definition):
    now = utcnow()
    with pytest.raises(ValidationError):
        create_experiment(store, make_definition(start_at=now, end_at=now))
    with pytest.raises(ValidationError):
        create_experiment(store, make_definition(start_at=now, end_at=now - timedelta(hours=1)))


def test_create_rejects_bad_harm_threshold(store, make_definition):
    with pytest.raises(ValidationError):
        create_experiment(store, make_definition(
            harm_threshold=HarmThreshold(metric="revenue_cents", magnitude=-0.1)
        ))


def test_definition_from_dict_accepts_camel_case():
    d = ExperimentDefinition.from_dict({
        "name": "Msg test",
        "category": "messaging",
        "variantA": {"template": "short"},
        "variantB": {"template": "long"},
        "metric": "conversion",
        "secondaryMetric": "complaints",
        "startAt": "2026-01-01T00:00:00Z",
        "endAt": "2026-02-01T00:00:00Z",
        "harmThreshold": {"metric": "conversion", "minValue": 0.1},
    }).normalized()
    assert d.variant_b == {"template": "long"}
    assert d.secondary_metric == "complaints"
    assert d.start_at.tzinfo is None
    assert d.harm_threshold.magnitude == 0.1


def test_start_enforces_one_running_per_category(store, make_definition):
    """Two drafts sharing a category: exactly one can start."""
    e1 = create_experiment(store, make_definition(name="first"))
    e2 = create_experiment(store, make_definition(name="second"))

    assert start_experiment(store, e1.id).changed
    with pytest.raises(CategoryConflictError):
        start_experiment(store, e2.id)

    assert store.get_experiment(e1.id).status == ExperimentStatus.RUNNING
    assert store.get_experiment(e2.id).status == ExperimentStatus.DRAFT


def test_running_category_index_rejects_second_writer(store, make_definition):
    """The unique index holds even if a writer skips the pre-check."""
    e1 = create_experiment(store, make_definition(name="first"))
    e2 = create_experiment(store, make_definition(name="second"))
    start_experiment(store, e1.id)
    with pytest.raises(CategoryConflictError):
        store.transition(
            e2.id,
            expected=(ExperimentStatus.DRAFT,),
            new_status=ExperimentStatus.RUNNING,
            audit=AuditEvent(e2.id, "started"),
        )
    assert store.get_experiment(e2.id).status == ExperimentStatus.DRAFT


def test_create_checks_category_when_enabled(store, make_definition):
    e1 = create_experiment(store, make_definition())
    start_experiment(store, e1.id)
    with pytest.raises(CategoryConflictError):
        create_experiment(store, make_definition(name="later"))
    later = create_experiment(store, make_definition(name="later"), check_category=False)
    assert later.status == ExperimentStatus.DRAFT


def test_category_freed_after_stop(store, make_definition):
    e1 = create_experiment(store, make_definition(name="first"))
    e2 = create_experiment(store, make_definition(name="second"))
    start_experiment(store, e1.id)
    stop_experiment(store, e1.id)
    assert start_experiment(store, e2.id).changed


def test_uncategorised_experiments_run_concurrently(store, make_definition):
    e1 = create_experiment(store, make_definition(name="a", category=None))
    e2 = create_experiment(store, make_definition(name="b", category="  "))
    start_experiment(store, e1.id)
    start_experiment(store, e2.id)
    running = list_experiments(store, ExperimentFilter(status=ExperimentStatus.RUNNING))
    assert {e.id for e in running} == {e1.id, e2.id}


def test_start_only_from_draft(store, make_definition):
    exp = create_experiment(store, make_definition())
    start_experiment(store, exp.id)
    with pytest.raises(InvalidTransitionError):
        start_experiment(store, exp.id)
    stop_experiment(store, exp.id)
    with pytest.raises(InvalidTransitionError):
        start_experiment(store, exp.id)


def test_stop_twice_is_noop(store, make_definition):
    exp = create_experiment(store, make_definition())
    start_experiment(store, exp.id)
    first = stop_experiment(store, exp.id, reason="manual")
    second = stop_experiment(store, exp.id)
    assert first.changed
    assert not second.changed
    assert second.experiment.status == ExperimentStatus.STOPPED
    assert second.experiment.stop_reason == "manual"
    assert [e.action for e in store.list_audit(exp.id)].count("stopped") == 1


def test_stop_after_complete_is_noop(store, make_definition):
    exp = create_experiment(store, make_definition())
    start_experiment(store, exp.id)
    complete_experiment(store, exp.id)
    result = stop_experiment(store, exp.id)
    assert not result.changed
    assert result.experiment.status == ExperimentStatus.COMPLETE


def test_stop_draft_is_invalid(store, make_definition):
    exp = create_experiment(store, make_definition())
    with pytest.raises(InvalidTransitionError):
        stop_experiment(store, exp.id)


def test_complete_transitions(store, make_definition):
    exp = create_experiment(store, make_definition())
    with pytest.raises(InvalidTransitionError):
        complete_experiment(store, exp.id)
    start_experiment(store, exp.id)
    assert complete_experiment(store, exp.id).changed
    assert not complete_experiment(store, exp.id).changed


def test_complete_after_stop_is_invalid(store, make_definition):
    exp = create_experiment(store, make_definition())
    start_experiment(store, exp.id)
    stop_experiment(store, exp.id)
    with pytest.raises(InvalidTransitionError):
        complete_experiment(store, exp.id)


def test_update_only_in_draft(store, make_definition):
    exp = create_experiment(store, make_definition())
    updated = update_experiment(store, exp.id, make_definition(name="renamed", metric="conversion"))
    assert updated.name == "renamed"
    assert updated.metric == "conversion"
    start_experiment(store, exp.id)
    with pytest.raises(InvalidTransitionError):
        update_experiment(store, exp.id, make_definition(name="too late"))


def test_unknown_experiment(store):
    with pytest.raises(NotFoundError):
        start_experiment(store, "nope")
    with pytest.raises(NotFoundError):
        stop_experiment(store, "nope")


def test_list_filters_by_status_and_category(store, make_definition):
    a = create_experiment(store, make_definition(name="pricing"))
    b = create_experiment(store, make_definition(name="messaging", category="messaging"))
    start_experiment(store, b.id)
    assert [e.id for e in list_experiments(store, ExperimentFilter(category="pricing"))] == [a.id]
    assert [e.id for e in list_experiments(store, ExperimentFilter(status=ExperimentStatus.RUNNING))] == [b.id]
    assert len(list_experiments(store)) == 2


def test_transitions_are_audited(store, make_definition):
    exp = create_experiment(store, make_definition())
    start_experiment(store, exp.id)
    complete_experiment(store, exp.id)
    assert [e.action for e in store.list_audit(exp.id)] == ["created", "started", "completed"]
