"""Tests for deterministic assignment."""
import pytest

from src.growth_experiments.assignment import (
    assign_subjects,
    assign_variant,
    resolve_assignment,
    resolve_for_surface,
)
from src.growth_experiments.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from src.growth_experiments.lifecycle import create_experiment, start_experiment, stop_experiment
from src.growth_experiments.promotion import promote
from src.growth_experiments.schema import Variant


@pytest.fixture
def running(store, make_definition):
    exp = create_experiment(store, make_definition())
    start_experiment(store, exp.id)
    return exp


def test_assign_variant_deterministic():
    """Same subject + experiment always gets same variant."""
    v1 = assign_variant("subj_001", "exp_1")
    v2 = assign_variant("subj_001", "exp_1")
    assert v1 == v2


def test_assign_variant_different_experiments():
    """Different experiments can yield different variants for same subject."""
    v1 = assign_variant("subj_001", "exp_1")
    v2 = assign_variant("subj_001", "exp_2")
    assert v1 in (Variant.A, Variant.B)
    assert v2 in (Variant.A, Variant.B)


def test_assign_variant_allocation():
    """At 0 allocation, all A. At 1, all B."""
    assert assign_variant("x", "e", allocation=0.0) == Variant.A
    assert assign_variant("x", "e", allocation=1.0) == Variant.B


def test_assign_variant_balance_large_population():
    """10k subjects split within two percentage points of 50/50."""
    n = 10000
    n_b = sum(1 for i in range(n) if assign_variant(f"s{i}", "exp_balance") == Variant.B)
    assert 0.48 <= n_b / n <= 0.52


def test_resolve_assignment_idempotent(store, running):
    """Repeated resolution returns the stored variant."""
    first = resolve_assignment(store, running.id, "booking_42")
    for _ in range(5):
        assert resolve_assignment(store, running.id, "booking_42") == first
    assert first == assign_variant("booking_42", running.id)
    counts = store.assignment_counts(running.id)
    assert counts[Variant.A] + counts[Variant.B] == 1


def test_assign_subjects_balance(store, running):
    """1000 subjects on a running experiment split roughly 50/50."""
    ids = [f"c{i}" for i in range(1000)]
    assignments = assign_subjects(store, running.id, ids)
    n_a = sum(1 for a in assignments if a.variant == Variant.A)
    n_b = sum(1 for a in assignments if a.variant == Variant.B)
    assert 440 <= n_a <= 560
    assert 440 <= n_b <= 560
    assert n_a + n_b == 1000
    counts = store.assignment_counts(running.id)
    assert counts[Variant.A] == n_a
    assert counts[Variant.B] == n_b


def test_insert_assignment_keeps_first_row(store, running):
    """A second insert for the same pair returns the stored row, never a second variant."""
    from src.growth_experiments.schema import Assignment

    stored = store.insert_assignment(Assignment(running.id, "dup", Variant.A))
    again = store.insert_assignment(Assignment(running.id, "dup", Variant.B))
    assert again.variant == stored.variant == Variant.A
    assert sum(store.assignment_counts(running.id).values()) == 1


def test_draft_experiment_rejects_assignment(store, make_definition):
    exp = create_experiment(store, make_definition())
    with pytest.raises(InvalidTransitionError):
        resolve_assignment(store, exp.id, "subj")


def test_stopped_experiment_freezes_assignment(store, running):
    """Existing assignments are still served, new subjects are refused."""
    before = resolve_assignment(store, running.id, "early")
    stop_experiment(store, running.id)
    assert resolve_assignment(store, running.id, "early") == before
    with pytest.raises(InvalidTransitionError):
        resolve_assignment(store, running.id, "late")


def test_resolve_assignment_unknown_experiment(store):
    with pytest.raises(NotFoundError):
        resolve_assignment(store, "missing", "subj")


def test_resolve_assignment_requires_subject(store, running):
    with pytest.raises(ValidationError):
        resolve_assignment(store, running.id, "  ")


def test_resolve_for_surface_active_then_live(store, running):
    """Surface lookup serves the running experiment, then the promoted payload."""
    hit = resolve_for_surface(store, "pricing", "booking_7")
    assert hit["source"] == "experiment"
    assert hit["experiment_id"] == running.id
    expected = {"multiplier": 1.0} if hit["variant"] == "A" else {"multiplier": 1.2}
    assert hit["config"] == expected

    stop_experiment(store, running.id)
    assert resolve_for_surface(store, "pricing", "booking_7") is None

    promote(store, running.id, "B")
    live = resolve_for_surface(store, "pricing", "anyone")
    assert live == {
        "experiment_id": running.id,
        "variant": "B",
        "config": {"multiplier": 1.2},
        "source": "live",
    }


def test_resolve_for_surface_ignores_experiment_outside_window(store, make_definition):
    from datetime import timedelta
    from src.growth_experiments.schema import utcnow

    now = utcnow()
    exp = create_experiment(store, make_definition(
        start_at=now + timedelta(days=2), end_at=now + timedelta(days=9)
    ))
    start_experiment(store, exp.id)
    assert resolve_for_surface(store, "pricing", "subj") is None
