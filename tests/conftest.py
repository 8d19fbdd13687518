"""Pytest configuration - add project root to path and shared engine fixtures."""
import sys
from datetime import timedelta
from pathlib import Path

import pytest

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))

from src.growth_experiments.config import EngineConfig  # noqa: E402
from src.growth_experiments.engine import ExperimentEngine  # noqa: E402
from src.growth_experiments.event_store import InMemoryMetricSource  # noqa: E402
from src.growth_experiments.schema import ExperimentDefinition, utcnow  # noqa: E402
from src.growth_experiments.store import ExperimentStore  # noqa: E402


@pytest.fixture
def store():
    """Fresh in-memory experiment store."""
    return ExperimentStore("sqlite://")


@pytest.fixture
def metric_source():
    return InMemoryMetricSource()


@pytest.fixture
def engine(store, metric_source):
    return ExperimentEngine(store=store, metric_source=metric_source, config=EngineConfig(page_size=100))


@pytest.fixture
def make_definition():
    """Factory for valid definitions; keyword overrides replace fields."""
    def _make(**overrides):
        now = utcnow()
        values = dict(
            name="Pricing multiplier",
            category="pricing",
            variant_a={"multiplier": 1.0},
            variant_b={"multiplier": 1.2},
            metric="revenue_cents",
            start_at=now - timedelta(days=1),
            end_at=now + timedelta(days=30),
        )
        values.update(overrides)
        return ExperimentDefinition(**values)
    return _make
