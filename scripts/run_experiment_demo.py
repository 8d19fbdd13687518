#!/usr/bin/env python3
"""
Run full experiment demo: create -> start -> simulate -> results -> stop -> declare -> promote.

Uses a throwaway SQLite database and outcome file under data/experiments/demo/.
"""

import logging
import shutil
import sys
from datetime import timedelta
from pathlib import Path

ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(ROOT))


def _check(result, step):
    if not result.success:
        print(f"ERROR at {step}: {result.error}")
        sys.exit(1)
    return result.value


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    from src.growth_experiments.config import EngineConfig
    from src.growth_experiments.engine import ExperimentEngine
    from src.growth_experiments.schema import ExperimentDefinition, utcnow
    from src.growth_experiments.simulate import run_simulation

    data_dir = ROOT / "data" / "experiments" / "demo"
    shutil.rmtree(data_dir, ignore_errors=True)
    data_dir.mkdir(parents=True, exist_ok=True)

    engine = ExperimentEngine(config=EngineConfig(
        database_url=f"sqlite:///{data_dir / 'growth.db'}",
        data_dir=str(data_dir),
    ))

    now = utcnow()
    print("1. Creating pricing experiment...")
    experiment = _check(engine.create(ExperimentDefinition(
        name="Pricing multiplier 1.2",
        hypothesis="A 20% price increase raises revenue per booking without hurting conversion",
        category="pricing",
        variant_a={"multiplier": 1.0},
        variant_b={"multiplier": 1.2},
        metric="revenue_cents",
        start_at=now - timedelta(days=1),
        end_at=now + timedelta(days=30),
    )), "create")

    print("2. Starting...")
    _check(engine.start(experiment.id), "start")

    print("3. Simulating 1000 subjects...")
    sim = run_simulation(
        engine.store,
        engine.metric_source,
        experiment.id,
        n_subjects=1000,
        means={"A": 500.0, "B": 620.0},
    )
    print(f"   Assigned: A={sim['n_a']}, B={sim['n_b']}")

    summary = _check(engine.get_results_summary(experiment.id), "results")
    print(
        f"4. Results: A mean={summary.variant_a.primary_mean}, "
        f"B mean={summary.variant_b.primary_mean}, winner={summary.winner}"
    )

    _check(engine.stop(experiment.id), "stop")
    _check(engine.declare_winner(experiment.id, summary.winner), "declare_winner")
    promoted = _check(engine.promote(experiment.id, summary.winner, mark_promoted=True), "promote")
    live = _check(engine.get_live_config("pricing"), "live config")

    print(f"5. Promoted {promoted.variant.value} at {promoted.experiment.promoted_at}")
    print(f"   Live pricing config: {live.payload}")
    print(f"\n[OK] Demo complete. Data in {data_dir}")


if __name__ == "__main__":
    main()
