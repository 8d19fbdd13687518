"""
Growth Experiments DAG - nightly sweep.

Completes experiments past their end date, runs the harm monitor and
refreshes cached results summaries for every RUNNING experiment.
"""

from datetime import datetime, timedelta
from pathlib import Path

from airflow import DAG
from airflow.operators.python import PythonOperator

# Project root - adjust if DAG runs from different location
PROJECT_ROOT = Path(__file__).parent.parent


def _run_sweep(**kwargs):
    """Run the scheduled sweep and push the report to XCom."""
    import sys
    sys.path.insert(0, str(PROJECT_ROOT))

    from src.growth_experiments.config import EngineConfig
    from src.growth_experiments.engine import ExperimentEngine

    data_dir = str(PROJECT_ROOT / "data" / "experiments")
    engine = ExperimentEngine(config=EngineConfig.from_env(data_dir=data_dir))
    result = engine.run_scheduled_sweep()
    if not result.success:
        raise RuntimeError(f"Sweep failed: {result.error}")
    return result.value.to_dict()


def _log_snapshot(**kwargs):
    ti = kwargs.get("ti")
    report = ti.xcom_pull(task_ids="run_sweep") or {}
    print(
        f"Sweep report: completed={len(report.get('completed', []))}, "
        f"harm_stopped={report.get('harm_stopped', [])}, "
        f"refreshed={len(report.get('refreshed', []))}, failed={report.get('failed', {})}"
    )
    return report


default_args = {
    "owner": "growth",
    "depends_on_past": False,
    "start_date": datetime(2025, 1, 1),
    "email_on_failure": False,
    "retries": 2,
    "retry_delay": timedelta(minutes=10),
}

dag = DAG(
    "growth_experiments_nightly",
    default_args=default_args,
    description="Nightly experiment sweep: auto-complete, harm monitor, results refresh",
    schedule="0 3 * * *",  # 3 AM daily
    max_active_runs=1,
    catchup=False,
    tags=["experiment", "growth", "guardrail"],
)

sweep_task = PythonOperator(
    task_id="run_sweep",
    python_callable=_run_sweep,
    dag=dag,
)

report_task = PythonOperator(
    task_id="log_sweep_report",
    python_callable=_log_snapshot,
    dag=dag,
)

sweep_task >> report_task
