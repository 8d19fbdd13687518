"""
Engine configuration.

Module-level defaults plus an EngineConfig that can be overridden from
keyword arguments or GROWTH_* environment variables.
"""

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_DATA_DIR = "data/experiments"
DEFAULT_DATABASE_URL = f"sqlite:///{DEFAULT_DATA_DIR}/growth.db"
DEFAULT_TIE_TOLERANCE = 1e-9
DEFAULT_PAGE_SIZE = 5000
DEFAULT_TREATMENT_ALLOCATION = 0.5
DEFAULT_SRM_ALPHA = 0.01


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EngineConfig:
    """Configuration for the experiment engine."""
    database_url: str = DEFAULT_DATABASE_URL
    data_dir: str = DEFAULT_DATA_DIR
    tie_tolerance: float = DEFAULT_TIE_TOLERANCE
    page_size: int = DEFAULT_PAGE_SIZE
    time_budget_seconds: Optional[float] = None
    check_category_on_create: bool = True
    srm_alpha: float = DEFAULT_SRM_ALPHA
    echo_sql: bool = False

    @classmethod
    def from_env(cls, **overrides) -> "EngineConfig":
        """
        Build config from environment variables.

        Recognised: GROWTH_DATABASE_URL, GROWTH_DATA_DIR, GROWTH_TIE_TOLERANCE,
        GROWTH_PAGE_SIZE, GROWTH_TIME_BUDGET_SECONDS,
        GROWTH_CHECK_CATEGORY_ON_CREATE, GROWTH_ECHO_SQL.
        Keyword overrides win over the environment.
        """
        data_dir = os.environ.get("GROWTH_DATA_DIR", DEFAULT_DATA_DIR)
        budget = os.environ.get("GROWTH_TIME_BUDGET_SECONDS")
        values = dict(
            database_url=os.environ.get("GROWTH_DATABASE_URL", f"sqlite:///{data_dir}/growth.db"),
            data_dir=data_dir,
            tie_tolerance=float(os.environ.get("GROWTH_TIE_TOLERANCE", DEFAULT_TIE_TOLERANCE)),
            page_size=int(os.environ.get("GROWTH_PAGE_SIZE", DEFAULT_PAGE_SIZE)),
            time_budget_seconds=float(budget) if budget else None,
            check_category_on_create=_env_bool("GROWTH_CHECK_CATEGORY_ON_CREATE", True),
            echo_sql=_env_bool("GROWTH_ECHO_SQL", False),
        )
        values.update(overrides)
        return cls(**values)
