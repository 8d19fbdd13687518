"""
Metric source adapters for outcome events.

Outcome events (bookings, ratings, completions) are written by the rest of
the product and read by the engine. The engine only depends on
MetricSource.fetch_outcomes; CsvOutcomeStore keeps events in a CSV file
under data/experiments/, InMemoryMetricSource keeps them in a DataFrame.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, List, Optional

import pandas as pd

from .config import DEFAULT_DATA_DIR
from .exceptions import DataSourceError
from .schema import AnalysisWindow, OutcomeEvent, to_naive_utc

logger = logging.getLogger(__name__)

OUTCOME_COLUMNS = ["subject_id", "metric", "value", "observed_at", "metadata"]


def _ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def _outcome_to_row(evt: OutcomeEvent) -> dict:
    return {
        "subject_id": str(evt.subject_id),
        "metric": evt.metric,
        "value": float(evt.value),
        "observed_at": to_naive_utc(evt.observed_at),
        "metadata": str(evt.metadata) if evt.metadata else "",
    }


def _filter_outcomes(
    df: pd.DataFrame,
    subject_ids: Optional[Iterable[str]],
    metric: Optional[str],
    window: Optional[AnalysisWindow],
) -> pd.DataFrame:
    if df.empty:
        return pd.DataFrame(columns=OUTCOME_COLUMNS)
    if metric:
        df = df[df["metric"] == metric]
    if subject_ids is not None:
        df = df[df["subject_id"].isin({str(s) for s in subject_ids})]
    if window is not None and not df.empty:
        # offsets from external writers are folded into naive UTC like the window
        observed = pd.to_datetime(df["observed_at"], format="ISO8601", utc=True).dt.tz_localize(None)
        mask = pd.Series(True, index=df.index)
        if window.start is not None:
            mask &= observed >= pd.Timestamp(to_naive_utc(window.start))
        if window.end is not None:
            mask &= observed <= pd.Timestamp(to_naive_utc(window.end))
        df = df[mask]
    return df


class MetricSource(ABC):
    """Read interface the engine consumes. Absence of data is not zero."""

    @abstractmethod
    def fetch_outcomes(
        self,
        subject_ids: List[str],
        metric: str,
        window: Optional[AnalysisWindow] = None,
    ) -> pd.DataFrame:
        """
        Fetch outcome events for the given subjects.

        Returns:
            DataFrame with columns subject_id, value (one row per event).
            Subjects without data simply have no rows.

        Raises:
            DataSourceError: the underlying source failed
        """


class InMemoryMetricSource(MetricSource):
    """DataFrame-backed metric source, for tests and simulations."""

    def __init__(self, events: Optional[List[OutcomeEvent]] = None) -> None:
        self._df = pd.DataFrame(columns=OUTCOME_COLUMNS)
        if events:
            self.append_outcomes(events)

    def append_outcomes(self, events: List[OutcomeEvent]) -> int:
        if not events:
            return 0
        df_new = pd.DataFrame([_outcome_to_row(e) for e in events])
        self._df = df_new if self._df.empty else pd.concat([self._df, df_new], ignore_index=True)
        return len(events)

    def read_outcomes(self, metric: Optional[str] = None, window: Optional[AnalysisWindow] = None) -> pd.DataFrame:
        return _filter_outcomes(self._df, None, metric, window).reset_index(drop=True)

    def fetch_outcomes(self, subject_ids, metric, window=None) -> pd.DataFrame:
        df = _filter_outcomes(self._df, subject_ids, metric, window)
        return df[["subject_id", "value"]].reset_index(drop=True)


class CsvOutcomeStore(MetricSource):
    """
    File-backed outcome store.

    Writes data/experiments/outcomes.csv. Appends concatenate onto the
    existing table, reads filter by subject, metric and time window.
    """

    def __init__(self, base_dir: str = DEFAULT_DATA_DIR, filename: str = "outcomes.csv") -> None:
        self.path = Path(base_dir) / filename

    def _read_table(self) -> pd.DataFrame:
        if not self.path.exists():
            return pd.DataFrame(columns=OUTCOME_COLUMNS)
        try:
            return pd.read_csv(self.path, dtype={"subject_id": str, "metric": str})
        except (OSError, ValueError, pd.errors.ParserError) as e:
            raise DataSourceError(f"Failed to read outcomes from {self.path}: {e}") from e

    def append_outcomes(self, events: List[OutcomeEvent]) -> int:
        """
        Append outcome events to the store.

        Args:
            events: List of OutcomeEvent

        Returns:
            Number of events appended
        """
        if not events:
            return 0
        _ensure_dir(self.path.parent)

        df_new = pd.DataFrame([_outcome_to_row(e) for e in events])

        if self.path.exists():
            df_existing = self._read_table()
            df = pd.concat([df_existing, df_new], ignore_index=True)
        else:
            df = df_new

        df.to_csv(self.path, index=False)
        logger.info(f"Appended {len(events)} outcomes to {self.path}")
        return len(events)

    def read_outcomes(self, metric: Optional[str] = None, window: Optional[AnalysisWindow] = None) -> pd.DataFrame:
        """Read outcome events, optionally filtered by metric and time window."""
        return _filter_outcomes(self._read_table(), None, metric, window).reset_index(drop=True)

    def fetch_outcomes(self, subject_ids, metric, window=None) -> pd.DataFrame:
        df = _filter_outcomes(self._read_table(), subject_ids, metric, window)
        return df[["subject_id", "value"]].reset_index(drop=True)
