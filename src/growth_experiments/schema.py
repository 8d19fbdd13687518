"""
Experiment data models for the growth experimentation engine.

Dataclass schemas for experiment definitions, assignments, outcome events,
harm thresholds, results summaries and operation results.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .exceptions import ValidationError


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored by the experiment store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class Variant(str, Enum):
    """Experiment arm."""
    A = "A"
    B = "B"

    @property
    def other(self) -> "Variant":
        return Variant.B if self is Variant.A else Variant.A


class ExperimentStatus(str, Enum):
    """Lifecycle state."""
    DRAFT = "DRAFT"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    COMPLETE = "COMPLETE"


TERMINAL_STATUSES = (ExperimentStatus.STOPPED, ExperimentStatus.COMPLETE)


class MetricType(str, Enum):
    """Metric type for aggregation."""
    BINARY = "binary"  # e.g., conversion, completion
    CONTINUOUS = "continuous"  # e.g., revenue, rating
    COUNT = "count"  # e.g., complaints, cancellations


class HarmDirection(str, Enum):
    """Which movement of the metric counts as harm."""
    DECREASE = "decrease"
    INCREASE = "increase"


class HarmMode(str, Enum):
    """What the observed mean is compared against."""
    RELATIVE = "relative"  # the other variant
    BASELINE = "baseline"  # a pre-experiment value
    ABSOLUTE = "absolute"  # a fixed floor / ceiling


@dataclass
class MetricDefinition:
    """Definition of an outcome metric the engine can aggregate."""
    name: str
    metric_type: MetricType
    per_subject: str = "mean"  # reduction of one subject's events: mean, sum, max
    higher_is_better: bool = True
    description: str = ""


METRICS: Dict[str, MetricDefinition] = {
    m.name: m
    for m in [
        MetricDefinition("conversion", MetricType.BINARY, "max",
                         description="Subject converted (booked) at least once"),
        MetricDefinition("conversion_rate", MetricType.BINARY, "mean"),
        MetricDefinition("revenue_cents", MetricType.CONTINUOUS, "sum",
                         description="Booking revenue attributed to the subject"),
        MetricDefinition("revenue_per_booking", MetricType.CONTINUOUS, "mean"),
        MetricDefinition("margin", MetricType.CONTINUOUS, "sum"),
        MetricDefinition("margin_pct", MetricType.CONTINUOUS, "mean"),
        MetricDefinition("sla_quality", MetricType.CONTINUOUS, "mean"),
        MetricDefinition("rating", MetricType.CONTINUOUS, "mean",
                         description="Post-event rating"),
        MetricDefinition("completion", MetricType.BINARY, "max",
                         description="Booking completed"),
        MetricDefinition("complaints", MetricType.COUNT, "sum", higher_is_better=False),
        MetricDefinition("cancellations", MetricType.COUNT, "sum", higher_is_better=False),
    ]
}

EXPERIMENT_CATEGORIES = ("pricing", "messaging", "ops", "incentives", "booking_flow")


def get_metric(name: str) -> MetricDefinition:
    """Look up a supported metric, raising ValidationError for unknown keys."""
    try:
        return METRICS[name]
    except KeyError:
        raise ValidationError(
            f"Unsupported metric '{name}'. Supported: {', '.join(sorted(METRICS))}"
        ) from None


def parse_variant(value: Any) -> Variant:
    try:
        return Variant(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Variant must be 'A' or 'B', got {value!r}") from None


@dataclass
class HarmThreshold:
    """
    Guardrail rule that forces an automatic stop when breached.

    relative: a variant's mean moved more than `magnitude` (fraction) against
              the other variant in the harmful direction.
    baseline: same, measured against `baseline`.
    absolute: a variant's mean crossed `magnitude` itself (floor for
              DECREASE, ceiling for INCREASE).
    """
    metric: str
    direction: HarmDirection = HarmDirection.DECREASE
    magnitude: float = 0.1
    mode: HarmMode = HarmMode.RELATIVE
    baseline: Optional[float] = None
    min_samples: int = 0

    def validate(self) -> None:
        get_metric(self.metric)
        if self.magnitude < 0:
            raise ValidationError("Harm threshold magnitude must be non-negative")
        if self.min_samples < 0:
            raise ValidationError("Harm threshold min_samples must be non-negative")
        if self.mode == HarmMode.BASELINE and self.baseline is None:
            raise ValidationError("Harm threshold mode 'baseline' requires a baseline value")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HarmThreshold":
        """
        Build from a JSON-like dict.

        Accepts the legacy form {"metric": ..., "minValue": ...}, which means
        "stop if either variant's mean drops below minValue".
        """
        if not isinstance(data, dict) or not data.get("metric"):
            raise ValidationError("Harm threshold requires a metric")
        try:
            if "minValue" in data and "magnitude" not in data:
                threshold = cls(
                    metric=str(data["metric"]).strip(),
                    direction=HarmDirection.DECREASE,
                    magnitude=float(data["minValue"]),
                    mode=HarmMode.ABSOLUTE,
                )
            else:
                threshold = cls(
                    metric=str(data["metric"]).strip(),
                    direction=HarmDirection(data.get("direction", HarmDirection.DECREASE.value)),
                    magnitude=float(data.get("magnitude", 0.1)),
                    mode=HarmMode(data.get("mode", HarmMode.RELATIVE.value)),
                    baseline=float(data["baseline"]) if data.get("baseline") is not None else None,
                    min_samples=int(data.get("min_samples", 0)),
                )
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Malformed harm threshold: {e}") from None
        threshold.validate()
        return threshold

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric": self.metric,
            "direction": self.direction.value,
            "magnitude": self.magnitude,
            "mode": self.mode.value,
            "baseline": self.baseline,
            "min_samples": self.min_samples,
        }


@dataclass
class ExperimentDefinition:
    """Caller-supplied definition used to create (or edit) an experiment."""
    name: str
    variant_a: Any
    variant_b: Any
    metric: str
    start_at: datetime
    end_at: datetime
    hypothesis: Optional[str] = None
    category: Optional[str] = None
    secondary_metric: Optional[str] = None
    harm_threshold: Optional[HarmThreshold] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExperimentDefinition":
        """Build from a JSON payload (ISO timestamps, camelCase or snake_case keys)."""
        def pick(*keys, default=None):
            for k in keys:
                if k in data:
                    return data[k]
            return default

        harm = pick("harm_threshold", "harmThreshold")
        try:
            return cls(
                name=pick("name", default=""),
                variant_a=pick("variant_a", "variantA"),
                variant_b=pick("variant_b", "variantB"),
                metric=pick("metric", default=""),
                start_at=_parse_datetime(pick("start_at", "startAt")),
                end_at=_parse_datetime(pick("end_at", "endAt")),
                hypothesis=pick("hypothesis"),
                category=pick("category"),
                secondary_metric=pick("secondary_metric", "secondaryMetric"),
                harm_threshold=HarmThreshold.from_dict(harm) if harm else None,
            )
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Malformed experiment definition: {e}") from None

    def normalized(self) -> "ExperimentDefinition":
        """Return a trimmed, validated copy."""
        name = _clean_text(self.name, "name")
        if not name:
            raise ValidationError("Experiment name is required")
        if self.variant_a is None or self.variant_b is None:
            raise ValidationError("Both variant_a and variant_b payloads are required")
        metric = _clean_text(self.metric, "metric")
        get_metric(metric)
        secondary = _clean_text(self.secondary_metric, "secondary_metric") or None
        if secondary is not None:
            get_metric(secondary)
        if not isinstance(self.start_at, datetime) or not isinstance(self.end_at, datetime):
            raise ValidationError("start_at and end_at must be datetimes")
        start_at = to_naive_utc(self.start_at)
        end_at = to_naive_utc(self.end_at)
        if start_at >= end_at:
            raise ValidationError("start_at must be before end_at")
        if self.harm_threshold is not None:
            self.harm_threshold.validate()
        return ExperimentDefinition(
            name=name,
            variant_a=self.variant_a,
            variant_b=self.variant_b,
            metric=metric,
            start_at=start_at,
            end_at=end_at,
            hypothesis=_clean_text(self.hypothesis, "hypothesis") or None,
            category=normalize_category(self.category),
            secondary_metric=secondary,
            harm_threshold=self.harm_threshold,
        )


def normalize_category(category: Optional[str]) -> Optional[str]:
    if category is None:
        return None
    return _clean_text(category, "category") or None


def _clean_text(value: Any, field_name: str) -> str:
    """Stripped string, "" for None. Non-string input is a ValidationError."""
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string, got {type(value).__name__}")
    return value.strip()


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    raise ValueError(f"expected datetime or ISO string, got {value!r}")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Experiment:
    """An experiment as held by the experiment store."""
    id: str
    name: str
    variant_a: Any
    variant_b: Any
    metric: str
    start_at: datetime
    end_at: datetime
    status: ExperimentStatus = ExperimentStatus.DRAFT
    hypothesis: Optional[str] = None
    category: Optional[str] = None
    secondary_metric: Optional[str] = None
    harm_threshold: Optional[HarmThreshold] = None
    winner_variant: Optional[Variant] = None
    promoted_variant: Optional[Variant] = None
    promoted_at: Optional[datetime] = None
    stop_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def payload_for(self, variant: Variant) -> Any:
        return self.variant_a if variant == Variant.A else self.variant_b

    @property
    def surface(self) -> str:
        """Live-config key this experiment publishes to."""
        return self.category or f"experiment:{self.id}"

    def is_active(self, at: Optional[datetime] = None) -> bool:
        """RUNNING and inside its start/end window."""
        at = at or utcnow()
        return self.status == ExperimentStatus.RUNNING and self.start_at <= at <= self.end_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "id": self.id,
            "name": self.name,
            "hypothesis": self.hypothesis,
            "category": self.category,
            "variant_a": self.variant_a,
            "variant_b": self.variant_b,
            "metric": self.metric,
            "secondary_metric": self.secondary_metric,
            "harm_threshold": self.harm_threshold.to_dict() if self.harm_threshold else None,
            "start_at": _iso(self.start_at),
            "end_at": _iso(self.end_at),
            "status": self.status.value,
            "winner_variant": self.winner_variant.value if self.winner_variant else None,
            "promoted_variant": self.promoted_variant.value if self.promoted_variant else None,
            "promoted_at": _iso(self.promoted_at),
            "stop_reason": self.stop_reason,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass
class ExperimentFilter:
    """Filter for listing experiments."""
    status: Optional[ExperimentStatus] = None
    category: Optional[str] = None


@dataclass
class Assignment:
    """Experiment assignment for a single subject."""
    experiment_id: str
    subject_id: str  # e.g., booking id, session id, user id
    variant: Variant
    assigned_at: datetime = field(default_factory=utcnow)


@dataclass
class OutcomeEvent:
    """Raw outcome event attributable to a subject."""
    subject_id: str
    metric: str
    value: float
    observed_at: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AnalysisWindow:
    """Time window outcome events must fall into (inclusive, open-ended if None)."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None


@dataclass
class VariantSummary:
    """Aggregates for one variant."""
    variant: Variant
    assignment_count: int = 0
    count: int = 0
    primary_mean: Optional[float] = None
    secondary_mean: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant": self.variant.value,
            "assignment_count": self.assignment_count,
            "count": self.count,
            "primary_mean": self.primary_mean,
            "secondary_mean": self.secondary_mean,
        }


@dataclass
class ResultsSummary:
    """Computed results for an experiment. Never the source of truth."""
    experiment_id: str
    primary_metric: str
    variant_a: VariantSummary
    variant_b: VariantSummary
    winner: str = "tie"  # A, B or tie
    secondary_metric: Optional[str] = None
    computed_at: datetime = field(default_factory=utcnow)

    # SRM
    srm_passed: bool = True
    srm_p_value: Optional[float] = None

    def for_variant(self, variant: Variant) -> VariantSummary:
        return self.variant_a if variant == Variant.A else self.variant_b

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "experiment_id": self.experiment_id,
            "primary_metric": self.primary_metric,
            "secondary_metric": self.secondary_metric,
            "variant_a": self.variant_a.to_dict(),
            "variant_b": self.variant_b.to_dict(),
            "winner": self.winner,
            "computed_at": _iso(self.computed_at),
            "srm_passed": self.srm_passed,
            "srm_p_value": self.srm_p_value,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ResultsSummary":
        def arm(v: Dict[str, Any]) -> VariantSummary:
            return VariantSummary(
                variant=Variant(v["variant"]),
                assignment_count=v["assignment_count"],
                count=v["count"],
                primary_mean=v["primary_mean"],
                secondary_mean=v["secondary_mean"],
            )

        return cls(
            experiment_id=d["experiment_id"],
            primary_metric=d["primary_metric"],
            secondary_metric=d.get("secondary_metric"),
            variant_a=arm(d["variant_a"]),
            variant_b=arm(d["variant_b"]),
            winner=d["winner"],
            computed_at=_parse_datetime(d["computed_at"]),
            srm_passed=d.get("srm_passed", True),
            srm_p_value=d.get("srm_p_value"),
        )


@dataclass
class TransitionResult:
    """Outcome of a lifecycle transition. changed=False reports a no-op."""
    experiment: Experiment
    changed: bool = True
    previous_status: Optional[ExperimentStatus] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment": self.experiment.to_dict(),
            "changed": self.changed,
            "previous_status": self.previous_status.value if self.previous_status else None,
        }


@dataclass
class PromotionResult:
    """Outcome of a promotion."""
    experiment: Experiment
    variant: Variant
    published: bool = True
    noop: bool = False
    override: bool = False
    payload: Any = None
    notes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment": self.experiment.to_dict(),
            "variant": self.variant.value,
            "published": self.published,
            "noop": self.noop,
            "override": self.override,
            "payload": self.payload,
            "notes": self.notes,
        }


@dataclass
class HarmCheckResult:
    """Outcome of a harm evaluation for one experiment."""
    experiment_id: str
    stopped: bool = False
    reason: Optional[str] = None
    variant: Optional[Variant] = None
    observed: Dict[str, Optional[float]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment_id": self.experiment_id,
            "stopped": self.stopped,
            "reason": self.reason,
            "variant": self.variant.value if self.variant else None,
            "observed": self.observed,
        }


@dataclass
class LiveConfig:
    """Payload currently live for a product surface."""
    surface: str
    experiment_id: str
    variant: Variant
    payload: Any
    published_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "surface": self.surface,
            "experiment_id": self.experiment_id,
            "variant": self.variant.value,
            "payload": self.payload,
            "published_at": _iso(self.published_at),
        }


@dataclass
class AuditEvent:
    """Append-only audit trail entry."""
    experiment_id: str
    action: str
    detail: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment_id": self.experiment_id,
            "action": self.action,
            "detail": self.detail,
            "created_at": _iso(self.created_at),
        }


@dataclass
class OperationResult:
    """Structured success / error result returned by the engine facade."""
    success: bool
    value: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        value = self.value
        if hasattr(value, "to_dict"):
            value = value.to_dict()
        elif isinstance(value, list):
            value = [v.to_dict() if hasattr(v, "to_dict") else v for v in value]
        return {
            "success": self.success,
            "value": value,
            "error": self.error,
            "error_kind": self.error_kind,
        }
