"""
Experiment store backed by SQLAlchemy.

Single source of truth for experiment definitions, lifecycle state,
assignments, live configuration and the audit trail. Every state change is
a conditional UPDATE on the current status inside one transaction, and the
two uniqueness invariants live in the schema:

- one RUNNING experiment per category: partial unique index
- one assignment per (experiment, subject): unique constraint
"""

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Generator, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import DEFAULT_DATABASE_URL
from .exceptions import CategoryConflictError, NotFoundError
from .schema import (
    Assignment,
    AuditEvent,
    Experiment,
    ExperimentDefinition,
    ExperimentFilter,
    ExperimentStatus,
    HarmThreshold,
    LiveConfig,
    TERMINAL_STATUSES,
    Variant,
    utcnow,
)

logger = logging.getLogger(__name__)

RUNNING_CATEGORY_INDEX = "uq_experiments_running_category"

# bulk UPDATEs never touch objects already loaded in the session
_NO_SYNC = {"synchronize_session": False}


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class ExperimentRecord(Base):
    __tablename__ = "experiments"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    hypothesis: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    variant_a: Mapped[Any] = mapped_column(JSON, nullable=True)
    variant_b: Mapped[Any] = mapped_column(JSON, nullable=True)
    metric: Mapped[str] = mapped_column(String(64), nullable=False)
    secondary_metric: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    harm_threshold: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    start_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ExperimentStatus.DRAFT.value)
    winner_variant: Mapped[Optional[str]] = mapped_column(String(1), nullable=True)
    promoted_variant: Mapped[Optional[str]] = mapped_column(String(1), nullable=True)
    promoted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    stop_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index(
            RUNNING_CATEGORY_INDEX,
            "category",
            unique=True,
            sqlite_where=text("status = 'RUNNING'"),
            postgresql_where=text("status = 'RUNNING'"),
        ),
        Index("ix_experiments_status", "status"),
    )


class AssignmentRecord(Base):
    __tablename__ = "experiment_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    experiment_id: Mapped[str] = mapped_column(ForeignKey("experiments.id"), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(128), nullable=False)
    variant: Mapped[str] = mapped_column(String(1), nullable=False)
    assigned_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("experiment_id", "subject_id", name="uq_assignment_subject"),
    )


class AuditRecord(Base):
    __tablename__ = "experiment_audit"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    experiment_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    detail: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class LiveConfigRecord(Base):
    __tablename__ = "live_config"

    surface: Mapped[str] = mapped_column(String(128), primary_key=True)
    experiment_id: Mapped[str] = mapped_column(String(32), nullable=False)
    variant: Mapped[str] = mapped_column(String(1), nullable=False)
    payload: Mapped[Any] = mapped_column(JSON, nullable=True)
    published_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class ResultsSnapshotRecord(Base):
    __tablename__ = "results_snapshots"

    experiment_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    computed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)


def _to_experiment(r: ExperimentRecord) -> Experiment:
    return Experiment(
        id=r.id,
        name=r.name,
        hypothesis=r.hypothesis,
        category=r.category,
        variant_a=r.variant_a,
        variant_b=r.variant_b,
        metric=r.metric,
        secondary_metric=r.secondary_metric,
        harm_threshold=HarmThreshold.from_dict(r.harm_threshold) if r.harm_threshold else None,
        start_at=r.start_at,
        end_at=r.end_at,
        status=ExperimentStatus(r.status),
        winner_variant=Variant(r.winner_variant) if r.winner_variant else None,
        promoted_variant=Variant(r.promoted_variant) if r.promoted_variant else None,
        promoted_at=r.promoted_at,
        stop_reason=r.stop_reason,
        created_at=r.created_at,
        updated_at=r.updated_at,
    )


def _audit_record(evt: AuditEvent) -> AuditRecord:
    return AuditRecord(
        experiment_id=evt.experiment_id,
        action=evt.action,
        detail=evt.detail or None,
        created_at=evt.created_at,
    )


def _create_engine(database_url: str, echo: bool = False) -> Engine:
    url = make_url(database_url)
    kwargs: Dict[str, Any] = {"echo": echo, "future": True}
    if url.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False}
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        else:
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(database_url, **kwargs)

    if url.get_backend_name() == "sqlite":
        @event.listens_for(engine, "connect")
        def on_connect(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


class ExperimentStore:
    """Durable store for experiments and everything hanging off them."""

    def __init__(
        self,
        database_url: str = DEFAULT_DATABASE_URL,
        echo: bool = False,
        engine: Optional[Engine] = None,
    ) -> None:
        self.engine = engine or _create_engine(database_url, echo=echo)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Transactional session: commit on success, rollback on error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Experiments
    # ------------------------------------------------------------------

    def insert_experiment(self, definition: ExperimentDefinition) -> Experiment:
        """Persist a validated definition as a DRAFT experiment."""
        now = utcnow()
        record = ExperimentRecord(
            id=uuid.uuid4().hex,
            name=definition.name,
            hypothesis=definition.hypothesis,
            category=definition.category,
            variant_a=definition.variant_a,
            variant_b=definition.variant_b,
            metric=definition.metric,
            secondary_metric=definition.secondary_metric,
            harm_threshold=definition.harm_threshold.to_dict() if definition.harm_threshold else None,
            start_at=definition.start_at,
            end_at=definition.end_at,
            status=ExperimentStatus.DRAFT.value,
            created_at=now,
            updated_at=now,
        )
        with self.session() as s:
            s.add(record)
            s.add(_audit_record(AuditEvent(record.id, "created", {"name": record.name})))
            s.flush()
            return _to_experiment(record)

    def get_experiment(self, experiment_id: str) -> Experiment:
        with self.session() as s:
            record = s.get(ExperimentRecord, experiment_id)
            if record is None:
                raise NotFoundError(f"Experiment {experiment_id} not found")
            return _to_experiment(record)

    def list_experiments(self, flt: Optional[ExperimentFilter] = None) -> List[Experiment]:
        stmt = select(ExperimentRecord)
        if flt is not None:
            if flt.status is not None:
                stmt = stmt.where(ExperimentRecord.status == flt.status.value)
            if flt.category:
                stmt = stmt.where(ExperimentRecord.category == flt.category.strip())
        stmt = stmt.order_by(ExperimentRecord.status.asc(), ExperimentRecord.start_at.desc())
        with self.session() as s:
            return [_to_experiment(r) for r in s.scalars(stmt)]

    def running_in_category(self, category: str, exclude_id: Optional[str] = None) -> Optional[Experiment]:
        stmt = select(ExperimentRecord).where(
            ExperimentRecord.category == category,
            ExperimentRecord.status == ExperimentStatus.RUNNING.value,
        )
        if exclude_id:
            stmt = stmt.where(ExperimentRecord.id != exclude_id)
        with self.session() as s:
            record = s.scalars(stmt.limit(1)).first()
            return _to_experiment(record) if record else None

    def update_draft(self, experiment_id: str, definition: ExperimentDefinition) -> bool:
        """Overwrite definition fields if the experiment is still DRAFT."""
        stmt = (
            update(ExperimentRecord)
            .where(
                ExperimentRecord.id == experiment_id,
                ExperimentRecord.status == ExperimentStatus.DRAFT.value,
            )
            .values(
                name=definition.name,
                hypothesis=definition.hypothesis,
                category=definition.category,
                variant_a=definition.variant_a,
                variant_b=definition.variant_b,
                metric=definition.metric,
                secondary_metric=definition.secondary_metric,
                harm_threshold=definition.harm_threshold.to_dict() if definition.harm_threshold else None,
                start_at=definition.start_at,
                end_at=definition.end_at,
                updated_at=utcnow(),
            )
        )
        with self.session() as s:
            changed = s.execute(stmt, execution_options=_NO_SYNC).rowcount == 1
            if changed:
                s.add(_audit_record(AuditEvent(experiment_id, "updated")))
            return changed

    def transition(
        self,
        experiment_id: str,
        expected: Sequence[ExperimentStatus],
        new_status: ExperimentStatus,
        audit: AuditEvent,
        stop_reason: Optional[str] = None,
        extra_audit: Sequence[AuditEvent] = (),
    ) -> bool:
        """
        Compare-and-swap the status.

        Returns False when the current status is not in `expected`, i.e.
        another writer got there first. Raises CategoryConflictError when the
        running-category index rejects the write.
        """
        values: Dict[str, Any] = {"status": new_status.value, "updated_at": utcnow()}
        if stop_reason is not None:
            values["stop_reason"] = stop_reason
        stmt = (
            update(ExperimentRecord)
            .where(
                ExperimentRecord.id == experiment_id,
                ExperimentRecord.status.in_([st.value for st in expected]),
            )
            .values(**values)
        )
        try:
            with self.session() as s:
                changed = s.execute(stmt, execution_options=_NO_SYNC).rowcount == 1
                if changed:
                    for evt in (*extra_audit, audit):
                        s.add(_audit_record(evt))
                return changed
        except IntegrityError:
            # only the running-category index can reject a status update
            if new_status == ExperimentStatus.RUNNING:
                raise CategoryConflictError(
                    f"Another experiment is already RUNNING in the category of {experiment_id}"
                ) from None
            raise

    def set_winner(self, experiment_id: str, variant: Variant, override: bool, audit: AuditEvent) -> bool:
        conditions = [
            ExperimentRecord.id == experiment_id,
            ExperimentRecord.status.in_([st.value for st in TERMINAL_STATUSES]),
        ]
        if not override:
            conditions.append(ExperimentRecord.winner_variant.is_(None))
        stmt = (
            update(ExperimentRecord)
            .where(*conditions)
            .values(winner_variant=variant.value, updated_at=utcnow())
        )
        with self.session() as s:
            changed = s.execute(stmt, execution_options=_NO_SYNC).rowcount == 1
            if changed:
                s.add(_audit_record(audit))
            return changed

    def record_promotion(
        self,
        experiment: Experiment,
        variant: Variant,
        mark_promoted: bool,
        audit: Iterable[AuditEvent],
    ) -> Optional[Tuple[Experiment, LiveConfig]]:
        """
        Atomically mark the experiment promoted and publish the payload.

        The update is conditioned on the promoted_variant the caller observed,
        so a concurrent promotion makes this return None instead of writing.
        """
        now = utcnow()
        conditions = [
            ExperimentRecord.id == experiment.id,
            ExperimentRecord.status.in_([st.value for st in TERMINAL_STATUSES]),
        ]
        if experiment.promoted_variant is None:
            conditions.append(ExperimentRecord.promoted_variant.is_(None))
        else:
            conditions.append(ExperimentRecord.promoted_variant == experiment.promoted_variant.value)
        values: Dict[str, Any] = {
            "promoted_variant": variant.value,
            "winner_variant": func.coalesce(ExperimentRecord.winner_variant, variant.value),
            "updated_at": now,
        }
        if mark_promoted:
            values["promoted_at"] = now
        payload = experiment.payload_for(variant)

        with self.session() as s:
            if s.execute(
                update(ExperimentRecord).where(*conditions).values(**values),
                execution_options=_NO_SYNC,
            ).rowcount != 1:
                return None
            live = s.get(LiveConfigRecord, experiment.surface)
            if live is None:
                live = LiveConfigRecord(surface=experiment.surface)
                s.add(live)
            live.experiment_id = experiment.id
            live.variant = variant.value
            live.payload = payload
            live.published_at = now
            for evt in audit:
                s.add(_audit_record(evt))
            s.flush()
            record = s.get(ExperimentRecord, experiment.id)
            s.refresh(record)
            return _to_experiment(record), LiveConfig(
                surface=live.surface,
                experiment_id=live.experiment_id,
                variant=Variant(live.variant),
                payload=live.payload,
                published_at=live.published_at,
            )

    def mark_promoted(self, experiment_id: str, variant: Variant, audit: AuditEvent) -> Optional[Experiment]:
        """Set promoted_at on an experiment whose variant is already live but unmarked."""
        stmt = (
            update(ExperimentRecord)
            .where(
                ExperimentRecord.id == experiment_id,
                ExperimentRecord.promoted_variant == variant.value,
                ExperimentRecord.promoted_at.is_(None),
            )
            .values(promoted_at=utcnow(), updated_at=utcnow())
        )
        with self.session() as s:
            if s.execute(stmt, execution_options=_NO_SYNC).rowcount != 1:
                return None
            s.add(_audit_record(audit))
            s.flush()
            return _to_experiment(s.get(ExperimentRecord, experiment_id))

    def status_counts(self) -> Dict[str, int]:
        """Running count, completed-with-winner count and total."""
        with self.session() as s:
            rows = s.execute(select(ExperimentRecord.status, ExperimentRecord.winner_variant)).all()
        return {
            "running": sum(1 for st, _ in rows if st == ExperimentStatus.RUNNING.value),
            "completed_with_winner": sum(
                1 for st, w in rows if st == ExperimentStatus.COMPLETE.value and w
            ),
            "total": len(rows),
        }

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    def get_assignment(self, experiment_id: str, subject_id: str) -> Optional[Assignment]:
        stmt = select(AssignmentRecord).where(
            AssignmentRecord.experiment_id == experiment_id,
            AssignmentRecord.subject_id == subject_id,
        )
        with self.session() as s:
            r = s.scalars(stmt).first()
            if r is None:
                return None
            return Assignment(r.experiment_id, r.subject_id, Variant(r.variant), r.assigned_at)

    def insert_assignment(self, assignment: Assignment) -> Assignment:
        """Insert, or return the row a concurrent writer already stored."""
        try:
            with self.session() as s:
                s.add(AssignmentRecord(
                    experiment_id=assignment.experiment_id,
                    subject_id=assignment.subject_id,
                    variant=assignment.variant.value,
                    assigned_at=assignment.assigned_at,
                ))
            return assignment
        except IntegrityError:
            existing = self.get_assignment(assignment.experiment_id, assignment.subject_id)
            if existing is None:
                raise
            return existing

    def assignment_page(
        self,
        experiment_id: str,
        after_subject: Optional[str] = None,
        limit: int = 5000,
    ) -> List[Tuple[str, Variant]]:
        """Keyset-paginated (subject_id, variant) pairs ordered by subject_id."""
        stmt = select(AssignmentRecord.subject_id, AssignmentRecord.variant).where(
            AssignmentRecord.experiment_id == experiment_id
        )
        if after_subject is not None:
            stmt = stmt.where(AssignmentRecord.subject_id > after_subject)
        stmt = stmt.order_by(AssignmentRecord.subject_id.asc()).limit(limit)
        with self.session() as s:
            return [(sid, Variant(v)) for sid, v in s.execute(stmt).all()]

    def assignment_counts(self, experiment_id: str) -> Dict[Variant, int]:
        stmt = (
            select(AssignmentRecord.variant, func.count())
            .where(AssignmentRecord.experiment_id == experiment_id)
            .group_by(AssignmentRecord.variant)
        )
        counts = {Variant.A: 0, Variant.B: 0}
        with self.session() as s:
            for v, n in s.execute(stmt).all():
                counts[Variant(v)] = n
        return counts

    # ------------------------------------------------------------------
    # Audit, live config, snapshots
    # ------------------------------------------------------------------

    def list_audit(self, experiment_id: str) -> List[AuditEvent]:
        stmt = (
            select(AuditRecord)
            .where(AuditRecord.experiment_id == experiment_id)
            .order_by(AuditRecord.id.asc())
        )
        with self.session() as s:
            return [
                AuditEvent(r.experiment_id, r.action, r.detail or {}, r.created_at)
                for r in s.scalars(stmt)
            ]

    def get_live_config(self, surface: str) -> Optional[LiveConfig]:
        with self.session() as s:
            r = s.get(LiveConfigRecord, surface)
            if r is None:
                return None
            return LiveConfig(r.surface, r.experiment_id, Variant(r.variant), r.payload, r.published_at)

    def save_snapshot(self, experiment_id: str, computed_at: datetime, payload: Dict[str, Any]) -> None:
        with self.session() as s:
            r = s.get(ResultsSnapshotRecord, experiment_id)
            if r is None:
                s.add(ResultsSnapshotRecord(experiment_id=experiment_id, computed_at=computed_at, payload=payload))
            else:
                r.computed_at = computed_at
                r.payload = payload

    def get_snapshot(self, experiment_id: str) -> Optional[Dict[str, Any]]:
        with self.session() as s:
            r = s.get(ResultsSnapshotRecord, experiment_id)
            return dict(r.payload) if r else None
