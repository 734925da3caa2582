# Database Module - SQLAlchemy Core (Procedural, No ORM Classes)
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    insert,
    select,
    text,
)
from sqlalchemy.pool import StaticPool

from measure_engine import config, logger
from measure_engine.errors import ImmutableRecordError
from measure_engine.measurements import check_against_plan
from measure_engine.models import (
    MeasuredValue,
    MeasurementPlan,
    MeasurementSet,
    ReconciledMeasurementSet,
)

metadata = MetaData()

# Measurement Sets Table - one row per per-view or reconciled record
measurement_sets_table = Table(
    'measurement_sets',
    metadata,
    Column('set_id', String(200), primary_key=True),
    Column('kind', String(20), nullable=False),  # view, reconciled
    Column('user_id', String(100), nullable=False, index=True),
    Column('capture_session_id', String(100), nullable=False, index=True),
    Column('pose_type', String(20), nullable=False),  # front, side, combined
    Column('calibration_ratio', Float, nullable=False),
    Column('is_accurate', Boolean, nullable=False),
    Column('verified_by_user', Boolean, nullable=False, default=False),
    Column('frame_ids', Text, nullable=False, default=''),  # comma separated
    Column('conflicts', Text, nullable=False, default=''),
    Column('missing', Text, nullable=False, default=''),
    Column('source_set_ids', Text, nullable=False, default=''),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
)

# Measurement Values Table - one typed row per measured field
measurement_values_table = Table(
    'measurement_values',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('set_id', String(200), ForeignKey('measurement_sets.set_id'), nullable=False, index=True),
    Column('name', String(100), nullable=False),  # e.g., shoulder_width
    Column('value_cm', Float, nullable=False),
    Column('confidence', Float, nullable=False),
    Column('model', String(20), nullable=False),  # linear, circumference
    Column('flags', Text, nullable=False, default=''),
    Column('sources', Text, nullable=False, default=''),
    Column('joints', Text, nullable=False, default=''),
    Column('provenance', Text, nullable=False, default=''),
    UniqueConstraint('set_id', 'name', name='uq_measurement_value'),
)


def _build_engine(url: str):
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(url, echo=False, connect_args={"check_same_thread": False},
                             poolclass=StaticPool)
    return create_engine(url, echo=False, pool_pre_ping=True)


engine = _build_engine(config.DATABASE_URL)


def configure_engine(url: str):
    """Point the module at another database (tests use in-memory SQLite)"""
    global engine
    engine.dispose()
    engine = _build_engine(url)
    return engine


# Database Initialization Functions

def init_database() -> bool:
    """Create all tables if they don't exist"""
    try:
        metadata.create_all(engine)
        logger.log_db("Tables Ready", {"tables": ", ".join(metadata.tables)})
        return True
    except Exception as e:
        logger.log_error("Database Initialization Failed", e)
        return False


def test_connection() -> bool:
    """Test database connectivity"""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.log_error("Database Connection Failed", e)
        return False


def drop_all_tables():
    metadata.drop_all(engine, checkfirst=True)


# Measurement Records

def _join(items) -> str:
    return ",".join(str(getattr(item, "value", item)) for item in items)


def _split(value: Optional[str]) -> List[str]:
    return [item for item in (value or "").split(",") if item]


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


def save_measurement_set(measurement_set: MeasurementSet, plan: Optional[MeasurementPlan] = None) -> str:
    """
    Insert or replace a measurement record keyed by set id

    Raises:
        ImmutableRecordError: the stored record was already accepted
        PlanMismatch: the record does not fit the given plan
    """
    if plan is not None:
        check_against_plan(measurement_set, plan)

    reconciled = isinstance(measurement_set, ReconciledMeasurementSet)
    provenance = measurement_set.provenance if reconciled else {}

    with engine.begin() as conn:
        existing = conn.execute(
            select(measurement_sets_table.c.verified_by_user).where(
                measurement_sets_table.c.set_id == measurement_set.set_id
            )
        ).fetchone()

        if existing is not None and existing[0]:
            raise ImmutableRecordError(f"Stored set {measurement_set.set_id} was accepted and cannot be replaced")

        if existing is not None:
            conn.execute(delete(measurement_values_table).where(
                measurement_values_table.c.set_id == measurement_set.set_id))
            conn.execute(delete(measurement_sets_table).where(
                measurement_sets_table.c.set_id == measurement_set.set_id))

        conn.execute(insert(measurement_sets_table).values(
            set_id=measurement_set.set_id,
            kind="reconciled" if reconciled else "view",
            user_id=measurement_set.user_id,
            capture_session_id=measurement_set.capture_session_id,
            pose_type=measurement_set.pose_type.value,
            calibration_ratio=measurement_set.calibration_ratio,
            is_accurate=measurement_set.is_accurate,
            verified_by_user=measurement_set.verified_by_user,
            frame_ids=_join(measurement_set.frame_ids),
            conflicts=_join(measurement_set.conflicts) if reconciled else "",
            missing=_join(measurement_set.missing) if reconciled else "",
            source_set_ids=_join(measurement_set.source_set_ids) if reconciled else "",
            created_at=measurement_set.created_at,
            updated_at=measurement_set.updated_at,
        ))

        rows = [
            {
                "set_id": measurement_set.set_id,
                "name": name,
                "value_cm": field.value_cm,
                "confidence": field.confidence,
                "model": field.model.value,
                "flags": _join(field.flags),
                "sources": _join(field.sources),
                "joints": _join(field.joints),
                "provenance": _join(provenance.get(name, [])),
            }
            for name, field in measurement_set.values.items()
        ]
        if rows:
            conn.execute(insert(measurement_values_table), rows)

    logger.log_db("Saved Measurement Set", {
        "set_id": measurement_set.set_id,
        "user_id": measurement_set.user_id,
        "fields": len(measurement_set.values),
        "verified_by_user": measurement_set.verified_by_user
    })
    return measurement_set.set_id


def _row_to_set(conn, row) -> MeasurementSet:
    record = dict(row._mapping)
    value_rows = conn.execute(
        select(measurement_values_table).where(measurement_values_table.c.set_id == record["set_id"])
        .order_by(measurement_values_table.c.id)
    ).fetchall()

    values = {}
    provenance = {}
    for value_row in value_rows:
        item = dict(value_row._mapping)
        values[item["name"]] = MeasuredValue(
            value_cm=item["value_cm"],
            confidence=item["confidence"],
            model=item["model"],
            flags=_split(item["flags"]),
            sources=_split(item["sources"]),
            joints=_split(item["joints"]),
        )
        if item["provenance"]:
            provenance[item["name"]] = _split(item["provenance"])

    fields = dict(
        set_id=record["set_id"],
        user_id=record["user_id"],
        capture_session_id=record["capture_session_id"],
        pose_type=record["pose_type"],
        calibration_ratio=record["calibration_ratio"],
        values=values,
        is_accurate=record["is_accurate"],
        verified_by_user=record["verified_by_user"],
        frame_ids=_split(record["frame_ids"]),
        created_at=_aware(record["created_at"]),
        updated_at=_aware(record["updated_at"]),
    )
    if record["kind"] == "reconciled":
        return ReconciledMeasurementSet(
            provenance=provenance,
            conflicts=_split(record["conflicts"]),
            missing=_split(record["missing"]),
            source_set_ids=_split(record["source_set_ids"]),
            **fields,
        )
    return MeasurementSet(**fields)


def get_measurement_set(set_id: str) -> Optional[MeasurementSet]:
    with engine.connect() as conn:
        row = conn.execute(
            select(measurement_sets_table).where(measurement_sets_table.c.set_id == set_id)
        ).fetchone()
        return _row_to_set(conn, row) if row is not None else None


def load_measurement_sets(user_id: str, capture_session_id: Optional[str] = None) -> List[MeasurementSet]:
    """All stored sets of a user, newest first, optionally for one capture session"""
    query = select(measurement_sets_table).where(measurement_sets_table.c.user_id == user_id)
    if capture_session_id is not None:
        query = query.where(measurement_sets_table.c.capture_session_id == capture_session_id)
    query = query.order_by(measurement_sets_table.c.created_at.desc())

    with engine.connect() as conn:
        rows = conn.execute(query).fetchall()
        return [_row_to_set(conn, row) for row in rows]
