from __future__ import annotations

import datetime
import json
import os
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker


DATA_DIR = Path(__file__).resolve().parent / "data"
DATABASE_URL_ENV = "ROTA_DATABASE_URL"
DEFAULT_DATABASE_URL = f"sqlite:///{(DATA_DIR / 'rota.db').as_posix()}"

SHIFT_DAY = "DAY"
SHIFT_NIGHT = "NIGHT"
SHIFT_TYPES = (SHIFT_DAY, SHIFT_NIGHT)

# Ordered lowest to highest.
COMPETENCY_LEVELS = (
    "NOT_ASSESSED",
    "NOT_COMPETENT",
    "ADVANCED_BEGINNER",
    "COMPETENT",
    "PROFICIENT",
    "EXPERT",
)
COMPETENT_LEVELS = frozenset({"COMPETENT", "PROFICIENT", "EXPERT"})


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def normalize_shift_type(value: Any) -> str:
    label = str(value or "").strip().upper()
    if label not in SHIFT_TYPES:
        raise ValueError(f"Unsupported shift type '{value}'.")
    return label


def is_competent_level(level: Optional[str]) -> bool:
    return (level or "").strip().upper() in COMPETENT_LEVELS


class Base(DeclarativeBase):
    """Metadata for every rota table."""

    pass


class Carer(Base):
    __tablename__ = "carers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    phone: Mapped[str] = mapped_column(String(40), nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    deleted_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    competency_ratings: Mapped[List["CompetencyRating"]] = relationship(
        back_populates="carer", cascade="all, delete-orphan"
    )


class Task(Base):
    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    deleted_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CarePackage(Base):
    __tablename__ = "care_packages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    postcode: Mapped[str] = mapped_column(String(16), nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    deleted_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PackageTaskAssignment(Base):
    __tablename__ = "package_task_assignments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    package_id: Mapped[str] = mapped_column(ForeignKey("care_packages.id", ondelete="CASCADE"), nullable=False)
    task_id: Mapped[str] = mapped_column(ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    assigned_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    task: Mapped[Task] = relationship()

    __table_args__ = (UniqueConstraint("package_id", "task_id", name="uq_package_task"),)


class CarerPackageAssignment(Base):
    __tablename__ = "carer_package_assignments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    carer_id: Mapped[str] = mapped_column(ForeignKey("carers.id", ondelete="CASCADE"), nullable=False)
    package_id: Mapped[str] = mapped_column(ForeignKey("care_packages.id", ondelete="CASCADE"), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    assigned_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    carer: Mapped[Carer] = relationship()

    __table_args__ = (UniqueConstraint("carer_id", "package_id", name="uq_carer_package"),)


class CompetencyRating(Base):
    __tablename__ = "competency_ratings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    carer_id: Mapped[str] = mapped_column(ForeignKey("carers.id", ondelete="CASCADE"), nullable=False)
    task_id: Mapped[str] = mapped_column(ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False)
    level: Mapped[str] = mapped_column(String(24), nullable=False, default="NOT_ASSESSED")
    set_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    carer: Mapped[Carer] = relationship(back_populates="competency_ratings")
    task: Mapped[Task] = relationship()

    __table_args__ = (UniqueConstraint("carer_id", "task_id", name="uq_competency_carer_task"),)


class RotaEntry(Base):
    __tablename__ = "rota_entries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    package_id: Mapped[str] = mapped_column(ForeignKey("care_packages.id", ondelete="CASCADE"), nullable=False)
    carer_id: Mapped[str] = mapped_column(ForeignKey("carers.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    shift_type: Mapped[str] = mapped_column(String(8), nullable=False)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)
    is_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    # The only real guard against concurrent duplicate inserts.
    __table_args__ = (UniqueConstraint("carer_id", "package_id", "date", name="uq_rota_carer_package_date"),)


class Policy(Base):
    __tablename__ = "policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    paramsJSON: Mapped[str] = mapped_column(String(8000), nullable=False, default="{}")
    lastEditedBy: Mapped[str] = mapped_column(String(60), nullable=False, default="system")
    lastEditedAt: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("name", name="uq_policies_name"),
    )

    def params_dict(self) -> Dict:
        try:
            value = json.loads(self.paramsJSON or "{}")
            if isinstance(value, dict):
                return value
        except json.JSONDecodeError:
            pass
        return {}


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="RotaEntry")
    target_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    payloadJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


def database_url() -> str:
    return os.environ.get(DATABASE_URL_ENV) or DEFAULT_DATABASE_URL


def build_engine(url: Optional[str] = None, **kwargs):
    resolved = url or database_url()
    if resolved == DEFAULT_DATABASE_URL:
        DATA_DIR.mkdir(parents=True, exist_ok=True)
    return create_engine(resolved, echo=False, future=True, **kwargs)


def build_session_factory(engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)


def init_database(engine) -> None:
    Base.metadata.create_all(engine)


def get_active_policy(session) -> Optional[Policy]:
    stmt = select(Policy).order_by(Policy.lastEditedAt.desc(), Policy.id.desc())
    return session.scalars(stmt).first()


def upsert_policy(session, name: str, params_dict: Dict, *, edited_by: str = "system") -> Policy:
    existing: Optional[Policy] = session.execute(
        select(Policy).where(Policy.name == name)
    ).scalars().first()
    payload = params_dict if isinstance(params_dict, dict) else {}
    if existing:
        existing.paramsJSON = json.dumps(payload)
        existing.lastEditedBy = edited_by
        existing.lastEditedAt = _utcnow()
        session.commit()
        session.refresh(existing)
        return existing
    policy = Policy(
        name=name,
        paramsJSON=json.dumps(payload),
        lastEditedBy=edited_by,
        lastEditedAt=_utcnow(),
    )
    session.add(policy)
    session.commit()
    session.refresh(policy)
    return policy


def rota_entry_to_dict(entry: RotaEntry, carer: Optional[Carer] = None, package: Optional[CarePackage] = None) -> Dict[str, Any]:
    payload = {
        "id": entry.id,
        "package_id": entry.package_id,
        "carer_id": entry.carer_id,
        "date": entry.date.isoformat() if entry.date else None,
        "shift_type": entry.shift_type,
        "start_time": entry.start_time,
        "end_time": entry.end_time,
        "is_confirmed": bool(entry.is_confirmed),
        "created_by": entry.created_by,
    }
    if carer is not None:
        payload["carer_name"] = carer.name
    if package is not None:
        payload["package_name"] = package.name
    return payload


def record_audit_log(
    session,
    user_id: str,
    action: str,
    target_type: str = "RotaEntry",
    target_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    log = AuditLog(
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        payloadJSON=json.dumps(payload or {}, default=str),
    )
    session.add(log)
    session.commit()
    return log
