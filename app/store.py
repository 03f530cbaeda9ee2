"""Read/write access to the rota tables for the rules engine.

Every call opens its own short-lived session from the injected factory, so a
``RotaStore`` holds no state between calls and can be shared freely. Writes
that touch several rows run inside one transaction.
"""

from __future__ import annotations

import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from database import (
    Carer,
    CarePackage,
    CarerPackageAssignment,
    CompetencyRating,
    PackageTaskAssignment,
    RotaEntry,
    Task,
    is_competent_level,
)
from logger import get_logger
from rota_time import as_date

logger = get_logger(__name__)

ENTRY_FIELDS = ("package_id", "carer_id", "date", "shift_type", "start_time", "end_time", "is_confirmed")


class RotaEntryNotFoundError(LookupError):
    """Raised when one or more rota entry ids do not exist."""

    def __init__(self, missing_ids: Sequence[str]) -> None:
        self.missing_ids = list(missing_ids)
        super().__init__(f"Rota entries not found: {', '.join(self.missing_ids)}")


class DuplicateShiftError(Exception):
    """Raised when the store rejects a (carer, package, date) that already exists."""


class RotaStore:
    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    @property
    def session_factory(self):
        return self._session_factory

    # -- carers, packages, competencies ---------------------------------

    def get_carer(self, carer_id: str) -> Optional[Carer]:
        if not carer_id:
            return None
        with self._session_factory() as session:
            return session.get(Carer, carer_id)

    def get_package(self, package_id: str) -> Optional[CarePackage]:
        if not package_id:
            return None
        with self._session_factory() as session:
            return session.get(CarePackage, package_id)

    def carers_by_id(self, carer_ids: Iterable[str]) -> Dict[str, Carer]:
        ids = sorted({carer_id for carer_id in carer_ids if carer_id})
        if not ids:
            return {}
        with self._session_factory() as session:
            return {carer.id: carer for carer in session.scalars(select(Carer).where(Carer.id.in_(ids)))}

    def active_carers(self, exclude_ids: Iterable[str] = ()) -> List[Carer]:
        excluded = list(exclude_ids or [])
        stmt = select(Carer).where(Carer.is_active.is_(True), Carer.deleted_at.is_(None))
        if excluded:
            stmt = stmt.where(Carer.id.not_in(excluded))
        with self._session_factory() as session:
            return list(session.scalars(stmt.order_by(Carer.name.asc())))

    def package_carers(self, package_id: str, exclude_ids: Iterable[str] = ()) -> List[Carer]:
        excluded = list(exclude_ids or [])
        stmt = (
            select(Carer)
            .join(CarerPackageAssignment, CarerPackageAssignment.carer_id == Carer.id)
            .where(
                CarerPackageAssignment.package_id == package_id,
                CarerPackageAssignment.is_active.is_(True),
                Carer.is_active.is_(True),
                Carer.deleted_at.is_(None),
            )
        )
        if excluded:
            stmt = stmt.where(Carer.id.not_in(excluded))
        with self._session_factory() as session:
            return list(session.scalars(stmt.order_by(Carer.name.asc())))

    def package_tasks(self, package_id: str) -> List[Task]:
        stmt = (
            select(Task)
            .join(PackageTaskAssignment, PackageTaskAssignment.task_id == Task.id)
            .where(
                PackageTaskAssignment.package_id == package_id,
                PackageTaskAssignment.is_active.is_(True),
                Task.deleted_at.is_(None),
            )
            .order_by(Task.name.asc())
        )
        with self._session_factory() as session:
            return list(session.scalars(stmt))

    def package_task_ids(self, package_id: str) -> List[str]:
        return [task.id for task in self.package_tasks(package_id)]

    def competency_levels(self, carer_ids: Iterable[str], task_ids: Iterable[str]) -> Dict[str, Dict[str, str]]:
        """Return {carer_id: {task_id: level}} for the requested pairs."""
        carers = list({carer_id for carer_id in carer_ids if carer_id})
        tasks = list({task_id for task_id in task_ids if task_id})
        if not carers or not tasks:
            return {}
        stmt = select(CompetencyRating).where(
            CompetencyRating.carer_id.in_(carers),
            CompetencyRating.task_id.in_(tasks),
        )
        levels: Dict[str, Dict[str, str]] = {}
        with self._session_factory() as session:
            for rating in session.scalars(stmt):
                levels.setdefault(rating.carer_id, {})[rating.task_id] = rating.level
        return levels

    def competent_task_ids(self, carer_id: str, task_ids: Iterable[str]) -> Set[str]:
        levels = self.competency_levels([carer_id], task_ids).get(carer_id, {})
        return {task_id for task_id, level in levels.items() if is_competent_level(level)}

    def competent_carer_ids(self, carer_ids: Iterable[str], task_ids: Iterable[str]) -> Set[str]:
        """Carers holding at least one competent-or-above rating on any of ``task_ids``."""
        competent: Set[str] = set()
        for carer_id, levels in self.competency_levels(carer_ids, task_ids).items():
            if any(is_competent_level(level) for level in levels.values()):
                competent.add(carer_id)
        return competent

    # -- rota entries ------------------------------------------------------

    def get_entry(self, entry_id: str) -> Optional[RotaEntry]:
        if not entry_id:
            return None
        with self._session_factory() as session:
            return session.get(RotaEntry, entry_id)

    def entries_for_package(
        self,
        package_id: str,
        start: Optional[datetime.date] = None,
        end: Optional[datetime.date] = None,
    ) -> List[RotaEntry]:
        """Entries for a package, optionally limited to the half-open [start, end) range."""
        stmt = select(RotaEntry).where(RotaEntry.package_id == package_id)
        if start is not None:
            stmt = stmt.where(RotaEntry.date >= as_date(start))
        if end is not None:
            stmt = stmt.where(RotaEntry.date < as_date(end))
        stmt = stmt.order_by(RotaEntry.date.asc(), RotaEntry.start_time.asc())
        with self._session_factory() as session:
            return list(session.scalars(stmt))

    def entries_for_carer(
        self,
        carer_id: str,
        start: datetime.date,
        end: datetime.date,
        *,
        shift_type: Optional[str] = None,
        end_inclusive: bool = False,
        exclude_id: Optional[str] = None,
    ) -> List[RotaEntry]:
        """Entries for a carer across every package between ``start`` and ``end``."""
        stmt = select(RotaEntry).where(
            RotaEntry.carer_id == carer_id,
            RotaEntry.date >= as_date(start),
        )
        if end_inclusive:
            stmt = stmt.where(RotaEntry.date <= as_date(end))
        else:
            stmt = stmt.where(RotaEntry.date < as_date(end))
        if shift_type:
            stmt = stmt.where(RotaEntry.shift_type == shift_type)
        if exclude_id:
            stmt = stmt.where(RotaEntry.id != exclude_id)
        stmt = stmt.order_by(RotaEntry.date.asc(), RotaEntry.start_time.asc())
        with self._session_factory() as session:
            return list(session.scalars(stmt))

    def find_duplicate(
        self,
        carer_id: str,
        package_id: str,
        date_value: datetime.date,
        *,
        exclude_id: Optional[str] = None,
    ) -> Optional[RotaEntry]:
        stmt = select(RotaEntry).where(
            RotaEntry.carer_id == carer_id,
            RotaEntry.package_id == package_id,
            RotaEntry.date == as_date(date_value),
        )
        if exclude_id:
            stmt = stmt.where(RotaEntry.id != exclude_id)
        with self._session_factory() as session:
            return session.scalars(stmt).first()

    def add_entries(self, rows: Sequence[Dict[str, Any]]) -> List[RotaEntry]:
        """Insert every row in one transaction; nothing is written if any insert fails."""
        created: List[RotaEntry] = []
        try:
            with self._session_factory.begin() as session:
                for row in rows:
                    entry = RotaEntry(**_entry_values(row))
                    session.add(entry)
                    created.append(entry)
                session.flush()
        except IntegrityError as exc:
            logger.warning("Rota insert rejected by uniqueness constraint: %s", exc.orig)
            raise DuplicateShiftError("A carer is already scheduled on that package and date.") from exc
        logger.info("Committed %d rota entries", len(created))
        return created

    def add_entry(self, row: Dict[str, Any]) -> RotaEntry:
        return self.add_entries([row])[0]

    def update_entry(self, entry_id: str, values: Dict[str, Any]) -> RotaEntry:
        try:
            with self._session_factory.begin() as session:
                entry = session.get(RotaEntry, entry_id)
                if entry is None:
                    raise RotaEntryNotFoundError([entry_id])
                for key, value in _entry_values(values).items():
                    setattr(entry, key, value)
                session.flush()
        except IntegrityError as exc:
            raise DuplicateShiftError("A carer is already scheduled on that package and date.") from exc
        return entry

    def confirm_entry(self, entry_id: str) -> RotaEntry:
        with self._session_factory.begin() as session:
            entry = session.get(RotaEntry, entry_id)
            if entry is None:
                raise RotaEntryNotFoundError([entry_id])
            entry.is_confirmed = True
        return entry

    def delete_entries(self, entry_ids: Sequence[str]) -> List[RotaEntry]:
        """Delete all ids in one transaction, or none of them if any id is unknown."""
        ids = list(dict.fromkeys(entry_ids))
        with self._session_factory.begin() as session:
            existing = list(session.scalars(select(RotaEntry).where(RotaEntry.id.in_(ids))))
            found = {entry.id for entry in existing}
            missing = [entry_id for entry_id in ids if entry_id not in found]
            if missing:
                raise RotaEntryNotFoundError(missing)
            session.execute(delete(RotaEntry).where(RotaEntry.id.in_(ids)))
        logger.info("Deleted %d rota entries", len(existing))
        return existing

    def delete_entry(self, entry_id: str) -> RotaEntry:
        return self.delete_entries([entry_id])[0]


def _entry_values(row: Dict[str, Any]) -> Dict[str, Any]:
    values = {key: row[key] for key in ENTRY_FIELDS if key in row and row[key] is not None}
    if "date" in values:
        values["date"] = as_date(values["date"])
    if "created_by" in row and row["created_by"]:
        values["created_by"] = row["created_by"]
    return values
