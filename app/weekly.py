from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from database import SHIFT_DAY, SHIFT_NIGHT, rota_entry_to_dict
from logger import get_logger
from rota_time import as_date, shift_hours
from rules import RuleValidator, RuleViolation, ShiftCandidate

logger = get_logger(__name__)


@dataclass
class WeeklyCarerSchedule:
    carer_id: str
    carer_name: str
    entries: List[Any] = field(default_factory=list)
    total_hours: float = 0.0
    day_shifts: int = 0
    night_shifts: int = 0
    violations: List[RuleViolation] = field(default_factory=list)

    def add_entry(self, entry) -> None:
        self.entries.append(entry)
        self.total_hours += shift_hours(entry.start_time, entry.end_time)
        if entry.shift_type == SHIFT_DAY:
            self.day_shifts += 1
        elif entry.shift_type == SHIFT_NIGHT:
            self.night_shifts += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "carer_id": self.carer_id,
            "carer_name": self.carer_name,
            "entries": [rota_entry_to_dict(entry) for entry in self.entries],
            "total_hours": self.total_hours,
            "day_shifts": self.day_shifts,
            "night_shifts": self.night_shifts,
            "violations": [violation.to_dict() for violation in self.violations],
        }


def package_competency(store, carer_ids: Sequence[str], task_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
    """Per-carer summary of how many of the package's tasks each carer is competent on."""
    total = len(task_ids)
    summaries: Dict[str, Dict[str, Any]] = {}
    competent_by_carer: Dict[str, set] = {}
    if total:
        for carer_id in carer_ids:
            competent_by_carer[carer_id] = store.competent_task_ids(carer_id, task_ids)
    for carer_id in carer_ids:
        competent = len(competent_by_carer.get(carer_id, ()))
        summaries[carer_id] = {
            "competent_task_count": competent,
            "total_task_count": total,
            "is_package_competent": total > 0 and competent == total,
            "has_no_tasks": total == 0,
        }
    return summaries


class WeeklyAggregator:
    def __init__(self, store, validator: RuleValidator) -> None:
        self.store = store
        self.validator = validator

    def aggregate_week(self, package_id: str, week_start: datetime.date) -> List[WeeklyCarerSchedule]:
        """Group a package's week by carer and re-validate every entry against the full week."""
        start = as_date(week_start)
        end = start + datetime.timedelta(days=7)
        entries = self.store.entries_for_package(package_id, start, end)
        carers = self.store.carers_by_id(entry.carer_id for entry in entries)

        schedules: Dict[str, WeeklyCarerSchedule] = {}
        for entry in entries:
            schedule = schedules.get(entry.carer_id)
            if schedule is None:
                carer = carers.get(entry.carer_id)
                schedule = WeeklyCarerSchedule(
                    carer_id=entry.carer_id,
                    carer_name=carer.name if carer else "Unknown carer",
                )
                schedules[entry.carer_id] = schedule
            schedule.add_entry(entry)

        for schedule in schedules.values():
            for entry in schedule.entries:
                result = self.validator.validate(
                    ShiftCandidate.from_entry(entry),
                    entries,
                    check_duplicates=True,
                )
                schedule.violations.extend(result.errors)
                schedule.violations.extend(result.warnings)
        logger.debug("Aggregated %d entries for package %s week %s", len(entries), package_id, start)
        return list(schedules.values())

    def weekly_view(self, package_id: str, week_start: datetime.date) -> Optional[Dict[str, Any]]:
        package = self.store.get_package(package_id)
        if package is None or package.deleted_at is not None:
            return None
        start = as_date(week_start)
        schedules = self.aggregate_week(package_id, start)
        entries = [entry for schedule in schedules for entry in schedule.entries]
        entries.sort(key=lambda entry: (entry.date, entry.start_time))

        task_ids = self.store.package_task_ids(package_id)
        package_carers = self.store.package_carers(package_id)
        package_carer_ids = [carer.id for carer in package_carers]
        other_carers = self.store.active_carers(exclude_ids=package_carer_ids)
        competency = package_competency(
            self.store,
            package_carer_ids + [carer.id for carer in other_carers],
            task_ids,
        )

        def _carer_row(carer) -> Dict[str, Any]:
            return {
                "id": carer.id,
                "name": carer.name,
                "email": carer.email,
                "package_competency": competency[carer.id],
            }

        return {
            "package": {"id": package.id, "name": package.name, "postcode": package.postcode},
            "week_start": start.isoformat(),
            "week_end": (start + datetime.timedelta(days=6)).isoformat(),
            "entries": [rota_entry_to_dict(entry) for entry in entries],
            "schedules": [schedule.to_dict() for schedule in schedules],
            "package_carers": [_carer_row(carer) for carer in package_carers],
            "other_carers": [_carer_row(carer) for carer in other_carers],
        }
