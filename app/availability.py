"""Who can work a given shift window.

The resolver reuses the rule functions from ``rules`` for the weekly cap, rest
period and weekend checks, runs them per carer instead of per entry, and adds
a same-day overlap check and competency matching on top.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

from logger import get_logger
from policy import RuleLimits
from rota_time import as_date, format_hours, overlaps
from rules import (
    RuleContext,
    ShiftCandidate,
    consecutive_weekends,
    rest_period,
    weekly_hour_limit,
)

logger = get_logger(__name__)

ROTA_CONFLICT = "ROTA_CONFLICT"
WEEKLY_HOURS_EXCEEDED = "WEEKLY_HOURS_EXCEEDED"
REST_PERIOD_VIOLATION = "REST_PERIOD_VIOLATION"
CONSECUTIVE_WEEKENDS = "CONSECUTIVE_WEEKENDS"

BLOCKING_CONFLICTS = frozenset({ROTA_CONFLICT, WEEKLY_HOURS_EXCEEDED, REST_PERIOD_VIOLATION})


class CarerPool(str, Enum):
    PACKAGE = "package"
    ALL = "all"


@dataclass
class ShiftWindow:
    date: datetime.date
    start_time: str
    end_time: str
    package_id: str
    shift_type: str

    def as_candidate(self, carer_id: str) -> ShiftCandidate:
        return ShiftCandidate(
            carer_id=carer_id,
            package_id=self.package_id,
            date=as_date(self.date),
            shift_type=self.shift_type,
            start_time=self.start_time,
            end_time=self.end_time,
        )


@dataclass
class AvailabilityConflict:
    type: str
    message: str
    conflicting_entry_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type, "message": self.message}
        if self.conflicting_entry_id:
            payload["conflicting_entry_id"] = self.conflicting_entry_id
        if self.details:
            payload["details"] = dict(self.details)
        return payload


@dataclass
class CompetencyMatch:
    is_competent: bool
    required_task_ids: List[str] = field(default_factory=list)
    competent_task_ids: List[str] = field(default_factory=list)
    missing_task_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_competent": self.is_competent,
            "required_task_ids": list(self.required_task_ids),
            "competent_task_ids": list(self.competent_task_ids),
            "missing_task_ids": list(self.missing_task_ids),
        }


@dataclass
class AvailabilityCheck:
    carer_id: str
    carer_name: str
    is_available: bool
    conflicts: List[AvailabilityConflict] = field(default_factory=list)
    competency_match: Optional[CompetencyMatch] = None

    def has_conflict(self, conflict_type: str) -> bool:
        return any(conflict.type == conflict_type for conflict in self.conflicts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "carer_id": self.carer_id,
            "carer_name": self.carer_name,
            "is_available": self.is_available,
            "conflicts": [conflict.to_dict() for conflict in self.conflicts],
            "competency_match": self.competency_match.to_dict() if self.competency_match else None,
        }


class AvailabilityResolver:
    def __init__(self, store, limits: Optional[RuleLimits] = None) -> None:
        self.store = store
        self.limits = limits or RuleLimits()

    def resolve(
        self,
        window: ShiftWindow,
        required_task_ids: Sequence[str] = (),
        *,
        competent_only: bool = False,
        pool: CarerPool = CarerPool.PACKAGE,
        exclude_carer_ids: Iterable[str] = (),
    ) -> List[AvailabilityCheck]:
        """Evaluate every carer in ``pool``; a failure on one carer never stops the rest."""
        pool = CarerPool(pool)
        if pool is CarerPool.PACKAGE:
            carers = self.store.package_carers(window.package_id, exclude_carer_ids)
        else:
            carers = self.store.active_carers(exclude_carer_ids)
        logger.debug("Resolving availability for %d carers on %s", len(carers), window.date)
        return [
            self.check_carer(carer, window, required_task_ids, competent_only=competent_only)
            for carer in carers
        ]

    def available_for_non_competent_shift(
        self,
        window: ShiftWindow,
        exclude_carer_ids: Iterable[str] = (),
    ) -> List[AvailabilityCheck]:
        return self.resolve(window, pool=CarerPool.ALL, exclude_carer_ids=exclude_carer_ids)

    def competent_carers_for_shift(
        self,
        window: ShiftWindow,
        task_ids: Sequence[str],
        exclude_carer_ids: Iterable[str] = (),
    ) -> List[AvailabilityCheck]:
        return self.resolve(
            window,
            task_ids,
            competent_only=True,
            pool=CarerPool.ALL,
            exclude_carer_ids=exclude_carer_ids,
        )

    def check_carer(
        self,
        carer,
        window: ShiftWindow,
        required_task_ids: Sequence[str] = (),
        *,
        competent_only: bool = False,
    ) -> AvailabilityCheck:
        required = list(dict.fromkeys(required_task_ids))
        try:
            conflicts = self._conflicts(carer, window)
            match = self._competency_match(carer.id, required, competent_only)
        except Exception:
            logger.exception("Error checking availability for carer %s", carer.id)
            return AvailabilityCheck(
                carer_id=carer.id,
                carer_name=carer.name,
                is_available=False,
                conflicts=[AvailabilityConflict(ROTA_CONFLICT, "Error checking availability")],
                competency_match=CompetencyMatch(
                    is_competent=False,
                    required_task_ids=required,
                    missing_task_ids=list(required),
                ),
            )
        blocked = any(conflict.type in BLOCKING_CONFLICTS for conflict in conflicts)
        return AvailabilityCheck(
            carer_id=carer.id,
            carer_name=carer.name,
            is_available=not blocked and (not competent_only or match.is_competent),
            conflicts=conflicts,
            competency_match=match,
        )

    def _conflicts(self, carer, window: ShiftWindow) -> List[AvailabilityConflict]:
        candidate = window.as_candidate(carer.id)
        context = RuleContext(self.store, self.limits, carer, package=None)
        conflicts = self._rota_conflicts(candidate)

        hours = weekly_hour_limit(candidate, context)
        if hours is not None:
            info = hours.additional_info
            conflicts.append(
                AvailabilityConflict(
                    WEEKLY_HOURS_EXCEEDED,
                    f"Would exceed {format_hours(info['limit'])}-hour weekly limit "
                    f"(current: {format_hours(info['current_hours'])}h, "
                    f"proposed: {format_hours(info['proposed_hours'])}h, "
                    f"total: {format_hours(info['total_hours'])}h)",
                    details=dict(info),
                )
            )

        rest = rest_period(candidate, context)
        if rest is not None:
            info = rest.additional_info
            conflicts.append(
                AvailabilityConflict(
                    REST_PERIOD_VIOLATION,
                    f"Requires {format_hours(info['required_hours'])}-hour rest after night shift "
                    f"(only {format_hours(info['hours_since'])}h since last night shift)",
                    details=dict(info),
                )
            )

        weekend = consecutive_weekends(candidate, context)
        if weekend is not None:
            conflicts.append(
                AvailabilityConflict(
                    CONSECUTIVE_WEEKENDS,
                    "Worked previous weekend - consecutive weekends not allowed",
                    details=dict(weekend.additional_info),
                )
            )
        return conflicts

    def _rota_conflicts(self, candidate: ShiftCandidate) -> List[AvailabilityConflict]:
        day = as_date(candidate.date)
        same_day = self.store.entries_for_carer(candidate.carer_id, day, day + datetime.timedelta(days=1))
        conflicts: List[AvailabilityConflict] = []
        package_names: Dict[str, str] = {}
        for entry in same_day:
            if not overlaps(entry.start_time, entry.end_time, candidate.start_time, candidate.end_time):
                continue
            if entry.package_id not in package_names:
                package = self.store.get_package(entry.package_id)
                package_names[entry.package_id] = package.name if package else "another package"
            conflicts.append(
                AvailabilityConflict(
                    ROTA_CONFLICT,
                    f"Already scheduled for {package_names[entry.package_id]} "
                    f"from {entry.start_time} to {entry.end_time}",
                    conflicting_entry_id=entry.id,
                )
            )
        return conflicts

    def _competency_match(self, carer_id: str, required: List[str], competent_only: bool) -> CompetencyMatch:
        if not competent_only:
            return CompetencyMatch(is_competent=True, required_task_ids=required)
        competent = self.store.competent_task_ids(carer_id, required)
        return CompetencyMatch(
            is_competent=all(task_id in competent for task_id in required),
            required_task_ids=required,
            competent_task_ids=[task_id for task_id in required if task_id in competent],
            missing_task_ids=[task_id for task_id in required if task_id not in competent],
        )
