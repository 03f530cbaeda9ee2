"""Scheduling rules evaluated against one proposed rota entry.

Each rule is a plain function ``(candidate, context) -> Optional[RuleViolation]``
held in the ordered ``RULES`` tuple. New rules are added by appending to the
tuple; a rule that raises is reported as an error violation under its own code
and never stops the remaining rules from running.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from database import SHIFT_DAY, SHIFT_NIGHT, normalize_shift_type
from logger import get_logger
from policy import RuleLimits
from rota_time import (
    as_date,
    day_label,
    format_hours,
    hours_between,
    is_valid_clock,
    is_weekend,
    previous_weekend,
    shift_hours,
    week_bounds,
    week_start,
)

logger = get_logger(__name__)

SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"

CARER_EXISTS = "CARER_EXISTS"
PACKAGE_EXISTS = "PACKAGE_EXISTS"
VALIDATION_ERROR = "VALIDATION_ERROR"
NO_PACKAGE_TASKS = "NO_PACKAGE_TASKS"
MIN_COMPETENT_STAFF = "MIN_COMPETENT_STAFF"
COMPETENCY_PAIRING = "COMPETENCY_PAIRING"
WEEKLY_HOUR_LIMIT = "WEEKLY_HOUR_LIMIT"
ROTATION_PATTERN = "ROTATION_PATTERN"
CONSECUTIVE_WEEKENDS = "CONSECUTIVE_WEEKENDS"
REST_PERIOD_VIOLATION = "REST_PERIOD_VIOLATION"
CONSECUTIVE_NIGHTS = "CONSECUTIVE_NIGHTS"
DAY_TO_NIGHT = "DAY_TO_NIGHT"
NO_DUPLICATE_SHIFTS = "NO_DUPLICATE_SHIFTS"

CRITICAL_RULES = frozenset({CARER_EXISTS, PACKAGE_EXISTS})
REQUIRED_ENTRY_FIELDS = ("package_id", "carer_id", "date", "shift_type", "start_time", "end_time")


@dataclass
class ShiftCandidate:
    carer_id: str
    package_id: str
    date: datetime.date
    shift_type: str
    start_time: str
    end_time: str
    is_confirmed: bool = False
    id: Optional[str] = None

    @classmethod
    def from_entry(cls, entry: Any) -> "ShiftCandidate":
        return cls(
            carer_id=entry.carer_id,
            package_id=entry.package_id,
            date=as_date(entry.date),
            shift_type=entry.shift_type,
            start_time=entry.start_time,
            end_time=entry.end_time,
            is_confirmed=bool(entry.is_confirmed),
            id=entry.id,
        )

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ShiftCandidate":
        """Build a candidate from a request body, raising ValueError on bad input."""
        missing = [key for key in REQUIRED_ENTRY_FIELDS if not payload.get(key)]
        if missing:
            raise ValueError(f"Missing required fields: {', '.join(missing)}")
        date_value = payload["date"]
        if isinstance(date_value, str):
            try:
                date_value = datetime.date.fromisoformat(date_value[:10])
            except ValueError as exc:
                raise ValueError("date must be YYYY-MM-DD") from exc
        elif not isinstance(date_value, datetime.date):
            raise ValueError("date must be YYYY-MM-DD")
        for key in ("start_time", "end_time"):
            if not is_valid_clock(payload[key]):
                raise ValueError(f"{key} must be HH:MM")
        return cls(
            carer_id=str(payload["carer_id"]),
            package_id=str(payload["package_id"]),
            date=as_date(date_value),
            shift_type=normalize_shift_type(payload["shift_type"]),
            start_time=payload["start_time"].strip(),
            end_time=payload["end_time"].strip(),
            is_confirmed=bool(payload.get("is_confirmed", False)),
        )

    @property
    def hours(self) -> float:
        return shift_hours(self.start_time, self.end_time)

    def to_row(self, created_by: str = "system") -> Dict[str, Any]:
        return {
            "package_id": self.package_id,
            "carer_id": self.carer_id,
            "date": self.date,
            "shift_type": self.shift_type,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "is_confirmed": self.is_confirmed,
            "created_by": created_by,
        }


@dataclass
class RuleViolation:
    rule: str
    message: str
    severity: str
    carer_id: Optional[str] = None
    carer_name: Optional[str] = None
    additional_info: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return self.severity == SEVERITY_ERROR

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "rule": self.rule,
            "message": self.message,
            "severity": self.severity,
        }
        if self.carer_id:
            payload["carer_id"] = self.carer_id
        if self.carer_name:
            payload["carer_name"] = self.carer_name
        if self.additional_info:
            payload["additional_info"] = dict(self.additional_info)
        return payload


@dataclass
class ValidationResult:
    errors: List[RuleViolation] = field(default_factory=list)
    warnings: List[RuleViolation] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def violations(self) -> List[RuleViolation]:
        return [*self.errors, *self.warnings]

    def critical_errors(self) -> List[RuleViolation]:
        return [violation for violation in self.errors if violation.rule in CRITICAL_RULES]

    @classmethod
    def from_violations(cls, violations: Iterable[RuleViolation]) -> "ValidationResult":
        result = cls()
        for violation in violations:
            if violation.is_error:
                result.errors.append(violation)
            else:
                result.warnings.append(violation)
        return result

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "violations": [violation.to_dict() for violation in self.errors],
            "warnings": [violation.to_dict() for violation in self.warnings],
        }


class RuleContext:
    """Everything a rule may look at for one candidate; store reads are lazy."""

    def __init__(self, store, limits: RuleLimits, carer, package, existing_entries: Optional[Sequence[Any]] = None) -> None:
        self.store = store
        self.limits = limits
        self.carer = carer
        self.package = package
        self._existing_entries = list(existing_entries) if existing_entries is not None else None
        self._package_task_ids: Optional[List[str]] = None

    @property
    def carer_name(self) -> str:
        return getattr(self.carer, "name", None) or "Carer"

    def package_task_ids(self) -> List[str]:
        if self._package_task_ids is None:
            self._package_task_ids = self.store.package_task_ids(self.package.id)
        return self._package_task_ids

    def package_entries(self, candidate: ShiftCandidate) -> List[Any]:
        if self._existing_entries is None:
            day = as_date(candidate.date)
            self._existing_entries = self.store.entries_for_package(
                candidate.package_id, day, day + datetime.timedelta(days=1)
            )
        return self._existing_entries

    def same_shift_entries(self, candidate: ShiftCandidate) -> List[Any]:
        """Other stored entries on the candidate's date, shift type and package."""
        day = as_date(candidate.date)
        return [
            entry
            for entry in self.package_entries(candidate)
            if as_date(entry.date) == day
            and entry.shift_type == candidate.shift_type
            and entry.package_id == candidate.package_id
            and (candidate.id is None or entry.id != candidate.id)
        ]


RuleCheck = Callable[[ShiftCandidate, RuleContext], Optional[RuleViolation]]


@dataclass(frozen=True)
class Rule:
    code: str
    severity: str
    label: str
    failure_message: str
    check: Optional[RuleCheck] = None

    @property
    def is_permissive(self) -> bool:
        return self.check is None


def duplicate_message(date_value: datetime.date) -> str:
    return f"Carer already scheduled on {day_label(date_value)}"


def rest_period_violated(
    night_shift_at: datetime.date | datetime.datetime,
    day_shift_at: datetime.date | datetime.datetime,
    required_hours: float,
) -> bool:
    return hours_between(night_shift_at, day_shift_at) < required_hours


def no_duplicate_shifts(candidate: ShiftCandidate, context: RuleContext) -> Optional[RuleViolation]:
    duplicate = context.store.find_duplicate(
        candidate.carer_id,
        candidate.package_id,
        candidate.date,
        exclude_id=candidate.id,
    )
    if duplicate is None:
        return None
    return RuleViolation(
        rule=NO_DUPLICATE_SHIFTS,
        message=duplicate_message(candidate.date),
        severity=SEVERITY_ERROR,
        carer_id=candidate.carer_id,
        additional_info={"existing_entry_id": duplicate.id},
    )


def minimum_competent_staff(candidate: ShiftCandidate, context: RuleContext) -> Optional[RuleViolation]:
    task_ids = context.package_task_ids()
    if not task_ids:
        return RuleViolation(
            rule=NO_PACKAGE_TASKS,
            message="Package has no tasks assigned",
            severity=SEVERITY_WARNING,
        )
    carer_ids = {entry.carer_id for entry in context.same_shift_entries(candidate)}
    carer_ids.add(candidate.carer_id)
    competent = context.store.competent_carer_ids(carer_ids, task_ids)
    required = context.limits.min_competent_staff
    if len(competent) < required:
        return RuleViolation(
            rule=MIN_COMPETENT_STAFF,
            message="This shift needs a competent supervisor",
            severity=SEVERITY_WARNING,
            additional_info={"competent_carers": len(competent), "required": required},
        )
    return None


def competency_pairing(candidate: ShiftCandidate, context: RuleContext) -> Optional[RuleViolation]:
    task_ids = context.package_task_ids()
    if not task_ids:
        return None
    if context.store.competent_carer_ids([candidate.carer_id], task_ids):
        return None
    others = {entry.carer_id for entry in context.same_shift_entries(candidate) if entry.carer_id != candidate.carer_id}
    if others and context.store.competent_carer_ids(others, task_ids):
        return None
    return RuleViolation(
        rule=COMPETENCY_PAIRING,
        message=f"{context.carer_name} needs assessment for this package",
        severity=SEVERITY_WARNING,
        carer_id=candidate.carer_id,
        carer_name=context.carer_name,
    )


def weekly_hour_limit(candidate: ShiftCandidate, context: RuleContext) -> Optional[RuleViolation]:
    start, end = week_bounds(candidate.date)
    week_entries = context.store.entries_for_carer(candidate.carer_id, start, end, exclude_id=candidate.id)
    current_hours = sum(shift_hours(entry.start_time, entry.end_time) for entry in week_entries)
    proposed_hours = candidate.hours
    total_hours = current_hours + proposed_hours
    limit = context.limits.weekly_hour_limit
    if total_hours > limit:
        return RuleViolation(
            rule=WEEKLY_HOUR_LIMIT,
            message=f"{context.carer_name} would exceed weekly hours ({format_hours(total_hours)}/{format_hours(limit)})",
            severity=SEVERITY_ERROR,
            carer_id=candidate.carer_id,
            carer_name=context.carer_name,
            additional_info={
                "current_hours": current_hours,
                "proposed_hours": proposed_hours,
                "total_hours": total_hours,
                "limit": limit,
            },
        )
    return None


def rotation_pattern(candidate: ShiftCandidate, context: RuleContext) -> Optional[RuleViolation]:
    current_start = week_start(candidate.date)
    previous_start = current_start - datetime.timedelta(days=7)
    previous_entries = context.store.entries_for_carer(
        candidate.carer_id, previous_start, current_start, exclude_id=candidate.id
    )
    if not previous_entries:
        return None
    shift_types = {entry.shift_type for entry in previous_entries}
    if len(shift_types) > 1:
        return None
    previous_type = shift_types.pop()
    if previous_type != candidate.shift_type:
        return None
    return RuleViolation(
        rule=ROTATION_PATTERN,
        message=f"{context.carer_name} worked {previous_type.lower()} shifts last week",
        severity=SEVERITY_WARNING,
        carer_id=candidate.carer_id,
        carer_name=context.carer_name,
        additional_info={"previous_week_start": previous_start.isoformat(), "shift_type": previous_type},
    )


def consecutive_weekends(candidate: ShiftCandidate, context: RuleContext) -> Optional[RuleViolation]:
    if not is_weekend(candidate.date):
        return None
    weekends_back = context.limits.max_consecutive_weekends
    anchor = as_date(candidate.date)
    shifts_found = 0
    for _ in range(weekends_back):
        saturday, sunday = previous_weekend(anchor)
        weekend_entries = context.store.entries_for_carer(
            candidate.carer_id, saturday, sunday, end_inclusive=True, exclude_id=candidate.id
        )
        if not weekend_entries:
            return None
        shifts_found += len(weekend_entries)
        anchor = saturday
    if weekends_back == 1:
        message = f"{context.carer_name} worked last weekend"
    else:
        message = f"{context.carer_name} worked the last {weekends_back} weekends"
    return RuleViolation(
        rule=CONSECUTIVE_WEEKENDS,
        message=message,
        severity=SEVERITY_ERROR,
        carer_id=candidate.carer_id,
        carer_name=context.carer_name,
        additional_info={"previous_weekend_shifts": shifts_found},
    )


def rest_period(candidate: ShiftCandidate, context: RuleContext) -> Optional[RuleViolation]:
    if candidate.shift_type != SHIFT_DAY:
        return None
    required = context.limits.rest_period_hours
    day = as_date(candidate.date)
    window_start = (datetime.datetime.combine(day, datetime.time.min) - datetime.timedelta(hours=required)).date()
    recent_nights = context.store.entries_for_carer(
        candidate.carer_id, window_start, day, shift_type=SHIFT_NIGHT, exclude_id=candidate.id
    )
    if not recent_nights:
        return None
    last_night = max(recent_nights, key=lambda entry: as_date(entry.date))
    if not rest_period_violated(last_night.date, day, required):
        return None
    hours_since = hours_between(last_night.date, day)
    return RuleViolation(
        rule=REST_PERIOD_VIOLATION,
        message=f"{context.carer_name} needs rest after night shift ({format_hours(hours_since)}h since last night shift)",
        severity=SEVERITY_ERROR,
        carer_id=candidate.carer_id,
        carer_name=context.carer_name,
        additional_info={
            "hours_since": hours_since,
            "required_hours": required,
            "night_shift_date": as_date(last_night.date).isoformat(),
        },
    )


DUPLICATE_RULE = Rule(
    NO_DUPLICATE_SHIFTS,
    SEVERITY_ERROR,
    "No duplicate shifts: a carer works a package at most once per day",
    "Error checking for duplicate shifts",
    no_duplicate_shifts,
)

RULES = (
    Rule(
        MIN_COMPETENT_STAFF,
        SEVERITY_WARNING,
        "Minimum staffing: at least one competent carer on every shift",
        "Error checking minimum staffing requirements",
        minimum_competent_staff,
    ),
    Rule(
        COMPETENCY_PAIRING,
        SEVERITY_WARNING,
        "Competency pairing: non-competent carers work alongside a competent carer",
        "Error checking competency pairing requirements",
        competency_pairing,
    ),
    Rule(
        WEEKLY_HOUR_LIMIT,
        SEVERITY_ERROR,
        "Weekly hours: capped per carer per Monday-start week",
        "Error checking weekly hour limits",
        weekly_hour_limit,
    ),
    Rule(
        ROTATION_PATTERN,
        SEVERITY_WARNING,
        "Rotation: a week of days is followed by a week of nights",
        "Error checking rotation pattern",
        rotation_pattern,
    ),
    Rule(
        CONSECUTIVE_WEEKENDS,
        SEVERITY_ERROR,
        "Weekends: no consecutive weekends",
        "Error checking consecutive weekend restrictions",
        consecutive_weekends,
    ),
    Rule(
        CONSECUTIVE_NIGHTS,
        SEVERITY_WARNING,
        "Night flexibility: consecutive night shifts are allowed",
        "",
    ),
    Rule(
        REST_PERIOD_VIOLATION,
        SEVERITY_ERROR,
        "Rest period: night to day shift needs the full rest gap",
        "Error checking rest period requirements",
        rest_period,
    ),
    Rule(
        DAY_TO_NIGHT,
        SEVERITY_WARNING,
        "Day to night: moving from days to nights in the same week is allowed",
        "",
    ),
)


def rule_catalog(rules: Sequence[Rule] = RULES) -> List[Dict[str, Any]]:
    catalog = [
        {"rule": CARER_EXISTS, "severity": SEVERITY_ERROR, "description": "Carer must exist", "enforced": True},
        {"rule": PACKAGE_EXISTS, "severity": SEVERITY_ERROR, "description": "Care package must exist", "enforced": True},
    ]
    for rule in (*rules, DUPLICATE_RULE):
        catalog.append(
            {
                "rule": rule.code,
                "severity": rule.severity,
                "description": rule.label,
                "enforced": not rule.is_permissive,
            }
        )
    return catalog


class RuleValidator:
    def __init__(self, store, limits: Optional[RuleLimits] = None, rules: Sequence[Rule] = RULES) -> None:
        self.store = store
        self.limits = limits or RuleLimits()
        self.rules = tuple(rules)

    def validate(
        self,
        candidate: ShiftCandidate,
        existing_entries: Optional[Sequence[Any]] = None,
        *,
        check_duplicates: bool = False,
    ) -> ValidationResult:
        """Run every rule against ``candidate``; the duplicate rule runs first when requested."""
        context, failure = self._build_context(candidate, existing_entries)
        if failure is not None:
            return ValidationResult(errors=[failure])
        rules = (DUPLICATE_RULE, *self.rules) if check_duplicates else self.rules
        return ValidationResult.from_violations(self._evaluate(rules, candidate, context))

    def check_duplicate(self, candidate: ShiftCandidate) -> Optional[RuleViolation]:
        context = RuleContext(self.store, self.limits, carer=None, package=None)
        violations = self._evaluate((DUPLICATE_RULE,), candidate, context)
        return violations[0] if violations else None

    def _build_context(self, candidate: ShiftCandidate, existing_entries: Optional[Sequence[Any]]):
        try:
            carer = self.store.get_carer(candidate.carer_id)
            package = self.store.get_package(candidate.package_id)
        except Exception:
            logger.exception("Error loading carer/package for rota validation")
            return None, RuleViolation(
                rule=VALIDATION_ERROR,
                message="Error occurred during validation",
                severity=SEVERITY_ERROR,
            )
        if carer is None or carer.deleted_at is not None:
            return None, RuleViolation(
                rule=CARER_EXISTS,
                message="Carer not found",
                severity=SEVERITY_ERROR,
                carer_id=candidate.carer_id,
            )
        if package is None or package.deleted_at is not None:
            return None, RuleViolation(
                rule=PACKAGE_EXISTS,
                message="Care package not found",
                severity=SEVERITY_ERROR,
            )
        return RuleContext(self.store, self.limits, carer, package, existing_entries), None

    def _evaluate(self, rules: Sequence[Rule], candidate: ShiftCandidate, context: RuleContext) -> List[RuleViolation]:
        violations: List[RuleViolation] = []
        for rule in rules:
            if rule.is_permissive:
                continue
            try:
                violation = rule.check(candidate, context)
            except Exception:
                logger.exception("Error evaluating rule %s for carer %s", rule.code, candidate.carer_id)
                violation = RuleViolation(
                    rule=rule.code,
                    message=rule.failure_message,
                    severity=SEVERITY_ERROR,
                    carer_id=candidate.carer_id,
                )
            if violation is not None:
                violations.append(violation)
        return violations
