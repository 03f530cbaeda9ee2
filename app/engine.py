from __future__ import annotations

import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from assignments import AssignmentCoordinator, AssignmentOutcome, BatchResult
from availability import AvailabilityCheck, AvailabilityResolver, CarerPool, ShiftWindow
from logger import get_logger
from policy import RuleLimits, load_active_policy, scheduling_limits
from rules import RuleValidator, ShiftCandidate, ValidationResult, rule_catalog
from store import RotaStore
from weekly import WeeklyAggregator, WeeklyCarerSchedule

logger = get_logger(__name__)


class RotaEngine:
    """Single entry point over the validator, resolver, aggregator and coordinator.

    Holds no mutable state of its own; build one per process and pass it to
    whatever needs it.
    """

    def __init__(self, store: RotaStore, limits: Optional[RuleLimits] = None) -> None:
        self.store = store
        self.limits = limits or RuleLimits()
        self.validator = RuleValidator(store, self.limits)
        self.resolver = AvailabilityResolver(store, self.limits)
        self.aggregator = WeeklyAggregator(store, self.validator)
        self.coordinator = AssignmentCoordinator(store, self.validator)

    def validate(
        self,
        candidate: ShiftCandidate,
        existing_entries: Optional[Sequence[Any]] = None,
        *,
        check_duplicates: bool = False,
    ) -> ValidationResult:
        return self.validator.validate(candidate, existing_entries, check_duplicates=check_duplicates)

    def resolve_availability(
        self,
        window: ShiftWindow,
        required_task_ids: Sequence[str] = (),
        *,
        competent_only: bool = False,
        pool: CarerPool = CarerPool.PACKAGE,
        exclude_carer_ids: Iterable[str] = (),
    ) -> List[AvailabilityCheck]:
        return self.resolver.resolve(
            window,
            required_task_ids,
            competent_only=competent_only,
            pool=pool,
            exclude_carer_ids=exclude_carer_ids,
        )

    def available_for_non_competent_shift(self, window: ShiftWindow, exclude_carer_ids: Iterable[str] = ()):
        return self.resolver.available_for_non_competent_shift(window, exclude_carer_ids)

    def competent_carers_for_shift(self, window: ShiftWindow, task_ids: Sequence[str], exclude_carer_ids: Iterable[str] = ()):
        return self.resolver.competent_carers_for_shift(window, task_ids, exclude_carer_ids)

    def aggregate_week(self, package_id: str, week_start: datetime.date) -> List[WeeklyCarerSchedule]:
        return self.aggregator.aggregate_week(package_id, week_start)

    def weekly_view(self, package_id: str, week_start: datetime.date) -> Optional[Dict[str, Any]]:
        return self.aggregator.weekly_view(package_id, week_start)

    def validate_batch(
        self,
        candidates: Sequence[ShiftCandidate],
        validate_only: bool = False,
        created_by: str = "system",
    ) -> BatchResult:
        return self.coordinator.validate_batch(candidates, validate_only=validate_only, created_by=created_by)

    def validate_entry(self, candidate: ShiftCandidate) -> ValidationResult:
        return self.coordinator.validate_entry(candidate)

    def create_entry(self, candidate: ShiftCandidate, created_by: str = "system") -> AssignmentOutcome:
        return self.coordinator.create_entry(candidate, created_by)

    def update_entry(self, entry_id: str, changes: Dict[str, Any]) -> AssignmentOutcome:
        return self.coordinator.update_entry(entry_id, changes)

    def confirm_entry(self, entry_id: str):
        return self.coordinator.confirm_entry(entry_id)

    def get_entry(self, entry_id: str):
        return self.coordinator.get_entry(entry_id)

    def delete_entry(self, entry_id: str):
        return self.coordinator.delete_entry(entry_id)

    def delete_entries(self, entry_ids: Sequence[str]):
        return self.coordinator.delete_entries(entry_ids)

    @staticmethod
    def rule_catalog() -> List[Dict[str, Any]]:
        return rule_catalog()


def build_rota_engine(session_factory) -> RotaEngine:
    """Construct an engine bound to ``session_factory`` using the active policy's limits."""
    limits = scheduling_limits(load_active_policy(session_factory))
    logger.info("Rota engine limits: %s", limits.to_dict())
    return RotaEngine(RotaStore(session_factory), limits)
