"""Writes to the rota under one of three commit policies.

``permissive-create`` stores a single entry despite rule errors (only a missing
carer/package or an existing duplicate blocks it) and hands the violations back
to the caller. ``strict-update`` and ``strict-batch`` write nothing if any
error is found, and a batch is committed in a single transaction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from database import rota_entry_to_dict
from logger import get_logger
from rules import RuleValidator, RuleViolation, ShiftCandidate, ValidationResult
from store import RotaEntryNotFoundError

logger = get_logger(__name__)

UPDATABLE_FIELDS = ("package_id", "carer_id", "date", "shift_type", "start_time", "end_time", "is_confirmed")


class CommitPolicy(str, Enum):
    PERMISSIVE_CREATE = "permissive-create"
    STRICT_UPDATE = "strict-update"
    STRICT_BATCH = "strict-batch"


@dataclass
class AssignmentOutcome:
    policy: CommitPolicy
    saved: bool
    entry: Optional[Any] = None
    errors: List[RuleViolation] = field(default_factory=list)
    warnings: List[RuleViolation] = field(default_factory=list)
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "policy": self.policy.value,
            "saved": self.saved,
            "entry": rota_entry_to_dict(self.entry) if self.entry is not None else None,
            "violations": [violation.to_dict() for violation in self.errors],
            "warnings": [violation.to_dict() for violation in self.warnings],
            "message": self.message,
        }


@dataclass
class BatchItemResult:
    index: int
    candidate: ShiftCandidate
    result: ValidationResult

    def to_dict(self) -> Dict[str, Any]:
        payload = {"index": self.index}
        payload.update(self.result.to_dict())
        return payload


@dataclass
class BatchResult:
    results: List[BatchItemResult] = field(default_factory=list)
    committed: List[Any] = field(default_factory=list)
    validate_only: bool = False

    @property
    def total_count(self) -> int:
        return len(self.results)

    @property
    def valid_count(self) -> int:
        return sum(1 for item in self.results if item.result.is_valid)

    @property
    def all_valid(self) -> bool:
        return self.valid_count == self.total_count

    @property
    def committed_count(self) -> int:
        return len(self.committed)

    @property
    def success(self) -> bool:
        return self.all_valid and (self.validate_only or self.committed_count == self.total_count)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "validate_only": self.validate_only,
            "results": [item.to_dict() for item in self.results],
            "valid_entries": self.valid_count,
            "total_entries": self.total_count,
            "entries": [rota_entry_to_dict(entry) for entry in self.committed],
            "created_count": self.committed_count,
        }


class AssignmentCoordinator:
    def __init__(self, store, validator: RuleValidator) -> None:
        self.store = store
        self.validator = validator

    def validate_entry(self, candidate: ShiftCandidate) -> ValidationResult:
        return self.validator.validate(candidate)

    def get_entry(self, entry_id: str):
        entry = self.store.get_entry(entry_id)
        if entry is None:
            raise RotaEntryNotFoundError([entry_id])
        return entry

    def create_entry(self, candidate: ShiftCandidate, created_by: str = "system") -> AssignmentOutcome:
        policy = CommitPolicy.PERMISSIVE_CREATE
        duplicate = self.validator.check_duplicate(candidate)
        if duplicate is not None:
            return AssignmentOutcome(policy, saved=False, errors=[duplicate], message=duplicate.message)

        result = self.validator.validate(candidate)
        critical = result.critical_errors()
        if critical:
            return AssignmentOutcome(
                policy,
                saved=False,
                errors=result.errors,
                warnings=result.warnings,
                message=critical[0].message,
            )

        entry = self.store.add_entry(candidate.to_row(created_by))
        if result.errors:
            logger.info(
                "Rota entry %s saved with %d rule errors: %s",
                entry.id,
                len(result.errors),
                ", ".join(violation.rule for violation in result.errors),
            )
        return AssignmentOutcome(
            policy,
            saved=True,
            entry=entry,
            errors=result.errors,
            warnings=result.warnings,
            message="Rota entry created" if result.is_valid else "Rota entry created with rule violations",
        )

    def update_entry(self, entry_id: str, changes: Dict[str, Any]) -> AssignmentOutcome:
        policy = CommitPolicy.STRICT_UPDATE
        stored = self.get_entry(entry_id)
        merged = rota_entry_to_dict(stored)
        merged.update({key: value for key, value in (changes or {}).items() if key in UPDATABLE_FIELDS})
        candidate = ShiftCandidate.from_payload(merged)
        candidate.id = stored.id

        result = self.validator.validate(candidate, check_duplicates=True)
        if not result.is_valid:
            return AssignmentOutcome(
                policy,
                saved=False,
                entry=stored,
                errors=result.errors,
                warnings=result.warnings,
                message="Update violates scheduling rules",
            )
        values = candidate.to_row()
        values.pop("created_by")
        entry = self.store.update_entry(entry_id, values)
        return AssignmentOutcome(
            policy,
            saved=True,
            entry=entry,
            warnings=result.warnings,
            message="Rota entry updated",
        )

    def confirm_entry(self, entry_id: str):
        return self.store.confirm_entry(entry_id)

    def delete_entry(self, entry_id: str):
        return self.store.delete_entry(entry_id)

    def delete_entries(self, entry_ids: Sequence[str]) -> List[Any]:
        if not entry_ids:
            raise ValueError("entry_ids must not be empty")
        return self.store.delete_entries(entry_ids)

    def validate_batch(
        self,
        candidates: Sequence[ShiftCandidate],
        validate_only: bool = False,
        created_by: str = "system",
    ) -> BatchResult:
        """Validate every candidate against committed state; commit all or nothing."""
        batch = BatchResult(validate_only=validate_only)
        for index, candidate in enumerate(candidates):
            result = self.validator.validate(candidate, check_duplicates=True)
            batch.results.append(BatchItemResult(index, candidate, result))

        if validate_only:
            return batch
        if not batch.all_valid:
            logger.info(
                "Rejected rota batch: %d of %d entries failed validation",
                batch.total_count - batch.valid_count,
                batch.total_count,
            )
            return batch
        if not candidates:
            return batch
        batch.committed = self.store.add_entries([candidate.to_row(created_by) for candidate in candidates])
        return batch
