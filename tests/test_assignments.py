from __future__ import annotations

import unittest

from sqlalchemy import func, select

from rota_factories import RotaDatabaseMixin, day

from assignments import AssignmentCoordinator, CommitPolicy  # noqa: E402
from database import RotaEntry  # noqa: E402
from policy import RuleLimits  # noqa: E402
from rules import (  # noqa: E402
    CARER_EXISTS,
    CONSECUTIVE_WEEKENDS,
    NO_DUPLICATE_SHIFTS,
    REST_PERIOD_VIOLATION,
    WEEKLY_HOUR_LIMIT,
    RuleValidator,
    ShiftCandidate,
)
from store import DuplicateShiftError, RotaEntryNotFoundError  # noqa: E402


class AssignmentCoordinatorTests(RotaDatabaseMixin, unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.task = self._add_task("Medication")
        self.package = self._add_package("Harbour View", tasks=[self.task])
        self.amira = self._add_carer("Amira Patel")
        self.ben = self._add_carer("Ben Okafor")
        self._rate(self.amira, self.task, "EXPERT")
        self._rate(self.ben, self.task, "COMPETENT")
        self.coordinator = AssignmentCoordinator(self.store, RuleValidator(self.store, RuleLimits()))

    def _candidate(self, carer, date_value, shift_type="DAY", start="08:00", end="20:00") -> ShiftCandidate:
        return ShiftCandidate(carer.id, self.package.id, date_value, shift_type, start, end)

    def _entry_count(self) -> int:
        with self.session_factory() as session:
            return session.scalar(select(func.count()).select_from(RotaEntry))

    # -- permissive single create ------------------------------------------

    def test_create_saves_despite_rule_errors(self) -> None:
        for offset in (0, 1, 2):
            self._add_entry(self.amira, self.package, day(offset))
        outcome = self.coordinator.create_entry(self._candidate(self.amira, day(3), start="08:00", end="12:00"), "manager")

        self.assertEqual(outcome.policy, CommitPolicy.PERMISSIVE_CREATE)
        self.assertTrue(outcome.saved)
        self.assertEqual([v.rule for v in outcome.errors], [WEEKLY_HOUR_LIMIT])
        self.assertEqual(outcome.entry.created_by, "manager")
        self.assertEqual(self._entry_count(), 4)

    def test_create_blocks_duplicate_with_day_name(self) -> None:
        self._add_entry(self.amira, self.package, day(0))
        outcome = self.coordinator.create_entry(self._candidate(self.amira, day(0), start="09:00", end="17:00"))

        self.assertFalse(outcome.saved)
        self.assertEqual([v.rule for v in outcome.errors], [NO_DUPLICATE_SHIFTS])
        self.assertEqual(outcome.message, "Carer already scheduled on Monday 1")
        self.assertEqual(self._entry_count(), 1)

    def test_create_blocks_missing_carer(self) -> None:
        candidate = ShiftCandidate("ghost", self.package.id, day(0), "DAY", "08:00", "20:00")
        outcome = self.coordinator.create_entry(candidate)
        self.assertFalse(outcome.saved)
        self.assertEqual(outcome.errors[0].rule, CARER_EXISTS)
        self.assertEqual(self._entry_count(), 0)

    def test_create_with_foreign_id_still_blocks_duplicate(self) -> None:
        stored = self._add_entry(self.amira, self.package, day(0))
        candidate = ShiftCandidate.from_payload(
            {
                "id": stored.id,
                "carer_id": self.amira.id,
                "package_id": self.package.id,
                "date": day(0).isoformat(),
                "shift_type": "DAY",
                "start_time": "09:00",
                "end_time": "17:00",
            }
        )
        outcome = self.coordinator.create_entry(candidate)
        self.assertFalse(outcome.saved)
        self.assertEqual([v.rule for v in outcome.errors], [NO_DUPLICATE_SHIFTS])
        self.assertEqual(self._entry_count(), 1)

    def test_store_constraint_rejects_racing_duplicate(self) -> None:
        self._add_entry(self.amira, self.package, day(0))
        with self.assertRaises(DuplicateShiftError):
            self.store.add_entry(self._candidate(self.amira, day(0)).to_row())
        self.assertEqual(self._entry_count(), 1)

    # -- strict batch -------------------------------------------------------

    def test_batch_commits_all_valid_entries(self) -> None:
        batch = self.coordinator.validate_batch(
            [self._candidate(self.amira, day(0)), self._candidate(self.ben, day(0))],
            created_by="planner",
        )
        self.assertTrue(batch.success)
        self.assertEqual(batch.committed_count, 2)
        self.assertEqual(self._entry_count(), 2)
        self.assertEqual(batch.to_dict()["created_count"], 2)

    def test_batch_with_one_invalid_entry_writes_nothing(self) -> None:
        self._add_entry(self.ben, self.package, day(-2))
        batch = self.coordinator.validate_batch(
            [self._candidate(self.amira, day(5)), self._candidate(self.ben, day(5))]
        )
        self.assertFalse(batch.success)
        self.assertEqual((batch.valid_count, batch.total_count), (1, 2))
        self.assertEqual(batch.committed, [])
        self.assertIn(CONSECUTIVE_WEEKENDS, [v.rule for v in batch.results[1].result.errors])
        self.assertEqual(self._entry_count(), 1)

    def test_batch_of_four_valid_entries_commits_all(self) -> None:
        candidates = [
            self._candidate(self.amira, day(0)),
            self._candidate(self.amira, day(1)),
            self._candidate(self.ben, day(0)),
            self._candidate(self.ben, day(1)),
        ]
        batch = self.coordinator.validate_batch(candidates)
        self.assertTrue(batch.success)
        self.assertEqual((batch.valid_count, batch.total_count), (4, 4))
        self.assertEqual(batch.committed_count, 4)
        self.assertEqual(self._entry_count(), 4)

    def test_three_valid_and_one_invalid_commits_nothing(self) -> None:
        self._add_entry(self.ben, self.package, day(-2))
        candidates = [
            self._candidate(self.amira, day(0)),
            self._candidate(self.amira, day(1)),
            self._candidate(self.ben, day(1)),
            self._candidate(self.ben, day(5)),
        ]
        batch = self.coordinator.validate_batch(candidates)
        self.assertFalse(batch.success)
        self.assertEqual(len(batch.results), 4)
        self.assertEqual((batch.valid_count, batch.total_count), (3, 4))
        self.assertEqual([item.result.is_valid for item in batch.results], [True, True, True, False])
        self.assertEqual(batch.committed, [])
        self.assertEqual(self._entry_count(), 1)

    def test_batch_ignores_client_supplied_id(self) -> None:
        monday = self._add_entry(self.amira, self.package, day(0))
        for offset in (1, 2):
            self._add_entry(self.amira, self.package, day(offset))
        candidate = ShiftCandidate.from_payload(
            {
                "id": monday.id,
                "carer_id": self.amira.id,
                "package_id": self.package.id,
                "date": day(3).isoformat(),
                "shift_type": "DAY",
                "start_time": "08:00",
                "end_time": "20:00",
            }
        )
        batch = self.coordinator.validate_batch([candidate])
        self.assertFalse(batch.success)
        self.assertIn(WEEKLY_HOUR_LIMIT, [v.rule for v in batch.results[0].result.errors])
        self.assertEqual(batch.committed, [])
        self.assertEqual(self._entry_count(), 3)

    def test_validate_only_never_writes(self) -> None:
        batch = self.coordinator.validate_batch([self._candidate(self.amira, day(0))], validate_only=True)
        self.assertTrue(batch.success)
        self.assertEqual(batch.valid_count, 1)
        self.assertEqual(self._entry_count(), 0)

    def test_batch_includes_duplicate_rule(self) -> None:
        self._add_entry(self.amira, self.package, day(0))
        batch = self.coordinator.validate_batch([self._candidate(self.amira, day(0), start="09:00", end="17:00")])
        self.assertEqual(batch.results[0].result.errors[0].rule, NO_DUPLICATE_SHIFTS)
        self.assertEqual(self._entry_count(), 1)

    def test_duplicate_siblings_fail_atomically_at_commit(self) -> None:
        candidates = [self._candidate(self.amira, day(0)), self._candidate(self.amira, day(0), start="09:00")]
        with self.assertRaises(DuplicateShiftError):
            self.coordinator.validate_batch(candidates)
        self.assertEqual(self._entry_count(), 0)

    # -- strict update ------------------------------------------------------

    def test_update_applies_valid_change(self) -> None:
        entry = self._add_entry(self.amira, self.package, day(0))
        outcome = self.coordinator.update_entry(entry.id, {"start_time": "07:00", "end_time": "15:00"})
        self.assertTrue(outcome.saved)
        self.assertEqual(outcome.policy, CommitPolicy.STRICT_UPDATE)
        self.assertEqual(self.store.get_entry(entry.id).start_time, "07:00")

    def test_update_rejects_rule_error_and_keeps_row(self) -> None:
        self._add_entry(self.amira, self.package, day(1), "NIGHT", "20:00", "08:00")
        entry = self._add_entry(self.amira, self.package, day(4))
        outcome = self.coordinator.update_entry(entry.id, {"date": day(2).isoformat()})
        self.assertFalse(outcome.saved)
        self.assertIn(REST_PERIOD_VIOLATION, [v.rule for v in outcome.errors])
        self.assertEqual(self.store.get_entry(entry.id).date, day(4))

    def test_update_rejects_collision_with_other_entry(self) -> None:
        self._add_entry(self.amira, self.package, day(0))
        entry = self._add_entry(self.amira, self.package, day(1))
        outcome = self.coordinator.update_entry(entry.id, {"date": day(0).isoformat()})
        self.assertFalse(outcome.saved)
        self.assertEqual(outcome.errors[0].rule, NO_DUPLICATE_SHIFTS)

    def test_update_unknown_entry(self) -> None:
        with self.assertRaises(RotaEntryNotFoundError):
            self.coordinator.update_entry("missing", {"start_time": "09:00"})

    def test_update_rejects_malformed_change(self) -> None:
        entry = self._add_entry(self.amira, self.package, day(0))
        with self.assertRaises(ValueError):
            self.coordinator.update_entry(entry.id, {"end_time": "25:00"})

    # -- confirm / delete ---------------------------------------------------

    def test_confirm_entry(self) -> None:
        entry = self._add_entry(self.amira, self.package, day(0))
        self.assertTrue(self.coordinator.confirm_entry(entry.id).is_confirmed)
        self.assertTrue(self.store.get_entry(entry.id).is_confirmed)

    def test_batch_delete_is_all_or_nothing(self) -> None:
        first = self._add_entry(self.amira, self.package, day(0))
        second = self._add_entry(self.ben, self.package, day(0))
        with self.assertRaises(RotaEntryNotFoundError) as ctx:
            self.coordinator.delete_entries([first.id, "missing"])
        self.assertEqual(ctx.exception.missing_ids, ["missing"])
        self.assertEqual(self._entry_count(), 2)

        deleted = self.coordinator.delete_entries([first.id, second.id])
        self.assertEqual({entry.id for entry in deleted}, {first.id, second.id})
        self.assertEqual(self._entry_count(), 0)

    def test_get_and_delete_single_entry(self) -> None:
        entry = self._add_entry(self.amira, self.package, day(0))
        self.assertEqual(self.coordinator.get_entry(entry.id).id, entry.id)
        self.coordinator.delete_entry(entry.id)
        with self.assertRaises(RotaEntryNotFoundError):
            self.coordinator.get_entry(entry.id)


if __name__ == "__main__":
    unittest.main()
