from __future__ import annotations

import unittest

from rota_factories import MONDAY, RotaDatabaseMixin, day

from policy import RuleLimits  # noqa: E402
from rules import COMPETENCY_PAIRING, REST_PERIOD_VIOLATION, RuleValidator  # noqa: E402
from weekly import WeeklyAggregator, package_competency  # noqa: E402


class WeeklyAggregatorTests(RotaDatabaseMixin, unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.task = self._add_task("Medication")
        self.second_task = self._add_task("Personal care")
        self.package = self._add_package("Harbour View", tasks=[self.task, self.second_task])
        self.amira = self._add_carer("Amira Patel")
        self.ben = self._add_carer("Ben Okafor")
        self.carys = self._add_carer("Carys Llewellyn")
        self._assign(self.amira, self.package)
        self._assign(self.ben, self.package)
        self._rate(self.amira, self.task, "EXPERT")
        self._rate(self.amira, self.second_task, "COMPETENT")
        self._rate(self.carys, self.task, "PROFICIENT")
        self.aggregator = WeeklyAggregator(self.store, RuleValidator(self.store, RuleLimits()))

    def test_groups_entries_by_carer_with_totals(self) -> None:
        self._add_entry(self.amira, self.package, day(0))
        self._add_entry(self.ben, self.package, day(0), start="09:00", end="17:00")
        self._add_entry(self.amira, self.package, day(3), "NIGHT", "20:00", "08:00")
        self._add_entry(self.amira, self.package, day(7))

        schedules = self.aggregator.aggregate_week(self.package.id, MONDAY)

        self.assertEqual([schedule.carer_name for schedule in schedules], ["Amira Patel", "Ben Okafor"])
        amira, ben = schedules
        self.assertEqual(len(amira.entries), 2)
        self.assertEqual(amira.total_hours, 24)
        self.assertEqual((amira.day_shifts, amira.night_shifts), (1, 1))
        self.assertEqual(ben.total_hours, 8)
        self.assertEqual(ben.violations, [])

    def test_revalidates_every_entry(self) -> None:
        self._add_entry(self.amira, self.package, day(1), "NIGHT", "20:00", "08:00")
        self._add_entry(self.amira, self.package, day(2))
        self._add_entry(self.ben, self.package, day(4))

        schedules = {schedule.carer_id: schedule for schedule in self.aggregator.aggregate_week(self.package.id, MONDAY)}

        self.assertIn(REST_PERIOD_VIOLATION, [v.rule for v in schedules[self.amira.id].violations])
        self.assertIn(COMPETENCY_PAIRING, [v.rule for v in schedules[self.ben.id].violations])

    def test_empty_week(self) -> None:
        self.assertEqual(self.aggregator.aggregate_week(self.package.id, MONDAY), [])

    def test_weekly_view_splits_package_and_other_carers(self) -> None:
        self._add_entry(self.amira, self.package, day(0))
        view = self.aggregator.weekly_view(self.package.id, MONDAY)

        self.assertEqual(view["week_start"], "2024-04-01")
        self.assertEqual(view["week_end"], "2024-04-07")
        self.assertEqual(len(view["entries"]), 1)
        self.assertEqual([row["name"] for row in view["package_carers"]], ["Amira Patel", "Ben Okafor"])
        self.assertEqual([row["name"] for row in view["other_carers"]], ["Carys Llewellyn"])

        amira = view["package_carers"][0]["package_competency"]
        self.assertEqual(amira["competent_task_count"], 2)
        self.assertTrue(amira["is_package_competent"])
        carys = view["other_carers"][0]["package_competency"]
        self.assertEqual(carys["competent_task_count"], 1)
        self.assertFalse(carys["is_package_competent"])

    def test_weekly_view_unknown_package(self) -> None:
        self.assertIsNone(self.aggregator.weekly_view("missing", MONDAY))

    def test_package_competency_without_tasks(self) -> None:
        summary = package_competency(self.store, [self.amira.id], [])
        self.assertEqual(
            summary[self.amira.id],
            {
                "competent_task_count": 0,
                "total_task_count": 0,
                "is_package_competent": False,
                "has_no_tasks": True,
            },
        )


if __name__ == "__main__":
    unittest.main()
