from __future__ import annotations

import unittest
from datetime import timedelta

from leadflow.errors import SequenceDefinitionError
from leadflow.sequences import ExecutionStatus, SkipCondition, build_steps, can_advance

S = ExecutionStatus


class StepDefinitionTests(unittest.TestCase):
    def test_steps_are_numbered_in_order(self) -> None:
        steps = build_steps(
            [
                {"templateId": "initial-followup"},
                {"templateId": "second-touchpoint", "delayDays": 2, "skipConditions": ["skip_if_responded"]},
                {"templateId": "final-opportunity", "delayDays": 5, "delayHours": 12},
            ]
        )
        self.assertEqual([s.step_number for s in steps], [1, 2, 3])
        self.assertEqual(steps[1].delay, timedelta(days=2))
        self.assertEqual(steps[1].skip_conditions, (SkipCondition.IF_RESPONDED,))
        self.assertEqual(steps[2].delay, timedelta(days=5, hours=12))

    def test_equal_delays_are_allowed(self) -> None:
        steps = build_steps([{"templateId": "a", "delayHours": 1}, {"templateId": "b", "delayHours": 1}])
        self.assertEqual(len(steps), 2)

    def test_invalid_definitions_are_rejected(self) -> None:
        cases = [
            [],
            [{"templateId": "a", "delayHours": 48}, {"templateId": "b", "delayHours": 24}],
            [{"delayHours": 1}],
            [{"templateId": "a", "delayHours": -1}],
            [{"templateId": "a", "delayDays": "soon"}],
            [{"templateId": "a", "skipConditions": ["skip_if_raining"]}],
            ["a"],
            [{"templateId": "a", "delayDays": float("nan")}],
            [{"templateId": "a", "delayHours": float("inf")}],
            [{"templateId": "a", "delayDays": "Infinity"}],
            [{"templateId": "a", "delayDays": 3_000_000}],
            [{"templateId": "a", "delayDays": 3650, "delayHours": 1}],
        ]
        for steps in cases:
            with self.subTest(steps=steps):
                with self.assertRaises(SequenceDefinitionError):
                    build_steps(steps)

    def test_ten_year_delay_is_the_upper_bound(self) -> None:
        steps = build_steps([{"templateId": "a", "delayDays": 3650}])
        self.assertEqual(steps[0].delay, timedelta(days=3650))

    def test_skip_condition_aliases(self) -> None:
        self.assertIs(SkipCondition.parse("responded"), SkipCondition.IF_RESPONDED)
        self.assertIs(SkipCondition.parse("SKIP_IF_OPENED_PRIOR"), SkipCondition.IF_OPENED_PRIOR)


class TransitionTests(unittest.TestCase):
    def test_engagement_only_moves_forward(self) -> None:
        self.assertTrue(can_advance(S.SCHEDULED, S.SENT))
        self.assertTrue(can_advance(S.SENT, S.DELIVERED))
        self.assertTrue(can_advance(S.SENT, S.OPENED))
        self.assertTrue(can_advance(S.DELIVERED, S.CLICKED))
        self.assertFalse(can_advance(S.OPENED, S.DELIVERED))
        self.assertFalse(can_advance(S.SCHEDULED, S.DELIVERED))

    def test_failure_and_cancellation_rules(self) -> None:
        self.assertTrue(can_advance(S.SCHEDULED, S.FAILED))
        self.assertTrue(can_advance(S.OPENED, S.FAILED))
        self.assertFalse(can_advance(S.CLICKED, S.FAILED))
        self.assertTrue(can_advance(S.SCHEDULED, S.CANCELLED))
        self.assertFalse(can_advance(S.SENT, S.CANCELLED))
        for terminal in (S.FAILED, S.CANCELLED, S.CLICKED):
            self.assertFalse(can_advance(terminal, S.SENT))


if __name__ == "__main__":
    unittest.main()
