"""Generation request lifecycle transition tests."""

from __future__ import annotations

import unittest

from app.domain.generation_fsm import allowed_next_statuses, ensure_transition, is_noop_transition
from app.errors import ApiError
from app.schemas.generation import GenerationStatus


class GenerationFsmUnitTests(unittest.TestCase):
    def test_allowed_transition_examples_across_lifecycle(self) -> None:
        allowed_pairs = [
            (GenerationStatus.PENDING, GenerationStatus.PROCESSING),
            (GenerationStatus.PENDING, GenerationStatus.EXPIRED),
            (GenerationStatus.PROCESSING, GenerationStatus.COMPLETED),
            (GenerationStatus.PROCESSING, GenerationStatus.EXPIRED),
            (GenerationStatus.EXPIRED, GenerationStatus.COMPLETED),
            (GenerationStatus.COMPLETED, GenerationStatus.COMPLETED),
        ]
        for old_status, new_status in allowed_pairs:
            with self.subTest(old_status=old_status, new_status=new_status):
                ensure_transition(old_status, new_status)

    def test_forbidden_transitions_return_contract_shape(self) -> None:
        invalid_pairs = [
            (GenerationStatus.PROCESSING, GenerationStatus.PENDING),
            (GenerationStatus.EXPIRED, GenerationStatus.PROCESSING),
            (GenerationStatus.PROCESSING, GenerationStatus.PROCESSING),
        ]
        for old_status, new_status in invalid_pairs:
            with self.subTest(old_status=old_status, new_status=new_status):
                with self.assertRaises(ApiError) as context:
                    ensure_transition(old_status, new_status)
                self.assertEqual(context.exception.status_code, 409)
                self.assertEqual(context.exception.payload.code, "FSM_TRANSITION_INVALID")
                details = context.exception.payload.details
                self.assertEqual(details["current_status"], old_status)
                self.assertEqual(details["attempted_status"], new_status)
                self.assertEqual(details["allowed_next_statuses"], allowed_next_statuses(old_status))

    def test_completed_is_terminal(self) -> None:
        for attempted in (GenerationStatus.EXPIRED, GenerationStatus.PROCESSING, GenerationStatus.PENDING):
            with self.subTest(attempted=attempted):
                with self.assertRaises(ApiError) as context:
                    ensure_transition(GenerationStatus.COMPLETED, attempted)
                self.assertEqual(context.exception.payload.code, "FSM_TERMINAL_IMMUTABLE")
                self.assertEqual(context.exception.payload.details["allowed_next_statuses"], [])

    def test_only_completed_to_completed_is_noop(self) -> None:
        self.assertTrue(is_noop_transition(GenerationStatus.COMPLETED, GenerationStatus.COMPLETED))
        self.assertFalse(is_noop_transition(GenerationStatus.EXPIRED, GenerationStatus.EXPIRED))
        self.assertEqual(
            allowed_next_statuses(GenerationStatus.PROCESSING),
            [GenerationStatus.COMPLETED, GenerationStatus.EXPIRED],
        )


if __name__ == "__main__":
    unittest.main()
