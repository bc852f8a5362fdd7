"""Attempt ledger bookkeeping with a controllable clock."""
from __future__ import annotations

import unittest

from gamelink.metrics import MetricsRecorder
from gamelink.models import ConnectionAttempt


class _Clock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class MetricsRecorderTest(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = _Clock()
        self.recorder = MetricsRecorder(clock=self.clock, monotonic_clock=self.clock)

    def test_empty_snapshot(self) -> None:
        snapshot = self.recorder.snapshot()
        self.assertEqual(snapshot.total_attempts, 0)
        self.assertEqual(snapshot.average_connection_time, 0)
        self.assertEqual(snapshot.attempts, ())

    def test_counts_and_average_over_concluded_attempts(self) -> None:
        self.recorder.begin()
        self.clock.now += 40
        self.recorder.conclude(True)

        self.recorder.begin()
        self.clock.now += 10
        self.recorder.conclude(False, error="Connection timeout")

        self.recorder.begin()
        self.clock.now += 20
        self.recorder.conclude(True)

        snapshot = self.recorder.snapshot()
        self.assertEqual(snapshot.total_attempts, 3)
        self.assertEqual(snapshot.successful_attempts, 2)
        self.assertEqual(snapshot.failed_attempts, 1)
        self.assertEqual(snapshot.average_connection_time, 30)
        self.assertEqual([a.attempt_number for a in snapshot.attempts], [1, 2, 3])
        self.assertEqual(snapshot.attempts[1].error, "Connection timeout")
        self.assertIsNone(snapshot.attempts[0].error)

    def test_pending_attempt_is_not_counted(self) -> None:
        attempt = self.recorder.begin()
        snapshot = self.recorder.snapshot()

        self.assertTrue(attempt.pending)
        self.assertIs(self.recorder.pending, attempt)
        self.assertEqual(snapshot.total_attempts, 0)
        self.assertEqual(snapshot.successful_attempts + snapshot.failed_attempts, 0)

    def test_new_attempt_supersedes_pending_one(self) -> None:
        self.recorder.begin()
        self.recorder.begin()

        snapshot = self.recorder.snapshot()
        self.assertEqual(snapshot.total_attempts, 1)
        self.assertEqual(snapshot.attempts[0].error, "Superseded")
        self.assertEqual(self.recorder.pending.attempt_number, 2)

    def test_conclude_without_pending_attempt_is_ignored(self) -> None:
        self.assertIsNone(self.recorder.conclude(True))
        self.assertEqual(self.recorder.snapshot().total_attempts, 0)

    def test_clock_going_backwards_never_gives_negative_duration(self) -> None:
        self.recorder.begin()
        self.clock.now -= 500
        attempt = self.recorder.conclude(True)

        self.assertEqual(attempt.duration, 0)
        self.assertEqual(attempt.end_time, attempt.start_time)

    def test_duration_ignores_wall_clock_steps(self) -> None:
        wall = _Clock()
        steady = _Clock(now=50.0)
        recorder = MetricsRecorder(clock=wall, monotonic_clock=steady)

        recorder.begin()
        wall.now -= 3_600_000
        steady.now += 25
        attempt = recorder.conclude(True)

        self.assertEqual(attempt.duration, 25)
        self.assertEqual(attempt.end_time, attempt.start_time)
        snapshot = recorder.snapshot()
        self.assertEqual(snapshot.successful_attempts, 1)
        self.assertEqual(snapshot.average_connection_time, 25)

    def test_concluded_attempt_cannot_conclude_again(self) -> None:
        attempt = ConnectionAttempt(attempt_number=1, start_time=5.0)
        done = attempt.concluded(success=False, end_time=8.0, error="boom")

        self.assertEqual(done.duration, 3.0)
        self.assertTrue(attempt.pending)
        with self.assertRaises(ValueError):
            done.concluded(success=True, end_time=9.0)

    def test_snapshot_serialises_with_wire_names(self) -> None:
        self.recorder.begin()
        self.clock.now += 25
        self.recorder.conclude(True)

        payload = self.recorder.snapshot().to_dict()
        self.assertEqual(payload["totalAttempts"], 1)
        self.assertEqual(payload["averageConnectionTime"], 25)
        self.assertEqual(payload["attempts"][0]["attemptNumber"], 1)
        self.assertEqual(payload["attempts"][0]["duration"], 25)
        self.assertNotIn("error", payload["attempts"][0])


if __name__ == "__main__":
    unittest.main()
