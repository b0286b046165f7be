import threading

from django.test import SimpleTestCase

from donations.tasks.timer import RepeatingTimer


class RepeatingTimerTests(SimpleTestCase):
    def test_runs_immediately_then_repeats_until_cancelled(self):
        ticks = []
        reached = threading.Event()

        def tick():
            ticks.append(1)
            if len(ticks) >= 3:
                reached.set()

        timer = RepeatingTimer(0.01, tick, run_immediately=True, name="test-timer")
        timer.start()
        self.assertTrue(reached.wait(2))
        timer.cancel()
        timer.join(2)

        self.assertFalse(timer.is_alive())
        self.assertGreaterEqual(len(ticks), 3)

    def test_failing_tick_does_not_stop_timer(self):
        calls = []
        reached = threading.Event()

        def tick():
            calls.append(1)
            if len(calls) >= 2:
                reached.set()
            raise RuntimeError("tick failed")

        timer = RepeatingTimer(0.01, tick, run_immediately=True)
        timer.start()
        self.assertTrue(reached.wait(2))
        timer.cancel()
        timer.join(2)

    def test_cancel_is_idempotent_and_blocks_future_ticks(self):
        calls = []
        timer = RepeatingTimer(60, lambda: calls.append(1))
        timer.start()
        timer.cancel()
        timer.cancel()
        timer.join(2)

        self.assertTrue(timer.cancelled)
        self.assertEqual(calls, [])

    def test_invalid_interval_and_double_start(self):
        with self.assertRaises(ValueError):
            RepeatingTimer(0, lambda: None)

        timer = RepeatingTimer(60, lambda: None)
        timer.start()
        with self.assertRaises(RuntimeError):
            timer.start()
        timer.cancel()
