"""
Error Recovery Tests

Tests for failure tracking, exponential backoff and dead-lettering.
Run with: pytest tests/test_error_recovery.py -v
"""

from contact_sync.error_recovery import ErrorRecovery


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def make_recovery(**kwargs):
    clock = FakeClock()
    return ErrorRecovery(clock=clock, **kwargs), clock


class TestBackoff:
    """Tests for retry scheduling."""

    def test_delay_doubles_per_attempt(self):
        recovery, clock = make_recovery(max_retries=5, initial_delay=1.0)

        first = recovery.record_failure("t", "payload", RuntimeError("x"))
        assert first.next_retry == 101.0
        second = recovery.record_failure("t", "payload", RuntimeError("x"))
        assert second.next_retry == 102.0
        third = recovery.record_failure("t", "payload", RuntimeError("x"))
        assert third.next_retry == 104.0

    def test_delay_is_capped(self):
        recovery, clock = make_recovery(max_retries=10, initial_delay=10.0, max_delay=15.0)

        for _ in range(3):
            failed = recovery.record_failure("t", None, RuntimeError("x"))

        assert failed.next_retry == clock.now + 15.0

    def test_task_is_retryable_only_after_delay(self):
        recovery, clock = make_recovery(initial_delay=2.0)
        recovery.record_failure("t", None, RuntimeError("x"))

        assert recovery.should_retry("t") is False
        assert recovery.get_retryable_tasks() == []
        assert recovery.next_retry_in() == 2.0

        clock.now += 2.0
        assert recovery.should_retry("t") is True
        assert [f.id for f in recovery.get_retryable_tasks()] == ["t"]
        assert recovery.next_retry_in() == 0.0

    def test_next_retry_in_is_none_when_idle(self):
        recovery, _ = make_recovery()
        assert recovery.next_retry_in() is None


class TestDeadLetters:
    """Tests for the dead-letter list."""

    def test_exhausted_task_moves_to_dead_letters(self):
        recovery, _ = make_recovery(max_retries=2)
        recovery.record_failure("t", "payload", RuntimeError("one"))
        recovery.should_retry("t")
        recovery.record_failure("t", "payload", RuntimeError("two"))

        assert recovery.should_retry("t") is False
        assert recovery.is_pending("t") is False
        dead = recovery.get_dead_letter_queue()
        assert [d.id for d in dead] == ["t"]
        assert str(dead[0].error) == "two"
        assert recovery.get_stats() == {"active_failures": 0, "dead_letter_count": 1, "retryable_count": 0}

    def test_dead_letter_disabled_keeps_task_pending(self):
        recovery, _ = make_recovery(max_retries=1, enable_dead_letter_queue=False)
        recovery.record_failure("t", None, RuntimeError("x"))

        assert recovery.should_retry("t") is False
        assert recovery.is_pending("t") is True
        assert recovery.get_dead_letter_queue() == []

    def test_recovered_task_is_forgotten(self):
        recovery, _ = make_recovery()
        recovery.record_failure("t", None, RuntimeError("x"))

        recovery.mark_recovered("t")

        assert recovery.pending_tasks() == []
        assert recovery.should_retry("t") is False

    def test_clear_dead_letters(self):
        recovery, _ = make_recovery(max_retries=1)
        recovery.record_failure("t", None, RuntimeError("x"))
        recovery.should_retry("t")

        recovery.clear_dead_letter_queue()

        assert recovery.get_dead_letter_queue() == []
