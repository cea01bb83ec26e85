"""Tests for the delivery state machine, backoff schedule and deadline queue."""

import threading

import pytest

from tasksync.config import RetryPolicy
from tasksync.engine import DeadlineQueue, DeliveryState, compute_backoff, transition
from tasksync.model import DeliveryAttempt

from conftest import FakeClock


def make_attempt(state="idle"):
    return DeliveryAttempt("github", "ITEM-1", {"status": "done"}, 1, "k", state=state)


class TestTransitions:
    """Allowed and forbidden state changes."""

    @pytest.mark.parametrize("path", [
        ["pending", "in_flight", "committed"],
        ["pending", "in_flight", "backoff", "pending", "in_flight", "committed"],
        ["pending", "in_flight", "backoff", "dead_lettered"],
        ["pending", "in_flight", "dead_lettered"],
        ["pending", "canceled"],
        ["backoff", "canceled"],
    ])
    def test_legal_paths(self, path):
        attempt = make_attempt()
        for state in path:
            transition(attempt, DeliveryState(state))
        assert attempt.state == path[-1]

    @pytest.mark.parametrize("start,target", [
        ("idle", "in_flight"),
        ("pending", "committed"),
        ("backoff", "committed"),
        ("committed", "pending"),
        ("dead_lettered", "pending"),
        ("canceled", "pending"),
    ])
    def test_illegal(self, start, target):
        attempt = make_attempt(start)
        with pytest.raises(RuntimeError, match="Illegal delivery transition"):
            transition(attempt, DeliveryState(target))
        assert attempt.state == start


class TestComputeBackoff:
    """Exponential backoff with cap and jitter."""

    def test_exponential_without_jitter(self):
        policy = RetryPolicy(base_delay_s=2.0, max_delay_s=300.0, jitter_ratio=0.1)
        delays = [compute_backoff(n, policy, rng=lambda: 0.0) for n in range(1, 6)]
        assert delays == [2.0, 4.0, 8.0, 16.0, 32.0]

    def test_capped(self):
        policy = RetryPolicy(base_delay_s=2.0, max_delay_s=300.0, jitter_ratio=0.1)
        assert compute_backoff(20, policy, rng=lambda: 0.0) == 300.0
        assert compute_backoff(500, policy, rng=lambda: 0.0) == 300.0

    def test_jitter_only_shortens(self):
        policy = RetryPolicy(base_delay_s=2.0, max_delay_s=300.0, jitter_ratio=0.1)
        assert compute_backoff(3, policy, rng=lambda: 0.999) == pytest.approx(8.0 * (1 - 0.0999))
        for n in range(1, 12):
            delay = compute_backoff(n, policy)
            assert 0 < delay <= policy.max_delay_s

    def test_never_decreasing_with_worst_case_jitter(self):
        policy = RetryPolicy(base_delay_s=2.0, max_delay_s=300.0, jitter_ratio=0.1)
        low = [compute_backoff(n, policy, rng=lambda: 0.999) for n in range(1, 12)]
        high = [compute_backoff(n, policy, rng=lambda: 0.0) for n in range(1, 12)]
        # The shortest possible delay for n+1 is never below the longest for n, until capped
        for n in range(len(low) - 1):
            if high[n] < policy.max_delay_s:
                assert low[n + 1] > high[n]

    def test_attempt_count_starts_at_one(self):
        with pytest.raises(ValueError):
            compute_backoff(0, RetryPolicy())


class TestDeadlineQueue:
    """Tests for DeadlineQueue."""

    def test_pop_due_in_deadline_order(self):
        queue = DeadlineQueue(clock=FakeClock(100.0))
        queue.push(105.0, "late")
        queue.push(101.0, "early")
        queue.push(103.0, "middle")

        assert queue.pop_due(104.0) == ["early", "middle"]
        assert len(queue) == 1
        assert queue.next_deadline() == 105.0

    def test_ties_keep_insertion_order(self):
        queue = DeadlineQueue(clock=FakeClock(0.0))
        queue.push(1.0, "a")
        queue.push(1.0, "b")
        assert queue.pop_due(1.0) == ["a", "b"]

    def test_pop_due_uses_clock(self):
        clock = FakeClock(100.0)
        queue = DeadlineQueue(clock=clock)
        queue.push(110.0, "x")
        assert queue.pop_due() == []
        clock.advance(10)
        assert queue.pop_due() == ["x"]

    def test_wait_next_returns_due_entry(self):
        queue = DeadlineQueue(clock=FakeClock(100.0))
        queue.push(99.0, "x")
        assert queue.wait_next(timeout=0.1) == "x"

    def test_wait_next_times_out(self):
        queue = DeadlineQueue(clock=FakeClock(100.0))
        queue.push(200.0, "future")
        assert queue.wait_next(timeout=0.05) is None
        assert len(queue) == 1

    def test_push_wakes_waiter(self):
        queue = DeadlineQueue()
        results = []
        waiter = threading.Thread(target=lambda: results.append(queue.wait_next(timeout=5)))
        waiter.start()
        queue.push(0.0, "now")
        waiter.join(timeout=5)
        assert results == ["now"]

    def test_close_releases_waiters(self):
        queue = DeadlineQueue()
        results = []
        waiter = threading.Thread(target=lambda: results.append(queue.wait_next()))
        waiter.start()
        queue.close()
        waiter.join(timeout=5)
        assert results == [None]

    def test_reopen_after_close(self):
        queue = DeadlineQueue(clock=FakeClock(100.0))
        queue.push(99.0, "x")
        queue.close()
        assert queue.wait_next(timeout=0.05) is None

        queue.reopen()
        assert queue.wait_next(timeout=0.1) == "x"
