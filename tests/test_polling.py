"""Tests for the retry policy, poll loop and operation flow."""

import pytest

from flint.services.polling import FlowState, InvalidTransition, OperationFlow, RetryPolicy, poll
from flint.settings import Settings


class FakeTime:
    """sleep() advances clock() so timeouts can be exercised instantly."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def clock(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def sequence(*values):
    it = iter(values)

    async def fetch():
        value = next(it)
        if isinstance(value, Exception):
            raise value
        return value

    return fetch


class TestRetryPolicy:
    def test_defaults(self):
        policy = RetryPolicy()
        assert (policy.max_attempts, policy.interval, policy.timeout) == (30, 2.0, None)

    def test_from_settings(self):
        cfg = Settings(_env_file=None, poll_max_attempts=5, poll_interval_seconds=0.5, poll_timeout_seconds=3)
        assert RetryPolicy.from_settings(cfg) == RetryPolicy(max_attempts=5, interval=0.5, timeout=3)

    @pytest.mark.parametrize("kwargs", [{"max_attempts": 0}, {"interval": -1}])
    def test_rejects_bad_values(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class TestPoll:
    async def test_stops_when_done(self):
        t = FakeTime()
        result = await poll(sequence("pending", "pending", "done"), lambda v: v == "done",
                            RetryPolicy(max_attempts=10, interval=2), sleep=t.sleep, clock=t.clock)

        assert result.done
        assert result.value == "done"
        assert result.attempts == 3
        assert t.sleeps == [2, 2]

    async def test_runs_out_of_attempts(self):
        t = FakeTime()
        result = await poll(sequence(*["pending"] * 3), lambda v: False,
                            RetryPolicy(max_attempts=3, interval=1), sleep=t.sleep, clock=t.clock)

        assert not result.done
        assert not result.timed_out
        assert result.attempts == 3
        assert len(t.sleeps) == 2

    async def test_timeout_stops_before_attempts_run_out(self):
        t = FakeTime()
        result = await poll(sequence(*["pending"] * 30), lambda v: False,
                            RetryPolicy(max_attempts=30, interval=2, timeout=5), sleep=t.sleep, clock=t.clock)

        assert result.timed_out
        assert not result.done
        assert result.attempts == 3
        assert t.now <= 5

    async def test_errors_use_an_attempt_and_polling_continues(self):
        t = FakeTime()
        result = await poll(sequence(RuntimeError("502 from upstream"), "done"), lambda v: v == "done",
                            RetryPolicy(max_attempts=5, interval=0), sleep=t.sleep, clock=t.clock)

        assert result.done
        assert result.attempts == 2
        assert result.last_error is None

    async def test_last_error_kept_when_every_attempt_fails(self):
        t = FakeTime()
        result = await poll(sequence(RuntimeError("a"), RuntimeError("b")), lambda v: True,
                            RetryPolicy(max_attempts=2, interval=0), sleep=t.sleep, clock=t.clock)

        assert not result.done
        assert result.last_error == "RuntimeError: b"


class TestOperationFlow:
    def test_happy_path(self):
        flow = OperationFlow()
        for state in (FlowState.PREPARING, FlowState.CREATING, FlowState.PROCESSING, FlowState.COMPLETED):
            flow.advance(state)

        assert flow.state == FlowState.COMPLETED
        assert flow.finished
        assert [s for s, _ in flow.history] == [
            FlowState.IDLE, FlowState.PREPARING, FlowState.CREATING, FlowState.PROCESSING,
        ]

    def test_any_live_state_can_fail(self):
        flow = OperationFlow().advance(FlowState.PREPARING).fail("no funding account")
        assert flow.state == FlowState.FAILED
        assert flow.error == "no funding account"

    def test_skipping_a_state_is_rejected(self):
        with pytest.raises(InvalidTransition):
            OperationFlow().advance(FlowState.PROCESSING)

    def test_terminal_states_are_final(self):
        flow = OperationFlow().fail("boom")
        with pytest.raises(InvalidTransition):
            flow.advance(FlowState.PREPARING)

    def test_accepts_plain_strings(self):
        assert OperationFlow().advance("preparing").state == FlowState.PREPARING
