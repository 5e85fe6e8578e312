"""Circuit breaker state transitions."""

from datetime import timedelta

from pytest_pw_monitor.circuit_breaker import CircuitBreaker, CircuitState


def make_breaker(clock, **kwargs):
    kwargs.setdefault("threshold", 3)
    kwargs.setdefault("timeout", timedelta(minutes=5))
    return CircuitBreaker(clock=clock, **kwargs)


def test_opens_at_threshold(clock):
    breaker = make_breaker(clock)

    assert breaker.record_failure() is False
    assert breaker.record_failure() is False
    assert breaker.record_failure() is True

    assert breaker.state == CircuitState.OPEN
    assert breaker.allows_recovery is False
    assert breaker.next_attempt_time == clock.now + timedelta(minutes=5)
    assert breaker.last_failure_time == clock.now


def test_moves_to_half_open_after_timeout(clock):
    breaker = make_breaker(clock, threshold=1)
    breaker.record_failure()

    clock.advance(minutes=4, seconds=59)
    assert breaker.poll() is False
    assert breaker.state == CircuitState.OPEN

    clock.advance(seconds=1)
    assert breaker.poll() is True
    assert breaker.state == CircuitState.HALF_OPEN
    assert breaker.allows_recovery is True


def test_half_open_closes_after_successes(clock):
    breaker = make_breaker(clock, threshold=1, success_threshold=2)
    breaker.record_failure()
    clock.advance(minutes=5)
    breaker.poll()

    breaker.record_success()
    assert breaker.state == CircuitState.HALF_OPEN
    breaker.record_success()

    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0
    assert breaker.next_attempt_time is None


def test_half_open_failure_reopens(clock):
    breaker = make_breaker(clock, threshold=2)
    breaker.record_failure()
    breaker.record_failure()
    clock.advance(minutes=5)
    breaker.poll()

    assert breaker.record_failure() is True
    assert breaker.state == CircuitState.OPEN
    assert breaker.next_attempt_time == clock.now + timedelta(minutes=5)


def test_success_while_closed_decrements_failures(clock):
    breaker = make_breaker(clock)
    breaker.record_failure()
    breaker.record_failure()

    breaker.record_success()
    assert breaker.failure_count == 1
    breaker.record_success()
    breaker.record_success()
    assert breaker.failure_count == 0
    assert breaker.state == CircuitState.CLOSED


def test_failures_while_open_do_not_extend_timeout(clock):
    breaker = make_breaker(clock, threshold=1)
    breaker.record_failure()
    deadline = breaker.next_attempt_time

    clock.advance(minutes=1)
    assert breaker.record_failure() is False
    assert breaker.next_attempt_time == deadline


def test_to_dict(clock):
    breaker = make_breaker(clock)

    assert breaker.to_dict() == {
        "state": "closed",
        "failureCount": 0,
        "successCount": 0,
        "lastFailureTime": None,
        "nextAttemptTime": None,
    }
