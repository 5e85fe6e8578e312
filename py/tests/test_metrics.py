"""Ring buffer and rolling metric summaries."""

from datetime import timedelta

from pytest_pw_monitor.metrics import MetricsBuffer, PipelineMetrics, ResourceUsage


def run(clock, success=True, duration=60.0, **advance):
    if advance:
        clock.advance(**advance)
    return PipelineMetrics(timestamp=clock.now, duration=duration, success=success, stage="test")


def test_summary_over_recent_runs(clock):
    buffer = MetricsBuffer()
    buffer.record(run(clock, success=True, duration=100))
    buffer.record(run(clock, success=False, duration=300, minutes=1))
    buffer.record(run(clock, success=True, duration=200, minutes=1))
    buffer.record(run(clock, success=True, duration=400, minutes=1))

    summary = buffer.summarize(clock.now)

    assert summary.success_rate == 75.0
    assert summary.error_rate == 25.0
    assert summary.average_duration == 250.0
    assert summary.throughput == 4 / 24


def test_buffer_drops_oldest_beyond_capacity(clock):
    buffer = MetricsBuffer(capacity=3)
    for i in range(5):
        buffer.record(run(clock, success=i >= 2, seconds=1))

    assert len(buffer) == 3
    assert buffer.capacity == 3
    assert all(m.success for m in buffer)
    assert buffer.summarize(clock.now).success_rate == 100.0


def test_runs_outside_window_are_ignored(clock):
    buffer = MetricsBuffer(window=timedelta(hours=1))
    buffer.record(run(clock, success=False))
    buffer.record(run(clock, success=True, hours=2))

    summary = buffer.summarize(clock.now)

    assert summary.success_rate == 100.0
    assert summary.throughput == 1.0


def test_empty_window_has_no_summary(clock):
    buffer = MetricsBuffer(window=timedelta(hours=1))
    assert buffer.summarize(clock.now) is None

    buffer.record(run(clock))
    clock.advance(hours=2)
    assert buffer.summarize(clock.now) is None


def test_latest_returns_zero_sample_when_empty(clock):
    buffer = MetricsBuffer()
    empty = buffer.latest(clock.now)
    assert empty.timestamp == clock.now
    assert empty.duration == 0.0
    assert empty.success is False
    assert empty.resource_usage == ResourceUsage()

    buffer.record(run(clock, duration=12))
    assert buffer.latest(clock.now).duration == 12


def test_resource_usage_from_dict():
    usage = ResourceUsage.from_dict({"cpu": 95, "memory": "85.5"})

    assert usage == ResourceUsage(cpu=95.0, memory=85.5, disk=0.0)
    assert ResourceUsage.from_dict(None) == ResourceUsage()
