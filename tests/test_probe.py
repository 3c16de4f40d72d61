from __future__ import annotations

import pytest
from kubernetes.client import ApiException

from mongo_namespace_migrator.probe import ResourceProber

from fakes import SleepRecorder


def test_wait_for_with_predicate_already_true_returns_without_sleeping(sleeper: SleepRecorder) -> None:
    prober = ResourceProber(attempts=6, interval_seconds=30, sleep=sleeper)

    result = prober.wait_for(description="volume", read=lambda: "Available", predicate=lambda phase: phase == "Available")

    assert result.satisfied
    assert result.retries_used == 0
    assert result.last_observed == "Available"
    assert sleeper.calls == []


def test_wait_for_with_predicate_never_true_stops_after_configured_attempts(sleeper: SleepRecorder) -> None:
    prober = ResourceProber(attempts=6, interval_seconds=30, sleep=sleeper)
    reads: list[int] = []

    def _read() -> str:
        reads.append(1)
        return "Released"

    result = prober.wait_for(description="volume", read=_read, predicate=lambda phase: phase == "Available")

    assert not result.satisfied
    assert result.retries_used == 6
    assert result.last_observed == "Released"
    assert sleeper.calls == [30] * 6
    assert sleeper.total == 180
    assert len(reads) == 7


def test_wait_for_with_late_transition_returns_satisfied_after_partial_retries(sleeper: SleepRecorder) -> None:
    phases = iter(["Released", "Released", "Available"])
    prober = ResourceProber(attempts=6, interval_seconds=30, sleep=sleeper)

    result = prober.wait_for(description="volume", read=lambda: next(phases), predicate=lambda phase: phase == "Available")

    assert result.satisfied
    assert result.retries_used == 2
    assert sleeper.calls == [30, 30]


def test_wait_for_with_per_call_overrides_uses_overridden_budget(sleeper: SleepRecorder) -> None:
    prober = ResourceProber(attempts=6, interval_seconds=30, sleep=sleeper)

    result = prober.wait_for(
        description="pod",
        read=lambda: None,
        predicate=lambda pod: pod is not None,
        attempts=2,
        interval_seconds=5,
    )

    assert not result.satisfied
    assert sleeper.calls == [5, 5]


def test_wait_for_with_failing_read_propagates_error(sleeper: SleepRecorder) -> None:
    prober = ResourceProber(attempts=3, interval_seconds=1, sleep=sleeper)

    def _read() -> str:
        raise ApiException(status=500, reason="boom")

    with pytest.raises(ApiException):
        prober.wait_for(description="volume", read=_read, predicate=lambda _: True)


def test_resource_prober_with_non_positive_attempts_raises_value_error() -> None:
    with pytest.raises(ValueError, match="attempts"):
        ResourceProber(attempts=0)
    with pytest.raises(ValueError, match="interval_seconds"):
        ResourceProber(interval_seconds=-1)
