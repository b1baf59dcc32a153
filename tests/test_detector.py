import threading
import time

import pytest

from crash_ml_unit.config import DetectionConfig
from crash_ml_unit.engine.detector import (
    SCORE_HISTORY_SIZE,
    CrashDetector,
    TickStatus,
    create_crash_detector,
)
from crash_ml_unit.engine.verifier import VerifierState
from crash_ml_unit.ml.anomaly_types import AccelerationReading
from crash_ml_unit.ml.isolation_forest import NEUTRAL_SCORE

from tests.helpers import ScriptedSpeed, StubForest


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


class Recorder:
    def __init__(self):
        self.crashes = []
        self.scores = []
        self.errors = []

    def kwargs(self):
        return {
            "on_crash_detected": self.crashes.append,
            "on_anomaly_score_update": self.scores.append,
            "on_error": self.errors.append,
        }


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def make_detector(recorder, still_acceleration, clock):
    created = []

    def factory(forest, speeds, config=None, acceleration=None, **overrides):
        callbacks = recorder.kwargs()
        callbacks.update(overrides)
        detector = CrashDetector(
            forest,
            ScriptedSpeed(speeds),
            acceleration or still_acceleration,
            config=config,
            clock=clock,
            **callbacks,
        )
        created.append(detector)
        return detector

    yield factory
    for detector in created:
        detector.close()


def test_low_speed_ticks_skip_scoring(make_detector, recorder) -> None:
    forest = StubForest([0.99])
    detector = make_detector(forest, [1.0, 0.5, 1.99])

    results = [detector.step() for _ in range(3)]

    assert all(r.status is TickStatus.SKIPPED for r in results)
    assert forest.calls == []
    assert recorder.scores == []
    assert detector.verifier.state is VerifierState.MONITORING
    assert detector.latest_score is None


def test_scored_tick_updates_history_and_callback(make_detector, recorder) -> None:
    detector = make_detector(StubForest([0.3]), [25.0])

    result = detector.step()

    assert result.status is TickStatus.NORMAL
    assert result.score == 0.3
    assert recorder.scores == [0.3]
    assert detector.anomaly_score_history == [0.3]


def test_score_history_is_bounded(make_detector) -> None:
    detector = make_detector(StubForest([0.1 * i for i in range(1, 10)] + [0.2]), [25.0])

    for _ in range(SCORE_HISTORY_SIZE + 5):
        detector.step()

    assert len(detector.anomaly_score_history) == SCORE_HISTORY_SIZE


def test_crash_is_confirmed_once(make_detector, recorder, clock) -> None:
    forest = StubForest([0.9] * 5 + [0.2])
    detector = make_detector(forest, [20.0, 15.0, 9.0, 5.0, 3.5, 2.5])

    results = []
    for _ in range(6):
        results.append(detector.step())
        clock.advance(1.0)

    assert [r.status for r in results[:5]] == [TickStatus.VERIFYING] * 5
    assert results[-1].status is TickStatus.CRASH_CONFIRMED
    assert recorder.crashes == ["Crash detected: anomaly=100%, speed=2.50m/s"]
    assert not detector.is_verifying


def test_impact_then_stop_confirms_crash(make_detector, recorder, clock) -> None:
    forest = StubForest([0.95])
    detector = make_detector(forest, [20.0, 15.0, 9.0, 4.0, 2.5, 1.0, 0.0, 0.0, 0.0])

    results = []
    for _ in range(9):
        results.append(detector.step())
        clock.advance(1.0)

    assert results[5].status is TickStatus.CRASH_CONFIRMED
    assert results[5].score is None
    assert recorder.crashes == ["Crash detected: anomaly=100%, speed=1.00m/s"]
    assert len(forest.calls) == 5
    assert [r.status for r in results[6:]] == [TickStatus.SKIPPED] * 3
    assert not detector.is_verifying


def test_low_speed_tick_leaves_open_window_untouched(make_detector, recorder, clock) -> None:
    forest = StubForest([0.95])
    detector = make_detector(forest, [10.0, 0.5])

    detector.step()
    window = detector.verifier.window
    clock.advance(1.0)
    result = detector.step()

    assert result.status is TickStatus.SKIPPED
    assert len(forest.calls) == 1
    assert detector.verifier.window is window
    assert window.anomaly_flags == [True]
    assert detector.verifier.state is VerifierState.VERIFYING


def test_window_never_outlives_verification_duration(make_detector, recorder, clock) -> None:
    detector = make_detector(StubForest([0.95, 0.95, 0.2]), [10.0] * 3 + [0.0] * 600 + [2.5])

    for _ in range(3):
        detector.step()
        clock.advance(1.0)

    decided = None
    for _ in range(600):
        result = detector.step()
        if result.status is TickStatus.ANOMALY_DISMISSED:
            decided = clock()
        assert detector.verifier.window is None or clock() - detector.verifier.window.start_time < 5.0
        clock.advance(1.0)
    last = detector.step()

    assert decided == 5.0
    assert last.status is TickStatus.NORMAL
    assert recorder.crashes == []


def test_anomaly_at_speed_is_dismissed(make_detector, recorder, clock) -> None:
    detector = make_detector(StubForest([0.9, 0.9, 0.2]), [30.0])

    results = []
    for _ in range(6):
        results.append(detector.step())
        clock.advance(1.0)

    assert results[-1].status is TickStatus.ANOMALY_DISMISSED
    assert results[-1].message == "Anomaly dismissed: anomaly=40%, speed=30.00m/s"
    assert recorder.crashes == []


def test_cycle_fault_is_reported_and_loop_survives(make_detector, recorder) -> None:
    class FlakyForest:
        def __init__(self):
            self.fail = True

        def score(self, feature):
            if self.fail:
                raise RuntimeError("model exploded")
            return 0.4

    forest = FlakyForest()
    detector = make_detector(forest, [25.0])

    failed = detector.step()
    forest.fail = False
    recovered = detector.step()

    assert failed.status is TickStatus.ERROR
    assert recorder.errors == ["Detection cycle failed: model exploded"]
    assert recovered.status is TickStatus.NORMAL


def test_sensor_errors_are_forwarded(make_detector, recorder) -> None:
    def broken_speed():
        raise OSError("no fix")

    detector = make_detector(StubForest(), [0.0])
    detector.sampler.speed_source = broken_speed

    result = detector.step()

    assert result.status is TickStatus.SKIPPED
    assert recorder.errors == ["Speed sensor unavailable: no fix"]


def test_callback_exception_does_not_break_cycle(make_detector) -> None:
    def bad_listener(score):
        raise ValueError("listener bug")

    detector = make_detector(StubForest([0.3]), [25.0], on_anomaly_score_update=bad_listener)

    first = detector.step()
    second = detector.step()

    assert first.status is TickStatus.NORMAL
    assert second.status is TickStatus.NORMAL


def test_reentrant_step_is_skipped(make_detector) -> None:
    nested = []
    holder = {}

    def listener(score):
        nested.append(holder["detector"].step())

    detector = make_detector(StubForest([0.3]), [25.0], on_anomaly_score_update=listener)
    holder["detector"] = detector

    assert detector.step().status is TickStatus.NORMAL
    assert [r.status for r in nested] == [TickStatus.SKIPPED]


def test_concurrent_step_is_skipped(make_detector) -> None:
    entered = threading.Event()
    release = threading.Event()

    def slow_accel():
        entered.set()
        release.wait(2.0)
        return AccelerationReading.zero()

    config = DetectionConfig(accel_timeout_ms=3000.0)
    detector = make_detector(StubForest([0.3]), [25.0], config=config, acceleration=slow_accel)

    worker = threading.Thread(target=detector.step)
    worker.start()
    try:
        assert entered.wait(2.0)
        result = detector.step()
    finally:
        release.set()
        worker.join(2.0)

    assert result.status is TickStatus.SKIPPED
    assert result.message == "previous cycle still running"


def test_start_and_stop_are_idempotent(make_detector, recorder) -> None:
    config = DetectionConfig(sampling_interval_ms=10.0)
    detector = make_detector(StubForest([0.3]), [25.0], config=config)

    detector.stop()
    detector.start()
    first_thread = detector._thread
    detector.start()

    assert detector._thread is first_thread
    assert detector.is_monitoring
    assert _wait_for(lambda: len(recorder.scores) >= 3)

    detector.stop()
    detector.stop()
    seen = len(recorder.scores)
    time.sleep(0.05)

    assert not detector.is_monitoring
    assert not first_thread.is_alive()
    assert len(recorder.scores) == seen


def test_stop_during_verification_discards_window(make_detector, recorder) -> None:
    config = DetectionConfig(sampling_interval_ms=10.0, verification_duration_seconds=60.0)
    detector = make_detector(StubForest([0.95]), [2.5], config=config)

    detector.start()
    assert _wait_for(lambda: detector.is_verifying)
    detector.stop()
    seen = len(recorder.scores)
    time.sleep(0.05)

    assert not detector.is_verifying
    assert recorder.crashes == []
    assert len(recorder.scores) == seen


def test_stop_from_callback_does_not_deadlock(make_detector) -> None:
    holder = {}
    stopped = threading.Event()

    def listener(score):
        holder["detector"].stop()
        stopped.set()

    config = DetectionConfig(sampling_interval_ms=10.0)
    detector = make_detector(StubForest([0.3]), [25.0], config=config, on_anomaly_score_update=listener)
    holder["detector"] = detector

    detector.start()
    assert stopped.wait(2.0)
    assert _wait_for(lambda: not detector.is_monitoring)


def test_start_clears_history(make_detector) -> None:
    detector = make_detector(StubForest([0.3]), [25.0])
    detector.step()
    assert detector.latest_score == 0.3

    detector.start()
    try:
        assert detector.anomaly_score_history == []
    finally:
        detector.stop()


def test_factory_builds_fitted_detector(still_acceleration) -> None:
    detector = create_crash_detector(lambda: 30.0, still_acceleration, seed=42)
    try:
        assert detector.forest.is_fitted
        assert detector.forest.tree_count == detector.config.num_trees
        assert not detector.is_monitoring
        result = detector.step()
    finally:
        detector.close()

    assert result.status in (TickStatus.NORMAL, TickStatus.VERIFYING)
    assert 0.0 <= result.score <= 1.0


def test_factory_instances_are_independent(still_acceleration) -> None:
    first = create_crash_detector(lambda: 30.0, still_acceleration, seed=1)
    second = create_crash_detector(lambda: 30.0, still_acceleration, seed=1)
    try:
        first.step()
        assert second.anomaly_score_history == []
        assert first.forest is not second.forest
    finally:
        first.close()
        second.close()


def test_factory_with_empty_corpus_scores_neutral(still_acceleration) -> None:
    detector = create_crash_detector(lambda: 30.0, still_acceleration, corpus=[], seed=0)
    try:
        result = detector.step()
    finally:
        detector.close()

    assert not detector.forest.is_fitted
    assert result.score == NEUTRAL_SCORE
