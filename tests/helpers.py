"""Test doubles shared across the crash ML unit tests."""

from __future__ import annotations

from typing import Iterable, List, Optional

from crash_ml_unit.ml.anomaly_types import FeatureVector


class FakeClock:
    """Manually advanced monotonic clock (seconds)."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedSpeed:
    """Speed source replaying a fixed sequence, repeating the last value."""

    def __init__(self, speeds: Iterable[Optional[float]]) -> None:
        self.speeds = list(speeds)
        self.calls = 0

    def __call__(self) -> Optional[float]:
        index = min(self.calls, len(self.speeds) - 1)
        self.calls += 1
        return self.speeds[index]


class StubForest:
    """Forest double returning scripted scores and counting calls."""

    def __init__(self, scores: Iterable[float] = (0.5,)) -> None:
        self.scores = list(scores)
        self.calls: List[FeatureVector] = []

    def score(self, feature: FeatureVector) -> float:
        index = min(len(self.calls), len(self.scores) - 1)
        self.calls.append(feature)
        return self.scores[index]

