from __future__ import annotations

from typing import List

import pytest

from crash_ml_unit.config import DetectionConfig
from crash_ml_unit.ml.anomaly_types import AccelerationReading, FeatureVector

from tests.helpers import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> DetectionConfig:
    return DetectionConfig()


@pytest.fixture
def still_acceleration():
    return lambda: AccelerationReading(0.3, 0.4, 0.0)


@pytest.fixture
def normal_corpus() -> List[FeatureVector]:
    corpus = []
    for index in range(60):
        speed = 10.0 + (index * 40.0 / 59.0)
        motion = 0.5 + (index % 12) * (1.7 / 11.0)
        delta = ((index % 7) - 3) * 0.1
        corpus.append(FeatureVector(speed, motion, delta))
    return corpus
