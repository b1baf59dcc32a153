"""
Anomaly types
Feature and sensor reading types shared by the model and the detection engine
"""

from dataclasses import dataclass
from typing import Tuple

# Order matters: tree nodes store the index into this tuple
FEATURE_NAMES = ("speed", "motion", "delta_speed")


@dataclass(frozen=True)
class AccelerationReading:
    """Single 3-axis accelerometer sample in m/s²"""

    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    @property
    def magnitude(self) -> float:
        return (self.x ** 2 + self.y ** 2 + self.z ** 2) ** 0.5

    @classmethod
    def zero(cls) -> "AccelerationReading":
        return cls(0.0, 0.0, 0.0)


@dataclass(frozen=True)
class FeatureVector:
    """
    Per-tick telemetry snapshot fed to the isolation forest

    Attributes:
        speed: Current GPS speed in m/s
        motion: Magnitude of the accelerometer reading: sqrt(x² + y² + z²)
        delta_speed: Change of speed since the previous sample
    """

    speed: float
    motion: float
    delta_speed: float

    def as_tuple(self) -> Tuple[float, float, float]:
        return (float(self.speed), float(self.motion), float(self.delta_speed))
