"""
Telemetry sampler
Reads speed and acceleration once per tick and derives the feature vector
"""

import math
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Callable, Optional

from ..ml.anomaly_types import AccelerationReading, FeatureVector

logger = logging.getLogger(__name__)

DEFAULT_ACCEL_TIMEOUT = 0.5  # seconds


class TelemetrySampler:
    """
    Produces one FeatureVector per tick from pull-based sensor sources

    Degrades instead of failing:
    - speed unavailable (None, NaN, negative, read error) -> 0.0
    - acceleration timeout or read error -> {0, 0, 0}
    """

    def __init__(self,
                 speed_source: Callable[[], Optional[float]],
                 acceleration_source: Callable[[], AccelerationReading],
                 accel_timeout: float = DEFAULT_ACCEL_TIMEOUT,
                 on_sensor_error: Optional[Callable[[str], None]] = None):
        """
        Args:
            speed_source: Returns last-known speed in m/s, or None
            acceleration_source: Returns the current AccelerationReading
            accel_timeout: Bounded wait for the acceleration read, in seconds
            on_sensor_error: Called with a message when a sensor read fails
        """
        self.speed_source = speed_source
        self.acceleration_source = acceleration_source
        self.accel_timeout = accel_timeout
        self.on_sensor_error = on_sensor_error

        self.previous_speed = 0.0

        # Single worker: a hung read delays later reads instead of piling up threads
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="accel-read")

    def sample_once(self) -> FeatureVector:
        speed = self._read_speed()
        accel = self._read_acceleration()

        motion = accel.magnitude
        delta_speed = speed - self.previous_speed
        self.previous_speed = speed

        feature = FeatureVector(speed=speed, motion=motion, delta_speed=delta_speed)
        logger.debug(
            "Sample: speed=%.2f m/s motion=%.2f m/s² delta_speed=%.2f (accel x=%.2f y=%.2f z=%.2f)",
            speed, motion, delta_speed, accel.x, accel.y, accel.z,
        )
        return feature

    def _read_speed(self) -> float:
        try:
            speed = self.speed_source()
            if speed is not None:
                speed = float(speed)
        except Exception as e:
            logger.warning("Speed read failed, using 0.0: %s", e)
            self._report(f"Speed sensor unavailable: {e}")
            return 0.0

        if speed is None:
            logger.debug("No speed reading available, using 0.0")
            return 0.0

        if not math.isfinite(speed) or speed < 0:
            logger.debug("Invalid speed reading %s, using 0.0", speed)
            return 0.0
        return speed

    def _read_acceleration(self) -> AccelerationReading:
        try:
            future = self._executor.submit(self.acceleration_source)
        except RuntimeError as e:
            # Executor already shut down
            logger.warning("Acceleration read not scheduled: %s", e)
            return AccelerationReading.zero()

        try:
            reading = future.result(timeout=self.accel_timeout)
        except FutureTimeoutError:
            logger.warning("Acceleration read timed out after %.3f s, using {0,0,0}", self.accel_timeout)
            future.cancel()
            return AccelerationReading.zero()
        except Exception as e:
            logger.warning("Acceleration read failed, using {0,0,0}: %s", e)
            self._report(f"Acceleration sensor unavailable: {e}")
            return AccelerationReading.zero()

        if reading is None:
            return AccelerationReading.zero()
        return reading

    def _report(self, message: str):
        if self.on_sensor_error is not None:
            self.on_sensor_error(message)

    def close(self):
        """Release the acceleration worker without waiting for a pending read"""
        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.debug("Telemetry sampler closed")
