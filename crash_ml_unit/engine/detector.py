"""
Crash detector
Periodic detection loop: sampler -> isolation forest -> verifier -> trigger

Workflow:
1. Every sampling interval, read speed and acceleration
2. Skip scoring when the vehicle is slower than the detection minimum; an
   open verification window is still closed once its duration has elapsed
3. Score the feature vector against the forest of normal driving
4. Feed the score into the verifier, which opens a verification window on
   the first anomaly and decides after the window has elapsed
5. Call on_crash_detected once when a crash is confirmed
"""

import time
import logging
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from ..config import DetectionConfig
from ..ml.anomaly_types import FeatureVector
from ..ml.isolation_forest import IsolationForest
from ..ml.training_data import default_training_corpus
from .sampler import TelemetrySampler
from .verifier import CrashVerifier, Decision

logger = logging.getLogger(__name__)

SCORE_HISTORY_SIZE = 10


class TickStatus(Enum):
    SKIPPED = "skipped"
    NORMAL = "normal"
    VERIFYING = "verifying"
    CRASH_CONFIRMED = "crash_confirmed"
    ANOMALY_DISMISSED = "anomaly_dismissed"
    ERROR = "error"


@dataclass(frozen=True)
class TickResult:
    """Result of one detection cycle, for callers that poll instead of registering callbacks"""

    status: TickStatus
    score: Optional[float] = None
    message: Optional[str] = None
    feature: Optional[FeatureVector] = None

    @classmethod
    def skipped(cls, message: str, feature: Optional[FeatureVector] = None) -> "TickResult":
        return cls(TickStatus.SKIPPED, message=message, feature=feature)


class CrashDetector:
    """
    Owns all mutable detection state: sampler, verifier and score history

    Cycles are strictly serialized: a tick that fires while the previous
    cycle is still running is skipped. stop() cancels the loop, discards
    any open verification window and no callback fires after it returns.
    """

    def __init__(self, forest: IsolationForest,
                 speed_source: Callable[[], Optional[float]],
                 acceleration_source: Callable,
                 config: Optional[DetectionConfig] = None,
                 on_crash_detected: Optional[Callable[[str], None]] = None,
                 on_anomaly_score_update: Optional[Callable[[float], None]] = None,
                 on_error: Optional[Callable[[str], None]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config or DetectionConfig()
        self.forest = forest
        self.on_crash_detected = on_crash_detected
        self.on_anomaly_score_update = on_anomaly_score_update
        self.on_error = on_error
        self.clock = clock

        self.sampler = TelemetrySampler(
            speed_source,
            acceleration_source,
            accel_timeout=self.config.accel_timeout_seconds,
            on_sensor_error=self._handle_sensor_error,
        )
        self.verifier = CrashVerifier(self.config, clock=clock)
        self._score_history = deque(maxlen=SCORE_HISTORY_SIZE)
        self.loop_count = 0

        # Serializes detection cycles (loop ticks and host step() calls)
        self._cycle_lock = threading.RLock()
        self._in_cycle = False
        self._cycle_generation: Optional[int] = None

        # Guards start/stop and callback emission; bumped generation invalidates older cycles
        self._state_lock = threading.RLock()
        self._generation = 0
        self._running = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        logger.debug("Crash detector created: config=%s", self.config)

    # STATE

    @property
    def is_monitoring(self) -> bool:
        return self._running

    @property
    def is_verifying(self) -> bool:
        return self.verifier.is_verifying

    @property
    def latest_score(self) -> Optional[float]:
        return self._score_history[-1] if self._score_history else None

    @property
    def anomaly_score_history(self) -> List[float]:
        return list(self._score_history)

    # LIFECYCLE

    def start(self):
        """Start periodic monitoring in a background thread (idempotent)"""
        with self._state_lock:
            if self._running:
                logger.info("Already monitoring")
                return

            self._running = True
            self._score_history.clear()
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run_loop,
                args=(self._stop_event, self._generation),
                name="crash-detector",
                daemon=True,
            )
            self._thread.start()

        logger.info(
            "Starting crash detection monitoring: interval=%.0f ms min_speed=%.1f m/s",
            self.config.sampling_interval_ms, self.config.min_speed_for_crash_detection,
        )

    def stop(self):
        """Stop monitoring and discard any open verification window (idempotent)"""
        with self._state_lock:
            if not self._running:
                logger.info("Not currently monitoring")
                return

            self._running = False
            self._generation += 1
            stop_event = self._stop_event
            thread = self._thread
            self._thread = None

        stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join()

        # Wait out any in-flight host step() before discarding the window
        with self._cycle_lock:
            self.verifier.reset()

        logger.info("Stopped crash detection monitoring (loop_count=%d)", self.loop_count)

    def close(self):
        self.stop()
        self.sampler.close()

    def _run_loop(self, stop_event: threading.Event, generation: int):
        interval = self.config.sampling_interval_seconds
        next_tick = time.monotonic() + interval

        while not stop_event.wait(max(0.0, next_tick - time.monotonic())):
            self._guarded_cycle(generation)

            next_tick += interval
            now = time.monotonic()
            if now > next_tick:
                missed = int((now - next_tick) // interval) + 1
                logger.debug("Detection cycle overran, skipping %d tick(s)", missed)
                next_tick += missed * interval

        logger.debug("Detection loop exiting")

    # DETECTION CYCLE

    def step(self) -> TickResult:
        """Run one detection cycle now and return its result"""
        return self._guarded_cycle(self._generation)

    def _guarded_cycle(self, generation: int) -> TickResult:
        if not self._cycle_lock.acquire(blocking=False):
            logger.debug("Previous detection cycle still running, skipping tick")
            return TickResult.skipped("previous cycle still running")

        try:
            # Same-thread re-entry (step() called from a callback)
            if self._in_cycle:
                return TickResult.skipped("previous cycle still running")

            self._in_cycle = True
            self._cycle_generation = generation
            try:
                return self._run_cycle(generation)
            finally:
                self._in_cycle = False
                self._cycle_generation = None
        finally:
            self._cycle_lock.release()

    def _run_cycle(self, generation: int) -> TickResult:
        self.loop_count += 1
        cfg = self.config

        try:
            feature = self.sampler.sample_once()

            # Only analyze if moving fast enough
            if feature.speed < cfg.min_speed_for_crash_detection:
                logger.debug("Speed too low for crash detection: %.2f m/s", feature.speed)
                if self.verifier.is_verifying:
                    # Not scored, but an elapsed window still has to be decided on time
                    verdict = self.verifier.expire(feature.speed, self.clock())
                    if verdict.is_final:
                        return self._verdict_result(verdict, None, feature, generation)
                return TickResult.skipped("speed below detection minimum", feature)

            score = self.forest.score(feature)
            self._score_history.append(score)
            logger.debug(
                "Speed: %.2f m/s | Motion: %.2f | dSpeed: %.2f | Anomaly score: %.3f",
                feature.speed, feature.motion, feature.delta_speed, score,
            )

            self._emit(self.on_anomaly_score_update, score, generation=generation)
            if not self._is_current(generation):
                return TickResult.skipped("detector stopped", feature)

            verdict = self.verifier.observe(score, feature.speed, self.clock())
            if verdict.is_final:
                return self._verdict_result(verdict, score, feature, generation)

            if self.verifier.is_verifying:
                return TickResult(TickStatus.VERIFYING, score, feature=feature)
            return TickResult(TickStatus.NORMAL, score, feature=feature)

        except Exception as e:
            logger.error("Error in detection cycle: %s", e, exc_info=True)
            message = f"Detection cycle failed: {e}"
            self._emit(self.on_error, message, generation=generation)
            return TickResult(TickStatus.ERROR, message=message)

    def _verdict_result(self, verdict, score, feature, generation: int) -> TickResult:
        if verdict.decision is Decision.CRASH_CONFIRMED:
            self._emit(self.on_crash_detected, verdict.reason, generation=generation)
            return TickResult(TickStatus.CRASH_CONFIRMED, score, verdict.reason, feature)

        message = f"Anomaly dismissed: anomaly={verdict.anomaly_ratio * 100:.0f}%, speed={verdict.speed:.2f}m/s"
        return TickResult(TickStatus.ANOMALY_DISMISSED, score, message, feature)

    # CALLBACKS

    def _is_current(self, generation: int) -> bool:
        with self._state_lock:
            return generation == self._generation

    def _emit(self, callback, *args, generation: int):
        if callback is None:
            return

        # Held during the call so stop() cannot return while a stale callback runs
        with self._state_lock:
            if generation != self._generation:
                logger.debug("Detector stopped, dropping %s", getattr(callback, "__name__", callback))
                return
            try:
                callback(*args)
            except Exception as e:
                logger.error("Callback %s raised: %s", getattr(callback, "__name__", callback), e, exc_info=True)

    def _handle_sensor_error(self, message: str):
        generation = self._cycle_generation
        if generation is None:
            generation = self._generation
        self._emit(self.on_error, message, generation=generation)


def create_crash_detector(speed_source: Callable[[], Optional[float]],
                          acceleration_source: Callable,
                          config: Optional[DetectionConfig] = None,
                          corpus=None,
                          seed=None,
                          on_crash_detected: Optional[Callable[[str], None]] = None,
                          on_anomaly_score_update: Optional[Callable[[float], None]] = None,
                          on_error: Optional[Callable[[str], None]] = None,
                          clock: Callable[[], float] = time.monotonic) -> CrashDetector:
    """
    Build an independent detector with a freshly fitted forest

    Args:
        speed_source: Returns last-known speed in m/s, or None
        acceleration_source: Returns the current AccelerationReading
        config: Detection thresholds and model parameters
        corpus: Normal driving samples (defaults to the built-in corpus)
        seed: Seed or numpy Generator for reproducible tree construction
        on_crash_detected: Trigger sink, called with the crash reason
        on_anomaly_score_update: Called with each computed score
        on_error: Called with a message on sensor or cycle faults
        clock: Time source in seconds for verification windows

    Returns:
        CrashDetector: Not yet started
    """
    config = config or DetectionConfig()
    if corpus is None:
        corpus = default_training_corpus()

    logger.info("Initializing isolation forest model...")
    forest = IsolationForest.from_config(config)
    try:
        forest.fit(corpus, rng=seed)
        logger.info("Model ready: %s", forest.model_info())
    except (TypeError, ValueError) as e:
        # Unfitted forest scores neutral, detection degrades instead of failing
        logger.error("Model initialization failed: %s", e, exc_info=True)
        if on_error is not None:
            on_error(f"Model initialization failed: {e}")

    return CrashDetector(
        forest,
        speed_source,
        acceleration_source,
        config=config,
        on_crash_detected=on_crash_detected,
        on_anomaly_score_update=on_anomaly_score_update,
        on_error=on_error,
        clock=clock,
    )
