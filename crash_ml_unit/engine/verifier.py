"""
Crash verifier
State machine that turns per-tick anomaly scores into crash decisions

A burst of anomalous readings alone (hard braking, potholes) is common in
normal driving. A crash is confirmed only when most of a verification window
was anomalous AND the vehicle has come down to a near stop.
"""

import time
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from ..config import DetectionConfig

logger = logging.getLogger(__name__)


class VerifierState(Enum):
    MONITORING = "monitoring"
    VERIFYING = "verifying"


class Decision(Enum):
    NONE = "none"
    WINDOW_OPENED = "window_opened"
    CRASH_CONFIRMED = "crash_confirmed"
    ANOMALY_DISMISSED = "anomaly_dismissed"


@dataclass
class VerificationWindow:
    start_time: float
    anomaly_flags: List[bool] = field(default_factory=list)
    active: bool = True

    def elapsed(self, now: float) -> float:
        return now - self.start_time


@dataclass(frozen=True)
class Verdict:
    """Outcome of one observed tick"""

    decision: Decision
    speed: float
    anomaly_ratio: Optional[float] = None
    reason: Optional[str] = None

    @property
    def is_final(self) -> bool:
        return self.decision in (Decision.CRASH_CONFIRMED, Decision.ANOMALY_DISMISSED)


class CrashVerifier:
    """
    MONITORING -> VERIFYING on the first anomalous tick
    VERIFYING -> MONITORING once the window duration has elapsed,
    with either CRASH_CONFIRMED or ANOMALY_DISMISSED
    """

    def __init__(self, config: Optional[DetectionConfig] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config or DetectionConfig()
        self.clock = clock
        self._window: Optional[VerificationWindow] = None

    @property
    def state(self) -> VerifierState:
        if self._window is not None and self._window.active:
            return VerifierState.VERIFYING
        return VerifierState.MONITORING

    @property
    def is_verifying(self) -> bool:
        return self.state is VerifierState.VERIFYING

    @property
    def window(self) -> Optional[VerificationWindow]:
        return self._window

    @property
    def expected_samples_in_window(self) -> float:
        return self.config.expected_samples_in_window

    def observe(self, score: float, speed: float, now: Optional[float] = None) -> Verdict:
        """
        Feed one scored tick into the state machine

        Args:
            score: Anomaly score of this tick
            speed: Current speed in m/s
            now: Tick timestamp in seconds (defaults to the verifier clock)

        Returns:
            Verdict: Decision taken on this tick
        """
        if now is None:
            now = self.clock()

        cfg = self.config
        decision = Decision.NONE

        if score > cfg.anomaly_score_threshold:
            if self._window is None:
                self._window = VerificationWindow(start_time=now)
                decision = Decision.WINDOW_OPENED
                logger.warning(
                    "Anomaly detected (score=%.3f > %.2f): starting %.1f s verification window",
                    score, cfg.anomaly_score_threshold, cfg.verification_duration_seconds,
                )
            else:
                logger.warning("Anomaly detected during verification: score=%.3f", score)
            self._window.anomaly_flags.append(True)
        # Non-anomalous ticks add nothing and remove nothing

        if self._expired(now):
            return self._decide(speed)

        return Verdict(decision=decision, speed=speed)

    def expire(self, speed: float, now: Optional[float] = None) -> Verdict:
        """
        Close the open window if its duration has elapsed, without adding a flag

        Used for ticks that are not scored (vehicle below the detection
        minimum) so a window never outlives verification_duration_seconds.
        """
        if now is None:
            now = self.clock()
        if self._expired(now):
            return self._decide(speed)
        return Verdict(decision=Decision.NONE, speed=speed)

    def _expired(self, now: float) -> bool:
        window = self._window
        return window is not None and window.elapsed(now) >= self.config.verification_duration_seconds

    def _decide(self, speed: float) -> Verdict:
        cfg = self.config
        window = self._window
        flag_count = len(window.anomaly_flags)

        # The closing tick may itself be flagged, so the count can exceed the expectation
        anomaly_ratio = min(1.0, flag_count / cfg.expected_samples_in_window)

        logger.info(
            "Verification complete: anomalies=%d/%.0f (%.0f%%) speed=%.2f m/s",
            flag_count, cfg.expected_samples_in_window, anomaly_ratio * 100, speed,
        )

        if anomaly_ratio >= cfg.anomaly_ratio_confirm_threshold and speed < cfg.low_speed_confirm_threshold:
            reason = f"Crash detected: anomaly={anomaly_ratio * 100:.0f}%, speed={speed:.2f}m/s"
            logger.error("CRASH DETECTED: %s", reason)
            verdict = Verdict(Decision.CRASH_CONFIRMED, speed, anomaly_ratio, reason)
        else:
            logger.info("Verification did not meet crash criteria, anomaly dismissed")
            verdict = Verdict(Decision.ANOMALY_DISMISSED, speed, anomaly_ratio)

        self._close_window()
        return verdict

    def _close_window(self):
        if self._window is not None:
            self._window.active = False
            self._window.anomaly_flags.clear()
        self._window = None

    def reset(self):
        """Discard any open window without emitting a decision"""
        if self._window is not None:
            logger.info("Discarding open verification window (%d flags)", len(self._window.anomaly_flags))
        self._close_window()
