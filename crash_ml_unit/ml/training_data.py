"""
Built-in normal driving corpus
Typical safe driving patterns used to fit the forest when no corpus is supplied
"""

from typing import List

from .anomaly_types import FeatureVector

# (speed m/s, motion m/s², delta_speed m/s)
_NORMAL_DRIVING = (
    # Steady cruising at different speeds
    (10, 0.5, 0), (15, 0.6, 0.1), (20, 0.7, 0), (25, 0.8, -0.1), (30, 1.0, 0),
    (35, 1.2, 0.2), (40, 1.5, 0), (45, 1.8, -0.1), (50, 2.0, 0), (55, 2.2, 0.1),

    # Smooth acceleration
    (5, 0.8, 1.0), (10, 1.2, 0.8), (15, 1.5, 0.6), (20, 1.8, 0.4), (25, 2.0, 0.3), (30, 2.2, 0.2),

    # Smooth deceleration
    (50, 2.0, -0.5), (40, 1.8, -0.8), (30, 1.5, -0.9), (20, 1.2, -0.8), (10, 0.8, -0.6), (5, 0.5, -0.4),

    # Turns and gentle maneuvers
    (25, 3.5, -0.2),  # left turn
    (25, 3.2, 0.1),  # right turn
    (35, 4.0, 0),  # sharper turn
    (15, 2.5, 0.3),  # low speed turn

    # Normal driving variations
    (12, 0.7, 0.05), (18, 0.9, -0.05), (28, 1.1, 0.15), (32, 1.3, -0.1), (38, 1.6, 0.08),
    (42, 1.7, -0.12), (48, 1.95, 0.05), (22, 1.4, 0.3), (26, 3.8, -0.15), (16, 2.2, 0.2),
    (11, 0.65, 0), (19, 0.95, -0.08), (31, 1.25, 0.12), (37, 1.55, -0.1), (44, 1.75, 0.1),
    (24, 1.05, 0.2), (17, 2.4, -0.2), (21, 1.2, 0.25), (29, 1.35, -0.15), (33, 3.6, 0.05),
)


def default_training_corpus() -> List[FeatureVector]:
    """Return a fresh copy of the built-in normal driving samples"""
    return [FeatureVector(float(s), float(m), float(d)) for s, m, d in _NORMAL_DRIVING]
