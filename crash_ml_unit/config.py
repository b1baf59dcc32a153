"""
Configuration for the crash ML unit
Detection thresholds, model parameters and sensor/cloud settings
Loads configuration from environment variables (.env file)
"""

import os
import logging
from dataclasses import dataclass, replace as dataclass_replace
from typing import Optional

from dotenv import load_dotenv  # pyright: ignore[reportMissingImports]

# Load environment variables from .env file
load_dotenv()


def get_bool(env_var: str, default: bool) -> bool:
    """Parse boolean from environment variable"""
    value = os.getenv(env_var, '').lower()
    if value in ('true', '1', 'yes', 'on'):
        return True
    elif value in ('false', '0', 'no', 'off'):
        return False
    return default


def get_float(env_var: str, default: float) -> float:
    """Parse float from environment variable, falling back on empty values"""
    value = os.getenv(env_var, '').strip()
    if not value:
        return default
    return float(value)


def get_optional_int(env_var: str) -> Optional[int]:
    value = os.getenv(env_var, '').strip()
    return int(value) if value else None


# Node identity
NODE_ID = os.getenv('NODE_ID', 'crash-ml-node-001')

# Sensor Configuration
# MPU6050_I2C_ADDRESS: 104 decimal = 0x68 hex
MPU6050_I2C_ADDRESS = int(os.getenv('MPU6050_I2C_ADDRESS', '104'))
MPU6050_I2C_BUS = int(os.getenv('MPU6050_I2C_BUS', '1'))
GPS_SERIAL_PORT = os.getenv('GPS_SERIAL_PORT', '/dev/ttyS0')
GPS_BAUDRATE = int(os.getenv('GPS_BAUDRATE', '9600'))

# Cloud Configuration (crash alert trigger sink)
MQTT_ENDPOINT = os.getenv('MQTT_ENDPOINT')
MQTT_PORT = int(os.getenv('MQTT_PORT', '8883'))
MQTT_TOPIC = os.getenv('MQTT_TOPIC', 'crash-ml/crash-alerts/node-001')
MQTT_QOS = int(os.getenv('MQTT_QOS', '1'))

# TLS certificates (optional, TLS is skipped when any is missing)
MQTT_CA_CERT = os.getenv('MQTT_CA_CERT')
MQTT_DEVICE_CERT = os.getenv('MQTT_DEVICE_CERT')
MQTT_PRIVATE_KEY = os.getenv('MQTT_PRIVATE_KEY')

# Debug Configuration
DEBUG_MODE = get_bool('DEBUG_MODE', False)
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def setup_logging(level=None):
    """
    Configure root logging for the unit

    Args:
        level: Explicit level name or number; defaults to LOG_LEVEL,
               or DEBUG when DEBUG_MODE is set
    """
    if level is None:
        level = 'DEBUG' if DEBUG_MODE else LOG_LEVEL
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger(__name__).debug("Logging configured: level=%s", logging.getLevelName(level))


@dataclass(frozen=True)
class DetectionConfig:
    """Thresholds and model parameters for the crash detection engine"""

    anomaly_score_threshold: float = 0.7
    verification_duration_seconds: float = 5.0
    sampling_interval_ms: float = 1000.0
    min_speed_for_crash_detection: float = 2.0  # m/s
    num_trees: int = 100
    subsample_size: int = 256
    max_tree_depth: int = 12
    low_speed_confirm_threshold: float = 3.0  # m/s
    anomaly_ratio_confirm_threshold: float = 0.6
    accel_timeout_ms: float = 500.0

    def __post_init__(self):
        if not 0.0 <= self.anomaly_score_threshold <= 1.0:
            raise ValueError("anomaly_score_threshold must be within [0, 1]")
        if not 0.0 <= self.anomaly_ratio_confirm_threshold <= 1.0:
            raise ValueError("anomaly_ratio_confirm_threshold must be within [0, 1]")
        if self.verification_duration_seconds <= 0:
            raise ValueError("verification_duration_seconds must be positive")
        if self.sampling_interval_ms <= 0:
            raise ValueError("sampling_interval_ms must be positive")
        if self.accel_timeout_ms <= 0:
            raise ValueError("accel_timeout_ms must be positive")
        if self.num_trees < 1 or self.subsample_size < 1 or self.max_tree_depth < 1:
            raise ValueError("num_trees, subsample_size and max_tree_depth must be >= 1")
        if self.min_speed_for_crash_detection < 0 or self.low_speed_confirm_threshold < 0:
            raise ValueError("speed thresholds must be non-negative")

    @property
    def sampling_interval_seconds(self) -> float:
        return self.sampling_interval_ms / 1000.0

    @property
    def accel_timeout_seconds(self) -> float:
        return self.accel_timeout_ms / 1000.0

    @property
    def expected_samples_in_window(self) -> float:
        """Number of ticks a full verification window is expected to hold"""
        return self.verification_duration_seconds * (1000.0 / self.sampling_interval_ms)

    def replace(self, **overrides) -> "DetectionConfig":
        return dataclass_replace(self, **overrides)


def load_detection_config(**overrides) -> DetectionConfig:
    """
    Build a DetectionConfig from environment variables

    Args:
        **overrides: Field values that take precedence over the environment

    Returns:
        DetectionConfig: Validated configuration
    """
    defaults = DetectionConfig()
    values = {
        'anomaly_score_threshold': get_float('ANOMALY_SCORE_THRESHOLD', defaults.anomaly_score_threshold),
        'verification_duration_seconds': get_float('VERIFICATION_DURATION_SECONDS', defaults.verification_duration_seconds),
        'sampling_interval_ms': get_float('SAMPLING_INTERVAL_MS', defaults.sampling_interval_ms),
        'min_speed_for_crash_detection': get_float('MIN_SPEED_FOR_CRASH_DETECTION', defaults.min_speed_for_crash_detection),
        'num_trees': int(os.getenv('NUM_TREES', str(defaults.num_trees))),
        'subsample_size': int(os.getenv('SUBSAMPLE_SIZE', str(defaults.subsample_size))),
        'max_tree_depth': int(os.getenv('MAX_TREE_DEPTH', str(defaults.max_tree_depth))),
        'low_speed_confirm_threshold': get_float('LOW_SPEED_CONFIRM_THRESHOLD', defaults.low_speed_confirm_threshold),
        'anomaly_ratio_confirm_threshold': get_float('ANOMALY_RATIO_CONFIRM_THRESHOLD', defaults.anomaly_ratio_confirm_threshold),
        'accel_timeout_ms': get_float('ACCEL_TIMEOUT_MS', defaults.accel_timeout_ms),
    }
    values.update(overrides)
    return DetectionConfig(**values)


# Seed for forest construction (unset = fresh entropy each start)
FOREST_SEED = get_optional_int('FOREST_SEED')
