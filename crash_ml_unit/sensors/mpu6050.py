"""
MPU6050 accelerometer interface
Provides 3-axis acceleration for the motion feature
"""

import logging
import time

try:
    import smbus  # pyright: ignore[reportMissingImports]
    I2C_AVAILABLE = True
except ImportError:
    I2C_AVAILABLE = False

from ..errors import SensorUnavailable
from ..ml.anomaly_types import AccelerationReading

logger = logging.getLogger(__name__)
if not I2C_AVAILABLE:
    logger.warning("smbus not available (running on non-Pi system), accelerometer disabled")

STANDARD_GRAVITY = 9.80665


class MPU6050:
    """Interface for MPU6050 IMU sensor (accelerometer only)"""

    # MPU6050 Registers
    PWR_MGMT_1 = 0x6B
    SMPLRT_DIV = 0x19
    CONFIG = 0x1A
    ACCEL_CONFIG = 0x1C
    ACCEL_XOUT_H = 0x3B

    # +/- 8g range: 4096 LSB/g
    ACCEL_SCALE = 4096.0

    def __init__(self, address=0x68, bus=1, i2c_bus=None):
        """
        Initialize MPU6050 sensor

        Args:
            address: I2C address of MPU6050 (default 0x68)
            bus: I2C bus number (default 1 for Pi)
            i2c_bus: Already opened SMBus-like object (skips opening `bus`)
        """
        self.address = address
        self.bus_num = bus
        self.i2c_bus = i2c_bus
        self.initialized = False

        if self.i2c_bus is None and I2C_AVAILABLE:
            try:
                self.i2c_bus = smbus.SMBus(bus)
            except OSError as e:
                logger.warning("Could not open I2C bus %d: %s", bus, e)

        if self.i2c_bus is not None:
            try:
                self._initialize_mpu6050()
                self.initialized = True
                logger.info("MPU6050 initialized: address=0x%02x bus=%d", address, bus)
            except OSError as e:
                logger.warning("Could not initialize MPU6050: %s", e)

    def _initialize_mpu6050(self):
        """Configure MPU6050 registers"""
        # Wake up the MPU6050 (sleep bit = 0)
        self.i2c_bus.write_byte_data(self.address, self.PWR_MGMT_1, 0)

        # Set sample rate to 1kHz / (1 + 7) = 125Hz
        self.i2c_bus.write_byte_data(self.address, self.SMPLRT_DIV, 7)

        # Configure accelerometer (+/- 8g)
        self.i2c_bus.write_byte_data(self.address, self.ACCEL_CONFIG, 0x10)

        # Configure filter (44Hz bandwidth)
        self.i2c_bus.write_byte_data(self.address, self.CONFIG, 0x03)

        time.sleep(0.1)  # Allow sensor to stabilize

    def _read_word_2c(self, addr):
        """Read 16-bit signed value from register"""
        high = self.i2c_bus.read_byte_data(self.address, addr)
        low = self.i2c_bus.read_byte_data(self.address, addr + 1)
        val = (high << 8) + low
        if val >= 0x8000:
            return -((65535 - val) + 1)
        return val

    def read_acceleration(self) -> AccelerationReading:
        """
        Read acceleration data

        Returns:
            AccelerationReading: x, y, z in m/s²

        Raises:
            SensorUnavailable: Sensor not initialized or I2C read failed
        """
        if not self.initialized:
            raise SensorUnavailable("MPU6050", "not initialized")

        try:
            raw_x = self._read_word_2c(self.ACCEL_XOUT_H)
            raw_y = self._read_word_2c(self.ACCEL_XOUT_H + 2)
            raw_z = self._read_word_2c(self.ACCEL_XOUT_H + 4)
        except OSError as e:
            raise SensorUnavailable("MPU6050", str(e)) from e

        return AccelerationReading(
            x=round(raw_x / self.ACCEL_SCALE * STANDARD_GRAVITY, 3),
            y=round(raw_y / self.ACCEL_SCALE * STANDARD_GRAVITY, 3),
            z=round(raw_z / self.ACCEL_SCALE * STANDARD_GRAVITY, 3),
        )

    def cleanup(self):
        """Cleanup I2C resources"""
        self.initialized = False
        close = getattr(self.i2c_bus, "close", None)
        if close is not None:
            close()
