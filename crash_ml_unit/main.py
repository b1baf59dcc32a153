import time
import logging
from concurrent.futures import ThreadPoolExecutor

from .config import (
    NODE_ID,
    FOREST_SEED,
    GPS_SERIAL_PORT,
    GPS_BAUDRATE,
    MPU6050_I2C_ADDRESS,
    MPU6050_I2C_BUS,
    MQTT_ENDPOINT,
    MQTT_PORT,
    MQTT_TOPIC,
    MQTT_QOS,
    MQTT_CA_CERT,
    MQTT_DEVICE_CERT,
    MQTT_PRIVATE_KEY,
    load_detection_config,
    setup_logging,
)

from .sensors.mpu6050 import MPU6050
from .sensors.gps import GPSSpeedSensor

from .cloud.mqtt_client import CrashAlertPublisher

from .engine.detector import create_crash_detector


# Logging
logger = logging.getLogger(__name__)


# CRASH DETECTION UNIT

class CrashDetectionUnit:
    def __init__(self, config=None, mpu6050=None, gps_sensor=None, publisher=None):
        logger.info("Initializing Crash ML Unit...")
        self.config = config or load_detection_config()

        # Sensors
        logger.debug("Initializing sensors: MPU6050, GPSSpeedSensor")
        self.mpu6050 = mpu6050 or MPU6050(address=MPU6050_I2C_ADDRESS, bus=MPU6050_I2C_BUS)
        self.gps_sensor = gps_sensor or GPSSpeedSensor(port=GPS_SERIAL_PORT, baudrate=GPS_BAUDRATE)
        logger.debug("Sensors initialized")

        # Cloud
        self.publisher = publisher
        # Alerts are delivered off the detection thread: safe_publish may sleep through retries
        self._alert_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="crash-alert")
        if self.publisher is None and MQTT_ENDPOINT:
            certs = None
            if MQTT_CA_CERT and MQTT_DEVICE_CERT and MQTT_PRIVATE_KEY:
                certs = {"ca": MQTT_CA_CERT, "cert": MQTT_DEVICE_CERT, "key": MQTT_PRIVATE_KEY}
            self.publisher = CrashAlertPublisher(
                MQTT_ENDPOINT, MQTT_TOPIC, qos=MQTT_QOS, port=MQTT_PORT, certs=certs, node_id=NODE_ID,
            )
        elif self.publisher is None:
            logger.warning("MQTT_ENDPOINT not set: crash alerts will only be logged")

        # Detector
        self.crash_count = 0
        self.detector = create_crash_detector(
            self.gps_sensor.read_speed,
            self.mpu6050.read_acceleration,
            config=self.config,
            seed=FOREST_SEED,
            on_crash_detected=self.handle_crash,
            on_error=self.handle_error,
        )

        logger.info("System initialized successfully")

    # HANDLE CRASH

    def handle_crash(self, reason):
        self.crash_count += 1
        logger.warning("CRASH DETECTED | %s", reason)

        if self.publisher is None:
            logger.warning("No trigger sink configured, crash not forwarded")
            return

        try:
            self._alert_executor.submit(self._deliver_alert, reason)
        except RuntimeError as e:
            logger.error("Crash alert not scheduled: %s", e)

    def _deliver_alert(self, reason):
        if not self.publisher.publish_crash(reason):
            logger.error("Crash alert could not be delivered")

    def handle_error(self, message):
        logger.warning("Detector error: %s", message)

    # MAIN LOOP

    def run(self):
        self.detector.start()

        try:
            while True:
                time.sleep(1.0)
        except KeyboardInterrupt:
            logger.info("KeyboardInterrupt: shutting down gracefully (loop_count=%d)", self.detector.loop_count)
            self.cleanup()

    # CLEANUP

    def cleanup(self):
        logger.info("Cleaning up resources")
        self.detector.close()

        try:
            self.mpu6050.cleanup()
            logger.debug("MPU6050 cleanup done")
        except OSError as e:
            logger.warning("MPU6050 cleanup error: %s", e)

        self.gps_sensor.cleanup()

        # Let a pending alert finish before the client goes away
        self._alert_executor.shutdown(wait=True)
        if self.publisher is not None:
            self.publisher.close()
        logger.info("Resources cleaned up")


# ENTRY POINT
def main():
    setup_logging()
    logger.info("=" * 60)
    logger.info("Crash ML Unit | Isolation Forest Crash Detection")
    logger.info("Node: %s", NODE_ID)
    logger.info("=" * 60)

    unit = CrashDetectionUnit()
    unit.run()


if __name__ == "__main__":
    main()
