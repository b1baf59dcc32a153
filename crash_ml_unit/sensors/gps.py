"""
GPS speed source for the crash ML unit
Provides last-known ground speed (m/s) parsed from NMEA sentences
"""

import logging
import threading
import time
from typing import Optional

import pynmea2
import serial

logger = logging.getLogger(__name__)

KNOTS_TO_MPS = 0.514444

# Reader thread join timeout on cleanup
READER_JOIN_TIMEOUT_S = 2.0




class GPSSpeedSensor:
    """
    Background NMEA reader

    A daemon thread reads the serial port and keeps last_fix current;
    read_speed() only returns the cached value and never touches the port.
    """

    def __init__(self, port="/dev/ttyS0", baudrate=9600, max_age=5.0, serial_conn=None):
        """
        Args:
            port: Serial port of the GPS module
            baudrate: Serial baud rate
            max_age: Seconds after which a cached speed is treated as unavailable
            serial_conn: Already opened serial-like object (skips opening `port`)
        """
        self.port = port
        self.baudrate = baudrate
        self.max_age = max_age
        self.serial_conn = serial_conn
        self.initialized = False

        self.last_fix = {
            "speed": None,  # m/s
            "course": None,
            "timestamp": None,
            "satellites": 0,
            "fix_quality": 0,
        }
        self._fix_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._reader = None

        self._initialize()
        if self.initialized:
            self._start_reader()

    def _initialize(self):
        if self.serial_conn is not None:
            self.initialized = True
            return

        try:
            logger.debug("GPS init: port=%s baudrate=%d", self.port, self.baudrate)
            self.serial_conn = serial.Serial(
                self.port,
                self.baudrate,
                timeout=1
            )
            self.initialized = True
            time.sleep(1.0)
            logger.info("GPS initialized: port=%s", self.port)
        except (serial.SerialException, OSError, ValueError) as e:
            logger.warning("Could not initialize GPS: %s", e)
            self.initialized = False

    def _start_reader(self):
        self._reader = threading.Thread(
            target=self._read_loop,
            args=(self._stop_event,),
            name="gps-reader",
            daemon=True,
        )
        self._reader.start()

    def _read_loop(self, stop_event):
        lines_read = 0
        while not stop_event.is_set():
            try:
                raw = self.serial_conn.readline()
            except (serial.SerialException, OSError) as e:
                if stop_event.is_set():
                    break
                logger.error("GPS read error: %s", e, exc_info=True)
                stop_event.wait(1.0)
                continue

            if not raw:
                continue

            line = raw.decode("utf-8", errors="ignore").strip()
            if line.startswith("$"):
                self._update_from_nmea(line)
                lines_read += 1

        logger.debug("GPS reader exiting after %d NMEA lines", lines_read)

    def _update_from_nmea(self, line):
        try:
            msg = pynmea2.parse(line)

            # GGA -> fix quality, satellites
            if isinstance(msg, pynmea2.types.talker.GGA):
                with self._fix_lock:
                    self.last_fix["fix_quality"] = int(msg.gps_qual) if msg.gps_qual else 0
                    self.last_fix["satellites"] = int(msg.num_sats) if msg.num_sats else 0
                logger.debug("GPS GGA: sats=%d qual=%d", self.last_fix["satellites"], self.last_fix["fix_quality"])

            # RMC -> speed over ground (knots), course, validity
            elif isinstance(msg, pynmea2.types.talker.RMC):
                if msg.status == "A":
                    knots = float(msg.spd_over_grnd) if msg.spd_over_grnd else 0.0
                    course = float(msg.true_course) if msg.true_course else None
                    with self._fix_lock:
                        self.last_fix["speed"] = knots * KNOTS_TO_MPS
                        self.last_fix["course"] = course
                        self.last_fix["timestamp"] = time.time()
                    logger.debug("GPS RMC: speed=%.2f m/s course=%s", knots * KNOTS_TO_MPS, msg.true_course)
                else:
                    logger.debug("GPS RMC: no valid fix (status=%s)", msg.status)

        except pynmea2.ParseError as e:
            logger.debug("NMEA parse error: %s", e)
        except (ValueError, TypeError) as e:
            logger.debug("NMEA update error: %s", e)

    def read_speed(self) -> Optional[float]:
        """
        Last-known speed in m/s

        Returns:
            float | None: None when no valid RMC fix has been seen recently
        """
        with self._fix_lock:
            timestamp = self.last_fix["timestamp"]
            speed = self.last_fix["speed"]

        if timestamp is None:
            return None
        age = time.time() - timestamp
        if age > self.max_age:
            logger.debug("GPS speed is stale (%.1f s old)", age)
            return None
        return speed

    def has_fix(self):
        with self._fix_lock:
            return self.last_fix["fix_quality"] > 0 or self.last_fix["speed"] is not None

    def cleanup(self):
        self._stop_event.set()
        if self.serial_conn:
            try:
                self.serial_conn.close()
                logger.debug("GPS serial port closed")
            except (serial.SerialException, OSError) as e:
                logger.warning("GPS cleanup error: %s", e)
        if self._reader is not None:
            self._reader.join(READER_JOIN_TIMEOUT_S)
            self._reader = None
        self.initialized = False
