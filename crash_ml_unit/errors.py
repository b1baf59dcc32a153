"""
Error types for the crash ML unit
"""


class SensorUnavailable(Exception):
    """A sensor read failed or the sensor hardware is not available"""

    def __init__(self, sensor, detail=""):
        self.sensor = sensor
        self.detail = detail
        message = f"{sensor} unavailable"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
