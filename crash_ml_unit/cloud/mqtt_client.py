"""
MQTT crash alert publisher
Trigger sink: forwards confirmed crash decisions to the host backend
"""

import json
import logging
import time
from datetime import datetime, timezone

import paho.mqtt.client as mqtt  # pyright: ignore[reportMissingImports]

logger = logging.getLogger(__name__)

# Paho MQTT return codes for publish()
MQTT_RC_MEANINGS = {
    0: "Success (queued)",
    -1: "Connection lost / No connection (MQTT_ERR_NO_CONN)",
    1: "Protocol error",
    2: "Invalid client id",
    3: "Server unavailable",
    4: "Client not connected - connection lost or not yet established",
    5: "Message queue full",
}

# Safe publish retry config
MAX_RETRIES = 3
RECONNECT_WAIT_S = 2
BACKOFF_BASE_S = 1

CRASH_ALERT = "VEHICLE_CRASH_DETECTED"


class CrashAlertPublisher:
    def __init__(self, endpoint, topic, qos=1, port=8883, certs=None, node_id=None, client=None,
                 sleep=time.sleep):
        """
        Args:
            endpoint: MQTT broker host
            topic: Topic crash alerts are published on
            qos: MQTT quality of service
            port: Broker port
            certs: Optional {"ca", "cert", "key"} paths enabling TLS
            node_id: Identifier included in every alert
            client: Pre-built paho client (skips creation and connect)
            sleep: Sleep function used between retries
        """
        self.endpoint = endpoint
        self.topic = topic
        self.qos = qos
        self.node_id = node_id
        self.connected = False
        self._sleep = sleep

        if client is not None:
            self.client = client
            self.client.on_connect = self._on_connect
            self.client.on_disconnect = self._on_disconnect
            return

        logger.info("Initializing MQTT client: endpoint=%s:%d topic=%s", endpoint, port, topic)
        try:
            self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
            self.client.on_connect = self._on_connect
            self.client.on_disconnect = self._on_disconnect
            if certs:
                self.client.tls_set(
                    ca_certs=certs["ca"],
                    certfile=certs["cert"],
                    keyfile=certs["key"]
                )
                logger.debug("TLS configured: ca=%s cert=%s key=%s", certs.get("ca"), certs.get("cert"), certs.get("key"))
            self.client.connect(endpoint, port)
            self.client.loop_start()
            logger.info("MQTT client loop started")
        except Exception as e:
            logger.error("Failed to initialize MQTT client: %s", e, exc_info=True)
            raise

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code == 0:
            self.connected = True
            logger.info("MQTT on_connect: CONNECTED successfully")
        else:
            self.connected = False
            logger.error("MQTT on_connect: FAILED reason_code=%s", reason_code)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code=0, properties=None):
        self.connected = False
        if reason_code == 0:
            logger.info("MQTT on_disconnect: Clean disconnect")
        else:
            logger.warning("MQTT on_disconnect: Unexpected reason_code=%s", reason_code)

    def _is_connected(self):
        """Check connection state; prefer our flag, fallback to client.is_connected()."""
        return self.connected or getattr(self.client, "is_connected", lambda: False)()

    def build_payload(self, reason):
        return {
            "alert": CRASH_ALERT,
            "source": "CRASH_ML",
            "node_id": self.node_id,
            "reason": reason,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def publish_crash(self, reason):
        """Publish a crash alert; usable directly as the detector's on_crash_detected"""
        logger.warning("Publishing crash alert: %s", reason)
        return self.safe_publish(self.build_payload(reason))

    def safe_publish(self, payload):
        """
        Publish with reconnect and retry. Never raises.
        Returns True if published successfully, False if all retries failed.
        """
        try:
            payload_str = json.dumps(payload)
            logger.info("safe_publish: topic=%s qos=%d payload_len=%d", self.topic, self.qos, len(payload_str))
        except (TypeError, ValueError) as e:
            logger.error("safe_publish: payload serialization failed: %s", e)
            return False

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                if not self._is_connected():
                    logger.warning("safe_publish attempt %d/%d: not connected, reconnecting...", attempt, MAX_RETRIES)
                    try:
                        self.client.reconnect()
                        self._sleep(RECONNECT_WAIT_S)
                    except Exception as e:
                        logger.warning("Reconnect failed: %s", e)
                        if attempt < MAX_RETRIES:
                            self._backoff(attempt)
                        continue

                result = self.client.publish(self.topic, payload_str, qos=self.qos)
                if result.rc == 0:
                    logger.info("safe_publish: success mid=%s", result.mid)
                    return True
                rc_meaning = MQTT_RC_MEANINGS.get(result.rc, f"Unknown rc={result.rc}")
                logger.warning("safe_publish attempt %d/%d failed: rc=%s - %s", attempt, MAX_RETRIES, result.rc, rc_meaning)
            except Exception as e:
                logger.warning("safe_publish attempt %d/%d exception: %s", attempt, MAX_RETRIES, e, exc_info=True)

            if attempt < MAX_RETRIES:
                self._backoff(attempt)

        logger.error("safe_publish: all %d attempts failed", MAX_RETRIES)
        return False

    def _backoff(self, attempt):
        delay = BACKOFF_BASE_S * (2 ** (attempt - 1))
        logger.info("Retrying in %.1fs...", delay)
        self._sleep(delay)

    def close(self):
        try:
            self.client.loop_stop()
            self.client.disconnect()
            logger.debug("MQTT client disconnected")
        except Exception as e:
            logger.warning("MQTT close error: %s", e)
