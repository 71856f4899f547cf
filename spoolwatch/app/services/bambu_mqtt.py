"""MQTT listener for Bambu Lab printer status reports.

Connects either to the printer itself (LAN mode) or to the Bambu cloud relay
and feeds every report on ``device/<serial>/report`` to a payload handler.
Reconnects are left to paho's network loop; ReconnectBackoff mirrors its
delay sequence so each attempt can be logged.
"""

import logging
import ssl
from dataclasses import dataclass
from typing import Callable

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)


@dataclass
class ReconnectBackoff:
    """Exponential reconnect delay: initial_delay, doubled per attempt, capped at max_delay."""

    initial_delay: float = 5.0
    max_delay: float = 60.0
    attempts: int = 0

    def next_delay(self) -> float:
        self.attempts += 1
        return min(self.initial_delay * 2 ** (self.attempts - 1), self.max_delay)

    def reset(self) -> None:
        self.attempts = 0


class BambuMQTTListener:
    """Subscribes to one printer's report topic and hands each payload to on_payload."""

    MQTT_PORT = 8883
    LOCAL_USERNAME = "bblp"

    def __init__(
        self,
        serial_number: str,
        on_payload: Callable[[bytes], None],
        ip_address: str = "",
        access_code: str = "",
        use_cloud: bool = False,
        cloud_server: str = "us.mqtt.bambulab.com",
        cloud_uid: str = "",
        cloud_token: str = "",
        reconnect_initial_delay: float = 5.0,
        reconnect_max_delay: float = 60.0,
    ):
        self.serial_number = serial_number
        self.on_payload = on_payload
        self.ip_address = ip_address
        self.access_code = access_code
        self.use_cloud = use_cloud
        self.cloud_server = cloud_server
        self.cloud_uid = cloud_uid
        self.cloud_token = cloud_token
        self.backoff = ReconnectBackoff(reconnect_initial_delay, reconnect_max_delay)
        self.connected: bool = False
        self._client: mqtt.Client | None = None
        self._stopping: bool = False

    @property
    def topic_subscribe(self) -> str:
        return f"device/{self.serial_number}/report"

    @property
    def broker_host(self) -> str:
        return self.cloud_server if self.use_cloud else self.ip_address

    @property
    def credentials(self) -> tuple[str, str]:
        if self.use_cloud:
            return f"u_{self.cloud_uid}", self.cloud_token
        return self.LOCAL_USERNAME, self.access_code

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            self.connected = False
            logger.warning("[%s] MQTT connection refused: %s", self.serial_number, reason_code)
            return

        self.connected = True
        self.backoff.reset()
        logger.info("[%s] Connected to MQTT broker %s", self.serial_number, self.broker_host)
        client.subscribe(self.topic_subscribe, qos=0)
        logger.info("[%s] Subscribed to topic: %s", self.serial_number, self.topic_subscribe)

    def _on_connect_fail(self, client, userdata):
        self._log_reconnect("MQTT connection failed")

    def _on_disconnect(self, client, userdata, disconnect_flags=None, reason_code=None, properties=None):
        self.connected = False
        if self._stopping:
            return
        self._log_reconnect(f"MQTT disconnected (rc={reason_code})")

    def _log_reconnect(self, reason: str) -> None:
        delay = self.backoff.next_delay()
        logger.warning(
            "[%s] %s, reconnecting (attempt %d, next delay ~%ds)",
            self.serial_number,
            reason,
            self.backoff.attempts,
            round(delay),
        )

    def _on_message(self, client, userdata, msg):
        try:
            self.on_payload(msg.payload)
        except Exception as e:
            logger.error("[%s] Error processing MQTT message: %s", self.serial_number, e, exc_info=True)

    def connect(self):
        """Start the background network loop; paho keeps reconnecting until disconnect()."""
        self._stopping = False
        self._client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=f"spoolwatch_{self.serial_number}",
            protocol=mqtt.MQTTv311,
        )

        username, password = self.credentials
        self._client.username_pw_set(username, password)
        self._client.on_connect = self._on_connect
        self._client.on_connect_fail = self._on_connect_fail
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

        # TLS setup - Bambu uses self-signed certs
        ssl_context = ssl.create_default_context()
        ssl_context.check_hostname = False
        ssl_context.verify_mode = ssl.CERT_NONE
        self._client.tls_set_context(ssl_context)

        self._client.reconnect_delay_set(
            min_delay=max(1, round(self.backoff.initial_delay)),
            max_delay=max(1, round(self.backoff.max_delay)),
        )

        logger.info(
            "[%s] Connecting to %s MQTT broker at mqtts://%s:%d (user: %s)",
            self.serial_number,
            "CLOUD" if self.use_cloud else "LOCAL",
            self.broker_host,
            self.MQTT_PORT,
            username,
        )
        self._client.connect_async(self.broker_host, self.MQTT_PORT, keepalive=30)
        self._client.loop_start()

    def disconnect(self):
        """Disconnect from the broker and stop the network loop."""
        if self._client:
            self._stopping = True
            self._client.disconnect()
            self._client.loop_stop()
            self._client = None
            self.connected = False
            logger.info("[%s] MQTT disconnected", self.serial_number)
