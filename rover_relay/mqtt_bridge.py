"""
MQTT Bridge for rover communication.

Handles:
- Connecting to the broker (optionally TLS with username/password)
- Background network loop with automatic reconnect
- Fire-and-forget publishing of control payloads
"""

import asyncio
import logging
import time
from typing import Optional

import paho.mqtt.client as mqtt

from .errors import SinkUnavailable

logger = logging.getLogger(__name__)


class MQTTBridge:
    """
    MQTT client for the rover control topic.

    paho runs its network loop in a background thread and reconnects on
    its own; this class only tracks connection state and publishes.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 1883,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = False,
        connect_timeout: float = 10.0,
        keepalive: int = 60,
    ):
        """
        Initialize MQTT bridge.

        Args:
            host: MQTT broker host
            port: MQTT broker port
            username: Broker username (optional)
            password: Broker password (optional)
            use_tls: Connect with TLS using the system CA store
            connect_timeout: Seconds to wait for the first connection
            keepalive: MQTT keepalive interval in seconds
        """
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.connect_timeout = connect_timeout
        self.keepalive = keepalive

        # MQTT client
        self._client: Optional[mqtt.Client] = None
        self._connected = False
        self._running = False

        # Statistics
        self._messages_sent = 0
        self._messages_failed = 0
        self._last_send_time: Optional[float] = None

    def start(self) -> bool:
        """
        Start the MQTT bridge.

        Returns:
            True if connected within the timeout, False otherwise. The
            background loop keeps retrying either way.
        """
        if self._running:
            return self._connected

        try:
            client_id = f"rover_relay_{int(time.time())}"
            self._client = mqtt.Client(
                callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
                client_id=client_id,
            )
            if self.username:
                self._client.username_pw_set(self.username, self.password)
            if self.use_tls:
                self._client.tls_set()
            self._client.reconnect_delay_set(min_delay=1, max_delay=30)

            self._client.on_connect = self._on_connect
            self._client.on_disconnect = self._on_disconnect

            logger.info(f"Connecting to MQTT broker at {self.host}:{self.port}")
            self._client.connect_async(self.host, self.port, keepalive=self.keepalive)

            self._running = True
            self._client.loop_start()

            deadline = time.monotonic() + self.connect_timeout
            while not self._connected and time.monotonic() < deadline:
                time.sleep(0.1)

            if not self._connected:
                logger.warning("MQTT connection timeout - will keep retrying in background")
                return False

            return True

        except Exception as e:
            logger.error(f"Failed to start MQTT client: {e}")
            return False

    def stop(self) -> None:
        """Stop the MQTT bridge."""
        if not self._running:
            return

        self._running = False

        if self._client:
            self._client.disconnect()
            self._client.loop_stop()
            self._client = None

        self._connected = False
        logger.info("MQTT bridge stopped")

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        """MQTT connection callback."""
        if reason_code.is_failure:
            logger.error(f"MQTT connection failed: {reason_code}")
            return
        self._connected = True
        logger.info("Connected to MQTT broker")

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        """MQTT disconnection callback."""
        self._connected = False
        if reason_code.is_failure:
            logger.warning(f"Unexpected MQTT disconnection: {reason_code}, reconnecting")
        else:
            logger.info("Disconnected from MQTT broker")

    def publish(self, topic: str, payload: str) -> bool:
        """
        Publish a payload with QoS 0.

        Returns:
            True if the client accepted the message

        Raises:
            SinkUnavailable: If the broker is not connected
        """
        if not self._connected or not self._client:
            raise SinkUnavailable("MQTT broker not connected")

        try:
            info = self._client.publish(topic, payload, qos=0)
        except Exception as e:
            self._messages_failed += 1
            logger.error(f"Failed to publish to {topic}: {e}")
            return False

        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self._messages_failed += 1
            logger.error(f"Failed to publish to {topic}: {mqtt.error_string(info.rc)}")
            return False

        self._messages_sent += 1
        self._last_send_time = time.time()
        logger.debug(f"Published to {topic}: {payload}")
        return True

    @property
    def connected(self) -> bool:
        """Check if connected to MQTT broker."""
        return self._connected

    def get_stats(self) -> dict:
        """Get bridge statistics."""
        return {
            "connected": self._connected,
            "messages_sent": self._messages_sent,
            "messages_failed": self._messages_failed,
            "last_send_time": self._last_send_time,
        }


class AsyncMQTTBridge:
    """
    Async wrapper for MQTTBridge.

    Provides async-compatible methods for use with asyncio.
    """

    def __init__(self, **kwargs):
        """Initialize with same arguments as MQTTBridge."""
        self._bridge = MQTTBridge(**kwargs)

    async def start(self) -> bool:
        """Start the MQTT bridge."""
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._bridge.start)

    async def stop(self) -> None:
        """Stop the MQTT bridge."""
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self._bridge.stop)

    async def publish(self, topic: str, payload: str) -> bool:
        """Publish a payload; raises SinkUnavailable when disconnected."""
        if not self._bridge.connected:
            raise SinkUnavailable("MQTT broker not connected")
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._bridge.publish, topic, payload)

    @property
    def connected(self) -> bool:
        """Check if connected."""
        return self._bridge.connected

    def get_stats(self) -> dict:
        """Get statistics."""
        return self._bridge.get_stats()
