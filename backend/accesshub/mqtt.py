# ==============================================================================
# == backend/accesshub/mqtt.py - MQTT <-> pipeline bridge                   ==
# ==============================================================================
#
# - Connects to the broker without blocking the FastAPI event loop.
# - Subscribes to <namespace>/+/+ and hands every message to the ingestion
#   pipeline on the event loop, in arrival order.
# - Publishes operator commands to <namespace>/<deviceId>/command.
# - Paho reconnects by itself; each (re)connect resubscribes and lets the
#   dispatcher push whatever commands are still queued.

import asyncio
import logging
import os
from typing import Any, Awaitable, Callable

import paho.mqtt.client as mqtt

from .config import Settings
from .monitoring import HealthMonitor

logger = logging.getLogger(__name__)

MessageCallback = Callable[[str, bytes], Any]
ConnectedCallback = Callable[[], Awaitable[Any]]


class MqttBridge:
    def __init__(
        self,
        settings: Settings,
        on_message: MessageCallback,
        monitor: HealthMonitor,
        on_connected: ConnectedCallback | None = None,
    ):
        self.settings = settings
        self.on_message_cb = on_message
        self.on_connected_cb = on_connected
        self.monitor = monitor
        self.loop: asyncio.AbstractEventLoop | None = None
        self._connected_once = False

        client_id = settings.MQTT_CLIENT_ID or f"accesshub-{os.getpid()}"
        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)
        if settings.MQTT_USERNAME:
            self.client.username_pw_set(settings.MQTT_USERNAME, settings.MQTT_PASSWORD)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message
        self.client.reconnect_delay_set(min_delay=1, max_delay=120)

    @property
    def subscription(self) -> str:
        return f"{self.settings.MQTT_NAMESPACE}/+/+"

    # --- PAHO CALLBACKS (network thread) ---

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            logger.error(f"Could not connect to MQTT broker: {reason_code}")
            return

        logger.info(f"✓ Connected to MQTT broker, subscribing to '{self.subscription}'")
        client.subscribe(self.subscription, qos=1)
        if self._connected_once:
            self.monitor.mqtt_reconnect_count += 1
        self._connected_once = True

        if self.on_connected_cb and self.loop and self.loop.is_running():
            asyncio.run_coroutine_threadsafe(self.on_connected_cb(), self.loop)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code != 0:
            logger.warning(f"MQTT disconnected unexpectedly ({reason_code}). Reconnecting...")
        else:
            logger.info("MQTT disconnected.")

    def _on_message(self, client, userdata, msg):
        parts = msg.topic.split("/")
        # Our own outgoing commands come back on the wildcard subscription
        if len(parts) >= 3 and parts[2] == self.settings.command_topic_suffix:
            return

        if self.loop and self.loop.is_running():
            self.loop.call_soon_threadsafe(self.on_message_cb, msg.topic, msg.payload)
        else:
            logger.warning(f"Event loop not ready, dropping MQTT message on '{msg.topic}'")

    # --- LIFECYCLE ---

    def start(self) -> None:
        """Start the network loop in paho's own thread. Call from the event loop."""
        self.loop = asyncio.get_running_loop()
        try:
            logger.info(f"Connecting to MQTT broker {self.settings.MQTT_HOST}:{self.settings.MQTT_PORT}...")
            self.client.connect_async(self.settings.MQTT_HOST, self.settings.MQTT_PORT, keepalive=self.settings.MQTT_KEEPALIVE)
            self.client.loop_start()
        except Exception as e:
            logger.error(f"Failed to start MQTT: {e}. Continuing without MQTT; commands fall back to pull.")
            self.monitor.record_error("mqtt", str(e))

    def stop(self) -> None:
        logger.info("Stopping MQTT...")
        try:
            self.client.loop_stop()
            self.client.disconnect()
        except Exception as e:
            logger.error(f"Error while stopping MQTT: {e}")

    def is_connected(self) -> bool:
        return self.client.is_connected()

    def publish_message(self, topic: str, payload: str, qos: int = 1) -> bool:
        if not self.client.is_connected():
            logger.warning(f"Cannot publish, MQTT not connected. Topic: {topic}")
            return False
        try:
            result = self.client.publish(topic, payload, qos=qos)
        except Exception as e:
            logger.error(f"Exception while publishing to '{topic}': {e}", exc_info=True)
            self.monitor.record_error("mqtt_publish", str(e))
            return False

        if result.rc == mqtt.MQTT_ERR_SUCCESS:
            logger.debug(f"✓ Published to '{topic}'")
            return True
        logger.error(f"Publish to '{topic}' failed: {mqtt.error_string(result.rc)}")
        self.monitor.record_error("mqtt_publish", mqtt.error_string(result.rc))
        return False
