# backend/accesshub/device_websocket.py
import asyncio
import logging
from typing import Dict

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class DeviceConnectionManager:
    """Devices that keep a WebSocket open; used to push commands when MQTT is down."""

    def __init__(self):
        # device_id -> WebSocket
        self.active_connections: Dict[str, WebSocket] = {}
        self._lock = asyncio.Lock()

    async def connect(self, device_id: str, websocket: WebSocket):
        await websocket.accept()
        async with self._lock:
            self.active_connections[device_id] = websocket
        logger.info(f"Device '{device_id}' connected via WebSocket.")

    def disconnect(self, device_id: str, websocket: WebSocket | None = None):
        current = self.active_connections.get(device_id)
        # A reconnect may already have replaced this socket
        if current is not None and (websocket is None or current is websocket):
            del self.active_connections[device_id]
            logger.info(f"Device '{device_id}' disconnected from WebSocket.")

    def is_connected(self, device_id: str) -> bool:
        return device_id in self.active_connections

    async def send_personal_message(self, device_id: str, message: dict) -> bool:
        websocket = self.active_connections.get(device_id)
        if websocket is None:
            return False
        try:
            await websocket.send_json(message)
            logger.info(f"Sent command to device '{device_id}' via WebSocket fallback.")
            return True
        except Exception as e:
            logger.warning(f"Could not send to device '{device_id}' via WebSocket: {e}")
            self.disconnect(device_id, websocket)
            return False
