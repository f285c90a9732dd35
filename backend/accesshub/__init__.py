"""Access-control telemetry hub: MQTT/HTTP/WebSocket ingestion for fingerprint terminals."""

__version__ = "1.0.0"
