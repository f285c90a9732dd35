# ==============================================================================
# == backend/accesshub/monitoring.py - Health & failure sink                ==
# ==============================================================================

import logging
import threading
import time
from collections import Counter, deque
from datetime import datetime, timedelta
from typing import Any, Dict

import psutil

logger = logging.getLogger(__name__)

# Above either of these the hub reports itself as degraded
DEGRADED_ERROR_RATE = 5.0
DEGRADED_CPU_PERCENT = 80.0


class HealthMonitor:
    """
    Single sink for every failure the pipeline swallows, plus traffic counters.

    Ingestion never stops on a bad write, so this is where dropped records
    become visible to operators.
    """

    def __init__(self, error_log_size: int = 100, latency_window: int = 1000):
        self.start_time = time.time()
        self.request_count = 0
        self.error_count = 0
        self.websocket_connections = 0
        self.mqtt_reconnect_count = 0
        self.messages_by_type: Counter = Counter()
        self.errors_by_type: Counter = Counter()

        self._latencies_ms = deque(maxlen=latency_window)
        self._errors = deque(maxlen=error_log_size)
        self._lock = threading.Lock()

    # --- RECORDING (any thread) ---
    def record_request(self, duration_ms: float):
        with self._lock:
            self.request_count += 1
            self._latencies_ms.append(duration_ms)

    def record_message(self, event_type: str):
        with self._lock:
            self.messages_by_type[event_type] += 1

    def record_error(self, error_type: str, details: str):
        entry = {'timestamp': datetime.now().isoformat(), 'type': error_type, 'details': details}
        with self._lock:
            self.error_count += 1
            self.errors_by_type[error_type] += 1
            self._errors.append(entry)
        logger.error(f"[{error_type}] {details}")

    # --- REPORTING ---
    @staticmethod
    def _host_metrics() -> Dict[str, Any]:
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage('/')
        return {
            'cpu_percent': psutil.cpu_percent(interval=0.1),
            'memory_percent': memory.percent,
            'memory_available_mb': memory.available // (1024 * 1024),
            'disk_percent': disk.percent,
            'disk_free_gb': disk.free // (1024 ** 3),
        }

    @staticmethod
    def _latency_summary(samples: list) -> Dict[str, float]:
        if not samples:
            return {'avg_response_time_ms': 0.0, 'p95_response_time_ms': 0.0}
        ordered = sorted(samples)
        p95 = ordered[min(int(len(ordered) * 0.95), len(ordered) - 1)]
        return {
            'avg_response_time_ms': round(sum(ordered) / len(ordered), 2),
            'p95_response_time_ms': round(p95, 2),
        }

    def get_health_status(self) -> Dict[str, Any]:
        uptime = int(time.time() - self.start_time)
        host = self._host_metrics()

        with self._lock:
            samples = list(self._latencies_ms)
            requests, errors = self.request_count, self.error_count
            messages = dict(self.messages_by_type)
            errors_by_type = dict(self.errors_by_type)

        # Most failures come from device traffic, not HTTP requests
        traffic = requests + sum(messages.values())
        error_rate = errors / traffic * 100 if traffic else 0.0
        degraded = error_rate >= DEGRADED_ERROR_RATE or host['cpu_percent'] >= DEGRADED_CPU_PERCENT

        return {
            'status': 'degraded' if degraded else 'healthy',
            'uptime_seconds': uptime,
            'uptime_human': str(timedelta(seconds=uptime)),
            'system': host,
            'application': {
                'total_requests': requests,
                'total_messages': traffic - requests,
                'total_errors': errors,
                'error_rate_percent': round(error_rate, 2),
                **self._latency_summary(samples),
                'messages_by_type': messages,
                'errors_by_type': errors_by_type,
                'websocket_connections': self.websocket_connections,
                'mqtt_reconnect_count': self.mqtt_reconnect_count,
            },
            'timestamp': datetime.now().isoformat(),
        }

    def get_recent_errors(self, limit: int = 10) -> list:
        with self._lock:
            return list(self._errors)[-limit:]
