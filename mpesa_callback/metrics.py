import threading
import time


class RequestMetrics:
    """Process-wide request counters, created once per app."""

    def __init__(self):
        self._lock = threading.Lock()
        self.started_at = time.monotonic()
        self.total = 0
        self.success = 0
        self.errors = 0
        self.callbacks = 0

    def record_request(self, path: str, status_code: int) -> None:
        with self._lock:
            self.total += 1
            if 200 <= status_code < 400:
                self.success += 1
            else:
                self.errors += 1
            if path.endswith('/callback'):
                self.callbacks += 1

    def snapshot(self) -> dict:
        with self._lock:
            success_rate = (self.success / self.total * 100) if self.total else 100.0
            return {
                'uptime': round(time.monotonic() - self.started_at, 1),
                'requests': {
                    'total': self.total,
                    'success': self.success,
                    'errors': self.errors,
                    'callbacks': self.callbacks,
                },
                'successRate': round(success_rate, 2),
            }
