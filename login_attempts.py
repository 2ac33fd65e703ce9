"""
In-memory tracking of failed logins and refresh-token request rates.

State lives in the worker process: with several gunicorn workers each one
keeps its own counters.
"""
import logging
import threading
import time

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
BASE_LOCKOUT_SECONDS = 60


class LoginAttemptTracker:
    """Locks an address out after repeated failures, doubling the lockout each time"""

    def __init__(self, max_attempts=MAX_ATTEMPTS, base_lockout=BASE_LOCKOUT_SECONDS, clock=time.time):
        self.max_attempts = max_attempts
        self.base_lockout = base_lockout
        self.clock = clock
        self._entries = {}
        self._lock = threading.Lock()

    def _entry(self, key):
        return self._entries.setdefault(key, {'attempts': 0, 'locked_until': 0.0, 'lockout_count': 0})

    def lockout_remaining(self, key):
        """Seconds left on an active lockout, 0 when the address may try again"""
        with self._lock:
            entry = self._entries.get(key)
            if not entry:
                return 0
            remaining = entry['locked_until'] - self.clock()
            if remaining <= 0:
                return 0
            return int(remaining) + (1 if remaining % 1 else 0)

    def record_failure(self, key):
        """Register a failed attempt; returns the lockout length when one starts"""
        with self._lock:
            entry = self._entry(key)
            entry['attempts'] += 1
            if entry['attempts'] < self.max_attempts:
                return 0
            duration = self.base_lockout * (2 ** entry['lockout_count'])
            entry['locked_until'] = self.clock() + duration
            entry['lockout_count'] += 1
            entry['attempts'] = 0
        logger.warning("Login locked for %s for %s seconds", key, duration)
        return duration

    def attempts_left(self, key):
        with self._lock:
            entry = self._entries.get(key)
            return self.max_attempts - (entry['attempts'] if entry else 0)

    def reset(self, key):
        """Clear the attempt counter after a successful login, keeping the lockout history"""
        with self._lock:
            entry = self._entries.get(key)
            if entry:
                entry['attempts'] = 0
                entry['locked_until'] = 0.0

    def clear(self):
        with self._lock:
            self._entries.clear()


class RateLimiter:
    """Sliding-window request counter"""

    def __init__(self, max_requests, window_seconds, clock=time.time):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._hits = {}
        self._lock = threading.Lock()

    def hit(self, key):
        """Count a request; False when the key is over its limit"""
        now = self.clock()
        with self._lock:
            hits = [t for t in self._hits.get(key, []) if now - t < self.window_seconds]
            if len(hits) >= self.max_requests:
                self._hits[key] = hits
                return False
            hits.append(now)
            self._hits[key] = hits
            return True

    def clear(self):
        with self._lock:
            self._hits.clear()


login_attempts = LoginAttemptTracker()
refresh_limiter = RateLimiter(max_requests=10, window_seconds=15 * 60)
