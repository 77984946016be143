import math
import time
from collections import deque
from functools import wraps
from threading import Lock

from flask import request, jsonify

from utils.logging_utils import security_logger, log_warning

# Named limits: (max requests, window in seconds)
DEFAULT_LIMITS = {
    'auth': (5, 60),     # login / register / refresh
    'api': (100, 60),    # catalog, enrollment and payment endpoints
}

class RateLimiter:
    """Sliding-window limiter kept in process memory, keyed by client IP and endpoint."""

    def __init__(self, limits=None, clock=time.monotonic):
        self.limits = dict(DEFAULT_LIMITS if limits is None else limits)
        self.enabled = True
        self.clock = clock
        self._hits = {}
        self._lock = Lock()

    def init_app(self, app):
        self.enabled = app.config.get('RATELIMIT_ENABLED', True)
        self.reset()

    def set_limit(self, name, max_requests, window_seconds):
        self.limits[name] = (max_requests, window_seconds)

    def reset(self):
        with self._lock:
            self._hits.clear()

    def hit(self, client_key, limit_name):
        """
        Record one request for client_key under the named limit.

        Returns the number of seconds to wait when the request is over the
        limit, or 0 when it is allowed.
        """
        if not self.enabled or limit_name not in self.limits:
            return 0

        max_requests, window = self.limits[limit_name]
        now = self.clock()
        with self._lock:
            hits = self._hits.setdefault((client_key, limit_name), deque())
            while hits and now - hits[0] >= window:
                hits.popleft()
            if len(hits) >= max_requests:
                return max(1, math.ceil(window - (now - hits[0])))
            hits.append(now)
            return 0

    def is_allowed(self, client_key, limit_name):
        return self.hit(client_key, limit_name) == 0

rate_limiter = RateLimiter()

def rate_limit(limit_name='api'):
    """Route decorator answering 429 once the caller exceeds the named limit."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            client_key = f"{request.remote_addr or 'unknown'}:{request.endpoint}"
            retry_after = rate_limiter.hit(client_key, limit_name)
            if retry_after:
                log_warning(security_logger, "Rate limit exceeded", limit=limit_name,
                            endpoint=request.endpoint, ip=request.remote_addr)
                response = jsonify({'success': False, 'message': 'Rate limit exceeded. Please try again later.'})
                response.headers['Retry-After'] = str(retry_after)
                return response, 429
            return f(*args, **kwargs)
        return decorated_function
    return decorator
