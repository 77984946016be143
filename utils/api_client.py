"""Python client for the CampusLearning REST API.

Mirrors the browser client's interceptor: every call carries the access
token, a 401 triggers a single token refresh followed by one retry, and
the public course catalog is cached for five minutes.
"""
import time
from threading import Lock

import requests

from utils.logging_utils import app_logger, log_info, log_warning

CATALOG_CACHE_SECONDS = 5 * 60
# Refresh responses that mean the refresh token itself was refused
SESSION_REJECTED_STATUSES = (400, 401)


class ApiError(Exception):
    def __init__(self, message, status_code=None, payload=None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload or {}


class SessionExpiredError(ApiError):
    """The refresh token was rejected; the caller has to log in again."""


class ApiClient:
    def __init__(self, base_url, session=None, timeout=30, clock=time.monotonic):
        self.base_url = base_url.rstrip('/')
        self.session = session or requests.Session()
        self.timeout = timeout
        self.clock = clock
        self.access_token = None
        self.refresh_token = None
        self.user = None
        self._refresh_lock = Lock()
        self._catalog_cache = {}

    # --- Session ---

    @property
    def is_authenticated(self):
        return self.access_token is not None

    def clear_session(self):
        self.access_token = None
        self.refresh_token = None
        self.user = None

    def login(self, email, password):
        data = self._send('POST', '/api/auth/login', json={'email': email, 'password': password})
        self.access_token = data['token']
        self.refresh_token = data.get('refreshToken')
        self.user = data.get('user')
        log_info(app_logger, "API client logged in", email=email)
        return self.user

    def logout(self):
        if self.access_token:
            try:
                self.request('POST', '/api/auth/logout', json={'refreshToken': self.refresh_token})
            except ApiError as e:
                log_warning(app_logger, "Logout request failed", error=str(e))
        self.clear_session()

    def refresh_access_token(self, stale_token=None):
        """Exchange the refresh token for a new access token.

        Only one refresh runs at a time. Callers that were waiting on the lock
        find the token already replaced and reuse it instead of refreshing again.
        """
        with self._refresh_lock:
            if stale_token is not None and self.access_token and self.access_token != stale_token:
                return self.access_token
            if not self.refresh_token:
                self.clear_session()
                raise SessionExpiredError('Session expired. Please log in again.', status_code=401)
            try:
                data = self._send('POST', '/api/auth/refresh-token', json={'refreshToken': self.refresh_token})
            except ApiError as e:
                if e.status_code not in SESSION_REJECTED_STATUSES:
                    # Tokens survive server errors
                    log_warning(app_logger, "Token refresh failed", status=e.status_code, error=str(e))
                    raise
                self.clear_session()
                raise SessionExpiredError('Session expired. Please log in again.', status_code=e.status_code)
            self.access_token = data['token']
            self.refresh_token = data.get('refreshToken', self.refresh_token)
            return self.access_token

    # --- Requests ---

    def _send(self, method, path, token=None, **kwargs):
        headers = dict(kwargs.pop('headers', None) or {})
        if token:
            headers['Authorization'] = f"Bearer {token}"
        response = self.session.request(method, f"{self.base_url}{path}", headers=headers,
                                        timeout=self.timeout, **kwargs)
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if response.status_code >= 400:
            message = payload.get('message') if isinstance(payload, dict) else None
            raise ApiError(message or f'HTTP {response.status_code}', status_code=response.status_code,
                           payload=payload)
        return payload

    def request(self, method, path, **kwargs):
        token = self.access_token
        try:
            return self._send(method, path, token=token, **kwargs)
        except ApiError as e:
            if e.status_code != 401 or not token:
                raise
        new_token = self.refresh_access_token(stale_token=token)
        return self._send(method, path, token=new_token, **kwargs)

    def get(self, path, **kwargs):
        return self.request('GET', path, **kwargs)

    def post(self, path, **kwargs):
        return self.request('POST', path, **kwargs)

    # --- Catalog ---

    def get_courses(self, force_refresh=False, **params):
        key = tuple(sorted(params.items()))
        cached = self._catalog_cache.get(key)
        now = self.clock()
        if cached and not force_refresh and now - cached[0] < CATALOG_CACHE_SECONDS:
            return cached[1]
        data = self.request('GET', '/api/courses', params=params or None)
        self._catalog_cache[key] = (now, data)
        return data

    def invalidate_catalog(self):
        self._catalog_cache.clear()

    def enroll_free(self, course_id):
        return self.post(f'/api/courses/{course_id}/enroll/free')

    def save_progress(self, lesson_id, time_spent=0, last_position=0):
        return self.post(f'/api/lessons/{lesson_id}/progress',
                         json={'timeSpent': time_spent, 'lastPosition': last_position})
