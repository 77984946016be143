from flask import request, jsonify

from utils.logging_utils import security_logger, log_warning

# Automated scanners that have no business talking to the course API
BLOCKED_USER_AGENTS = ('sqlmap', 'nikto', 'nessus', 'burp', 'acunetix', 'masscan')
# Checked against the decoded, lower-cased URL
BLOCKED_URL_PATTERNS = ('../', '..%2f', '..\\', 'union select', 'drop table', '<script', 'javascript:')

# Token and payment responses must never be cached by a proxy or the browser
NO_STORE_PREFIXES = ('/api/auth', '/api/payment', '/api/user/payment-history')

API_HEADERS = {
    'X-Frame-Options': 'DENY',
    'X-Content-Type-Options': 'nosniff',
    'Referrer-Policy': 'strict-origin-when-cross-origin',
    # Responses are JSON or file downloads, nothing is rendered
    'Content-Security-Policy': "default-src 'none'; frame-ancestors 'none'",
}

class SecurityMiddleware:
    def __init__(self, app=None):
        self.enforce_https = False
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        self.enforce_https = not app.config.get('DEBUG') and not app.config.get('TESTING')
        app.before_request(self.reject_hostile_requests)
        app.after_request(self.add_security_headers)
        app.extensions['security_middleware'] = self

    def reject_hostile_requests(self):
        reason = self.block_reason()
        if reason:
            log_warning(security_logger, "Request blocked", reason=reason, method=request.method,
                        path=request.path, ip=request.remote_addr)
            return jsonify({'success': False, 'message': 'Forbidden'}), 403

    def add_security_headers(self, response):
        for name, value in API_HEADERS.items():
            response.headers.setdefault(name, value)
        if request.path.startswith(NO_STORE_PREFIXES):
            response.headers['Cache-Control'] = 'no-store'
        if self.enforce_https:
            response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'
        return response

    def block_reason(self):
        """Name of the rule the current request trips, or None."""
        user_agent = request.headers.get('User-Agent', '').lower()
        if any(agent in user_agent for agent in BLOCKED_USER_AGENTS):
            return 'scanner user agent'

        url = request.url.lower().replace('+', ' ').replace('%20', ' ')
        if any(pattern in url for pattern in BLOCKED_URL_PATTERNS):
            return 'suspicious url'
        return None
