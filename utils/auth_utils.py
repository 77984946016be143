"""JWT issuing/verification and the route decorators built on it."""
import uuid
from datetime import datetime, timedelta, timezone
from functools import wraps

from flask import current_app, g, jsonify, request
from jose import ExpiredSignatureError, JWTError, jwt

from utils.logging_utils import security_logger, log_warning

ALGORITHM = "HS256"

ROLE_STUDENT = 'STUDENT'
ROLE_TEACHER = 'TEACHER'
ROLE_ADMIN = 'ADMIN'
ROLES = (ROLE_STUDENT, ROLE_TEACHER, ROLE_ADMIN)

class TokenError(Exception):
    """Raised when a token cannot be accepted."""

def _encode(claims, expires_delta):
    now = datetime.now(timezone.utc)
    claims = dict(claims)
    claims.update({'iat': now, 'exp': now + expires_delta})
    return jwt.encode(claims, current_app.config['JWT_SECRET'], algorithm=ALGORITHM)

def create_access_token(user_id, role):
    minutes = current_app.config['JWT_ACCESS_EXPIRES_MINUTES']
    return _encode({'sub': str(user_id), 'role': role, 'type': 'access'}, timedelta(minutes=minutes))

def create_refresh_token(user_id, role):
    days = current_app.config['JWT_REFRESH_EXPIRES_DAYS']
    claims = {'sub': str(user_id), 'role': role, 'type': 'refresh', 'jti': uuid.uuid4().hex}
    return _encode(claims, timedelta(days=days))

def decode_token(token, expected_type='access'):
    """Decode a token and check its type; returns the claims dict."""
    try:
        claims = jwt.decode(token, current_app.config['JWT_SECRET'], algorithms=[ALGORITHM])
    except ExpiredSignatureError:
        raise TokenError('Token has expired')
    except JWTError:
        raise TokenError('Invalid token')
    if claims.get('type') != expected_type or not claims.get('sub'):
        raise TokenError('Invalid token type')
    return claims

def _bearer_token():
    auth_header = request.headers.get('Authorization', '')
    if not auth_header:
        return None
    parts = auth_header.split(' ')
    if len(parts) != 2 or parts[0].lower() != 'bearer' or not parts[1]:
        raise TokenError('Invalid token format')
    return parts[1]

def _load_user(token):
    claims = decode_token(token, 'access')
    try:
        user_id = int(claims['sub'])
    except (TypeError, ValueError):
        raise TokenError('Invalid token subject')
    return {'id': user_id, 'role': claims.get('role', ROLE_STUDENT)}

def _unauthorized(message):
    log_warning(security_logger, "Authentication rejected", reason=message, path=request.path)
    return jsonify({'success': False, 'message': message}), 401

def token_required(f):
    """Decorator to require a valid access token; sets g.current_user."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            token = _bearer_token()
            if not token:
                return _unauthorized('Authentication required')
            g.current_user = _load_user(token)
        except TokenError as e:
            return _unauthorized(str(e))
        return f(*args, **kwargs)
    return decorated_function

def optional_token(f):
    """Attach g.current_user when a token is sent; anonymous requests pass with None."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        g.current_user = None
        try:
            token = _bearer_token()
            if token:
                g.current_user = _load_user(token)
        except TokenError as e:
            return _unauthorized(str(e))
        return f(*args, **kwargs)
    return decorated_function

def roles_required(*roles):
    """Decorator to require a valid token whose role is one of roles."""
    def decorator(f):
        @wraps(f)
        @token_required
        def decorated_function(*args, **kwargs):
            if g.current_user['role'] not in roles:
                log_warning(security_logger, "Role check failed", user_id=g.current_user['id'],
                            role=g.current_user['role'], required=roles, path=request.path)
                return jsonify({'success': False, 'message': 'You do not have permission to perform this action'}), 403
            return f(*args, **kwargs)
        return decorated_function
    return decorator

def serialize_user(row):
    """User row as returned by the API (never includes the password hash)."""
    if row is None:
        return None
    user = dict(row)
    user.pop('password_hash', None)
    return user

def is_admin():
    return g.get('current_user') is not None and g.current_user['role'] == ROLE_ADMIN

def can_manage_course(course):
    """Admins manage every course; teachers only the ones they instruct."""
    return is_admin() or course['instructor_id'] == g.current_user['id']
