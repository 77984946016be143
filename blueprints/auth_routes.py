from flask import Blueprint, jsonify, request, g
import sqlite3
from werkzeug.security import generate_password_hash, check_password_hash

from utils.db_utils import get_db_connection, return_db_connection
from utils.logging_utils import app_logger, db_logger, security_logger, log_info, log_error, log_warning
from utils.security_utils import validate_email, validate_phone, sanitize_input
from utils.rate_limiter import rate_limit
from utils.auth_utils import (create_access_token, create_refresh_token, decode_token, serialize_user,
                              token_required, TokenError, ROLE_STUDENT)

auth_bp = Blueprint('auth_bp', __name__, url_prefix='/api/auth')

MIN_PASSWORD_LENGTH = 6


@auth_bp.route('/register', methods=['POST'])
@rate_limit('auth')
def register():
    data = request.get_json(silent=True) or {}
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''
    full_name = sanitize_input(data.get('full_name') or data.get('fullName') or '')
    phone = (data.get('phone') or '').strip() or None

    if not email or not validate_email(email):
        return jsonify({'success': False, 'message': 'Valid email is required'}), 400
    if len(password) < MIN_PASSWORD_LENGTH:
        return jsonify({'success': False, 'message': f'Password must be at least {MIN_PASSWORD_LENGTH} characters'}), 400
    if not full_name:
        return jsonify({'success': False, 'message': 'Full name is required'}), 400
    if phone and not validate_phone(phone):
        return jsonify({'success': False, 'message': 'Invalid phone number'}), 400

    conn = None
    try:
        conn = get_db_connection()
        # Self-registration always creates students; other roles are granted by admins
        cursor = conn.execute('''
            INSERT INTO users (email, password_hash, full_name, phone, role)
            VALUES (?, ?, ?, ?, ?)
        ''', (email, generate_password_hash(password), full_name, phone, ROLE_STUDENT))
        conn.commit()
        user = conn.execute('SELECT * FROM users WHERE id = ?', (cursor.lastrowid,)).fetchone()
        log_info(security_logger, "User registered", user_id=user['id'], email=email)
        return jsonify({'success': True, 'message': 'Registration successful', 'user': serialize_user(user)}), 201
    except sqlite3.IntegrityError:
        log_warning(security_logger, "Registration failed - email already exists", email=email)
        return jsonify({'success': False, 'message': 'Email is already registered'}), 400
    except Exception as e:
        log_error(db_logger, "Registration failed with database error", error=str(e))
        return jsonify({'success': False, 'message': 'Registration failed'}), 500
    finally:
        if conn:
            return_db_connection(conn)


@auth_bp.route('/login', methods=['POST'])
@rate_limit('auth')
def login():
    data = request.get_json(silent=True) or {}
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''

    if not email or not password:
        return jsonify({'success': False, 'message': 'Email and password are required'}), 400

    conn = None
    try:
        conn = get_db_connection()
        user = conn.execute('SELECT * FROM users WHERE email = ?', (email,)).fetchone()

        if not user or not check_password_hash(user['password_hash'], password):
            log_warning(security_logger, "Login failed - invalid credentials", email=email)
            return jsonify({'success': False, 'message': 'Invalid email or password'}), 401

        if user['account_status'] != 'ACTIVE':
            log_warning(security_logger, "Login refused - account not active", user_id=user['id'],
                        account_status=user['account_status'])
            return jsonify({'success': False, 'message': 'Account is locked or disabled'}), 403

        conn.execute('UPDATE users SET last_login_at = CURRENT_TIMESTAMP WHERE id = ?', (user['id'],))
        conn.commit()

        log_info(security_logger, "Login successful", user_id=user['id'], role=user['role'])
        return jsonify({
            'success': True,
            'token': create_access_token(user['id'], user['role']),
            'refreshToken': create_refresh_token(user['id'], user['role']),
            'user': serialize_user(user)
        })
    except Exception as e:
        log_error(app_logger, "Login failed with exception", error=str(e))
        return jsonify({'success': False, 'message': 'Login failed'}), 500
    finally:
        if conn:
            return_db_connection(conn)


@auth_bp.route('/refresh-token', methods=['POST'])
@rate_limit('api')
def refresh_token():
    data = request.get_json(silent=True) or {}
    token = data.get('refreshToken')
    if not token:
        return jsonify({'success': False, 'message': 'Refresh token is required'}), 400

    try:
        claims = decode_token(token, 'refresh')
    except TokenError as e:
        log_warning(security_logger, "Refresh rejected", reason=str(e))
        return jsonify({'success': False, 'message': str(e)}), 401

    conn = None
    try:
        conn = get_db_connection()
        revoked = conn.execute('SELECT 1 FROM revoked_tokens WHERE jti = ?', (claims.get('jti'),)).fetchone()
        if revoked:
            log_warning(security_logger, "Refresh rejected - token revoked", user_id=claims['sub'])
            return jsonify({'success': False, 'message': 'Token has been revoked'}), 401

        user = conn.execute('SELECT id, role, account_status FROM users WHERE id = ?', (int(claims['sub']),)).fetchone()
        if not user or user['account_status'] != 'ACTIVE':
            log_warning(security_logger, "Refresh rejected - user missing or inactive", user_id=claims['sub'])
            return jsonify({'success': False, 'message': 'User not found or inactive'}), 401

        # The refresh token is not rotated; the client keeps using it until it expires
        return jsonify({
            'success': True,
            'token': create_access_token(user['id'], user['role']),
            'refreshToken': token
        })
    except Exception as e:
        log_error(app_logger, "Token refresh failed with exception", error=str(e))
        return jsonify({'success': False, 'message': 'Token refresh failed'}), 500
    finally:
        if conn:
            return_db_connection(conn)


@auth_bp.route('/logout', methods=['POST'])
@token_required
def logout():
    data = request.get_json(silent=True) or {}
    token = data.get('refreshToken')
    user_id = g.current_user['id']

    if token:
        try:
            claims = decode_token(token, 'refresh')
        except TokenError:
            claims = None
        if claims and claims.get('jti') and int(claims['sub']) == user_id:
            conn = None
            try:
                conn = get_db_connection()
                conn.execute('INSERT OR IGNORE INTO revoked_tokens (jti, user_id) VALUES (?, ?)',
                             (claims['jti'], user_id))
                conn.commit()
            except Exception as e:
                log_error(db_logger, "Failed to revoke refresh token", user_id=user_id, error=str(e))
                return jsonify({'success': False, 'message': 'Logout failed'}), 500
            finally:
                if conn:
                    return_db_connection(conn)

    log_info(security_logger, "Logout successful", user_id=user_id)
    return jsonify({'success': True, 'message': 'Logged out successfully'})


@auth_bp.route('/me', methods=['GET'])
@token_required
def me():
    conn = None
    try:
        conn = get_db_connection()
        user = conn.execute('SELECT * FROM users WHERE id = ?', (g.current_user['id'],)).fetchone()
    except Exception as e:
        log_error(db_logger, "Failed to load current user", error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load user'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    if not user:
        return jsonify({'success': False, 'message': 'User not found'}), 404
    return jsonify({'success': True, 'user': serialize_user(user)})
