from flask import Blueprint, jsonify, request, g
import sqlite3

from utils.db_utils import get_db_connection, return_db_connection, rows_to_dicts
from utils.logging_utils import db_logger, security_logger, log_info, log_error, log_warning
from utils.security_utils import validate_phone, sanitize_input, parse_positive_int
from utils.auth_utils import roles_required, serialize_user, ROLES, ROLE_ADMIN

admin_bp = Blueprint('admin_bp', __name__, url_prefix='/api/admin')

ACCOUNT_STATUSES = ('ACTIVE', 'LOCKED', 'DISABLED')


@admin_bp.route('/users', methods=['GET'])
@roles_required(ROLE_ADMIN)
def list_users():
    role = (request.args.get('role') or '').strip().upper()
    search = (request.args.get('search') or '').strip()
    limit = parse_positive_int(request.args.get('limit'), 50, maximum=200)
    page = parse_positive_int(request.args.get('page'), 1)

    conditions = ['1 = 1']
    params = []
    if role:
        conditions.append('role = ?')
        params.append(role)
    if search:
        conditions.append('(full_name LIKE ? OR email LIKE ?)')
        params.extend([f'%{search}%', f'%{search}%'])
    where_clause = ' AND '.join(conditions)

    conn = None
    try:
        conn = get_db_connection()
        total = conn.execute(f'SELECT COUNT(*) AS total FROM users WHERE {where_clause}', params).fetchone()['total']
        users_data = conn.execute(f'''
            SELECT * FROM users WHERE {where_clause}
            ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?
        ''', params + [limit, (page - 1) * limit]).fetchall()
    except Exception as e:
        log_error(db_logger, "Failed to list users", error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load users'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'users': [serialize_user(row) for row in users_data], 'total': total})


@admin_bp.route('/users/<int:user_id>', methods=['PUT'])
@roles_required(ROLE_ADMIN)
def update_user(user_id):
    data = request.get_json(silent=True)
    if not data:
        return jsonify({'success': False, 'message': 'No data provided'}), 400

    fields = []
    params = []
    if 'full_name' in data:
        full_name = sanitize_input(data['full_name'] or '')
        if not full_name:
            return jsonify({'success': False, 'message': 'Full name cannot be empty'}), 400
        fields.append('full_name = ?')
        params.append(full_name)

    if 'phone' in data:
        if data['phone'] and not validate_phone(data['phone']):
            return jsonify({'success': False, 'message': 'Invalid phone format'}), 400
        fields.append('phone = ?')
        params.append(data['phone'] or None)

    if 'role' in data:
        if data['role'] not in ROLES:
            return jsonify({'success': False, 'message': f"role must be one of {', '.join(ROLES)}"}), 400
        fields.append('role = ?')
        params.append(data['role'])

    if 'account_status' in data:
        if data['account_status'] not in ACCOUNT_STATUSES:
            return jsonify({'success': False, 'message': f"account_status must be one of {', '.join(ACCOUNT_STATUSES)}"}), 400
        fields.append('account_status = ?')
        params.append(data['account_status'])

    if not fields:
        return jsonify({'success': False, 'message': 'No fields to update'}), 400

    if user_id == g.current_user['id'] and (data.get('role', ROLE_ADMIN) != ROLE_ADMIN
                                            or data.get('account_status', 'ACTIVE') != 'ACTIVE'):
        return jsonify({'success': False, 'message': 'You cannot demote or lock your own account'}), 400

    fields.append('updated_at = CURRENT_TIMESTAMP')
    params.append(user_id)
    conn = None
    try:
        conn = get_db_connection()
        cursor = conn.execute(f"UPDATE users SET {', '.join(fields)} WHERE id = ?", params)
        conn.commit()
        if cursor.rowcount == 0:
            return jsonify({'success': False, 'message': 'User not found'}), 404
        user = conn.execute('SELECT * FROM users WHERE id = ?', (user_id,)).fetchone()
        log_info(security_logger, "User updated by admin", admin_id=g.current_user['id'], user_id=user_id,
                 role=user['role'], account_status=user['account_status'])
    except sqlite3.IntegrityError as e:
        log_warning(db_logger, "User update rejected", user_id=user_id, error=str(e))
        return jsonify({'success': False, 'message': 'User update violates a constraint'}), 400
    except Exception as e:
        log_error(db_logger, "User update failed", user_id=user_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to update user'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'message': 'User updated', 'user': serialize_user(user)})


@admin_bp.route('/users/<int:user_id>', methods=['DELETE'])
@roles_required(ROLE_ADMIN)
def delete_user(user_id):
    if user_id == g.current_user['id']:
        return jsonify({'success': False, 'message': 'You cannot delete your own account'}), 400

    conn = None
    try:
        conn = get_db_connection()
        user = conn.execute('SELECT id FROM users WHERE id = ?', (user_id,)).fetchone()
        if not user:
            return jsonify({'success': False, 'message': 'User not found'}), 404
        conn.execute('DELETE FROM users WHERE id = ?', (user_id,))
        conn.commit()
        log_info(security_logger, "User deleted by admin", admin_id=g.current_user['id'], user_id=user_id)
    except Exception as e:
        log_error(db_logger, "User deletion failed", user_id=user_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to delete user'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'message': 'User deleted'})


@admin_bp.route('/stats', methods=['GET'])
@roles_required(ROLE_ADMIN)
def platform_stats():
    conn = None
    try:
        conn = get_db_connection()
        users_by_role = {row['role']: row['count'] for row in conn.execute(
            'SELECT role, COUNT(*) AS count FROM users GROUP BY role').fetchall()}
        courses = conn.execute('''
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN is_published = 1 THEN 1 ELSE 0 END), 0) AS published
            FROM courses WHERE deleted_at IS NULL
        ''').fetchone()
        enrollments = conn.execute('''
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END), 0) AS completed
            FROM enrollments
        ''').fetchone()
        revenue = conn.execute('''
            SELECT currency, COALESCE(SUM(amount), 0) AS total, COUNT(*) AS transactions
            FROM payment_transactions WHERE payment_status = 'completed' AND amount > 0
            GROUP BY currency
        ''').fetchall()
        top_courses = conn.execute('''
            SELECT c.id, c.title, COUNT(e.id) AS enrollment_count
            FROM courses c LEFT JOIN enrollments e ON e.course_id = c.id AND e.status IN ('active', 'completed')
            WHERE c.deleted_at IS NULL
            GROUP BY c.id
            ORDER BY enrollment_count DESC, c.id
            LIMIT 5
        ''').fetchall()
    except Exception as e:
        log_error(db_logger, "Failed to compute admin stats", error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load statistics'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({
        'success': True,
        'stats': {
            'usersByRole': {role: users_by_role.get(role, 0) for role in ROLES},
            'totalUsers': sum(users_by_role.values()),
            'totalCourses': courses['total'],
            'publishedCourses': courses['published'],
            'totalEnrollments': enrollments['total'],
            'completedEnrollments': enrollments['completed'],
            'revenue': rows_to_dicts(revenue),
            'topCourses': rows_to_dicts(top_courses)
        }
    })


@admin_bp.route('/enrollments', methods=['GET'])
@roles_required(ROLE_ADMIN)
def recent_enrollments():
    limit = parse_positive_int(request.args.get('limit'), 50, maximum=200)
    conn = None
    try:
        conn = get_db_connection()
        rows = conn.execute('''
            SELECT e.id, e.user_id, e.course_id, e.status, e.progress, e.enrolled_at, e.completed_at,
                   u.email, u.full_name, c.title AS course_title
            FROM enrollments e
            JOIN users u ON e.user_id = u.id
            JOIN courses c ON e.course_id = c.id
            ORDER BY e.enrolled_at DESC, e.id DESC
            LIMIT ?
        ''', (limit,)).fetchall()
    except Exception as e:
        log_error(db_logger, "Failed to load enrollments", error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load enrollments'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'enrollments': rows_to_dicts(rows)})
