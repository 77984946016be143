from flask import Blueprint, jsonify, request, g

from utils.db_utils import get_db_connection, return_db_connection, rows_to_dicts
from utils.logging_utils import db_logger, log_error
from utils.security_utils import parse_positive_int
from utils.auth_utils import token_required

notification_bp = Blueprint('notification_bp', __name__, url_prefix='/api/notifications')


@notification_bp.route('', methods=['GET'])
@token_required
def list_notifications():
    unread_only = (request.args.get('unreadOnly') or '').lower() in ('1', 'true', 'yes')
    limit = parse_positive_int(request.args.get('limit'), 20, maximum=100)

    query = 'SELECT * FROM notifications WHERE user_id = ?'
    if unread_only:
        query += ' AND is_read = 0'
    query += ' ORDER BY created_at DESC, id DESC LIMIT ?'

    conn = None
    try:
        conn = get_db_connection()
        rows = conn.execute(query, (g.current_user['id'], limit)).fetchall()
        unread = conn.execute('SELECT COUNT(*) AS count FROM notifications WHERE user_id = ? AND is_read = 0',
                              (g.current_user['id'],)).fetchone()['count']
    except Exception as e:
        log_error(db_logger, "Failed to load notifications", error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load notifications'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    notifications = rows_to_dicts(rows)
    for notification in notifications:
        notification['is_read'] = bool(notification['is_read'])
    return jsonify({'success': True, 'notifications': notifications, 'unreadCount': unread})


@notification_bp.route('/unread-count', methods=['GET'])
@token_required
def unread_count():
    conn = None
    try:
        conn = get_db_connection()
        count = conn.execute('SELECT COUNT(*) AS count FROM notifications WHERE user_id = ? AND is_read = 0',
                             (g.current_user['id'],)).fetchone()['count']
    except Exception as e:
        log_error(db_logger, "Failed to count notifications", error=str(e))
        return jsonify({'success': False, 'message': 'Failed to count notifications'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'count': count})


@notification_bp.route('/read-all', methods=['PUT'])
@token_required
def mark_all_read():
    conn = None
    try:
        conn = get_db_connection()
        cursor = conn.execute('''
            UPDATE notifications SET is_read = 1, read_at = CURRENT_TIMESTAMP
            WHERE user_id = ? AND is_read = 0
        ''', (g.current_user['id'],))
        conn.commit()
    except Exception as e:
        log_error(db_logger, "Failed to mark notifications read", error=str(e))
        return jsonify({'success': False, 'message': 'Failed to update notifications'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'updated': cursor.rowcount})


@notification_bp.route('/<int:notification_id>/read', methods=['PUT'])
@token_required
def mark_read(notification_id):
    conn = None
    try:
        conn = get_db_connection()
        cursor = conn.execute('''
            UPDATE notifications SET is_read = 1, read_at = COALESCE(read_at, CURRENT_TIMESTAMP)
            WHERE id = ? AND user_id = ?
        ''', (notification_id, g.current_user['id']))
        conn.commit()
    except Exception as e:
        log_error(db_logger, "Failed to mark notification read", notification_id=notification_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to update notification'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    if cursor.rowcount == 0:
        return jsonify({'success': False, 'message': 'Notification not found'}), 404
    return jsonify({'success': True, 'message': 'Notification marked as read'})


@notification_bp.route('/<int:notification_id>', methods=['DELETE'])
@token_required
def delete_notification(notification_id):
    conn = None
    try:
        conn = get_db_connection()
        cursor = conn.execute('DELETE FROM notifications WHERE id = ? AND user_id = ?',
                              (notification_id, g.current_user['id']))
        conn.commit()
    except Exception as e:
        log_error(db_logger, "Failed to delete notification", notification_id=notification_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to delete notification'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    if cursor.rowcount == 0:
        return jsonify({'success': False, 'message': 'Notification not found'}), 404
    return jsonify({'success': True, 'message': 'Notification deleted'})
