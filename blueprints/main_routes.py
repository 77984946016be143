from flask import Blueprint, jsonify
from datetime import datetime, timezone

from utils.db_utils import get_db_connection, return_db_connection
from utils.logging_utils import db_logger, log_error

main_bp = Blueprint('main_bp', __name__)

API_VERSION = '1.0.0'


@main_bp.route('/')
def index():
    """Service banner"""
    return jsonify({'success': True, 'service': 'CampusLearning API', 'version': API_VERSION})


@main_bp.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint"""
    database = 'ok'
    conn = None
    try:
        conn = get_db_connection()
        conn.execute('SELECT 1').fetchone()
    except Exception as e:
        log_error(db_logger, "Health check database query failed", error=str(e))
        database = 'unavailable'
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({
        'status': 'healthy' if database == 'ok' else 'degraded',
        'database': database,
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'version': API_VERSION
    }), 200 if database == 'ok' else 503


@main_bp.route('/api/stats', methods=['GET'])
def public_stats():
    """Platform totals shown on the landing page."""
    conn = None
    try:
        conn = get_db_connection()
        stats = conn.execute('''
            SELECT
                (SELECT COUNT(*) FROM courses WHERE is_published = 1 AND deleted_at IS NULL) AS courses,
                (SELECT COUNT(*) FROM users WHERE role = 'STUDENT') AS students,
                (SELECT COUNT(*) FROM users WHERE role = 'TEACHER') AS teachers,
                (SELECT COUNT(*) FROM enrollments WHERE status = 'completed') AS completions
        ''').fetchone()
    except Exception as e:
        log_error(db_logger, "Failed to load public stats", error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load statistics'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'stats': dict(stats)})
