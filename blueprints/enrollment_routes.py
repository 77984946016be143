from flask import Blueprint, jsonify, request, g
import sqlite3

from utils.db_utils import get_db_connection, return_db_connection, rows_to_dicts
from utils.logging_utils import app_logger, db_logger, log_info, log_error, log_warning
from utils.rate_limiter import rate_limit
from utils.auth_utils import token_required
from utils.enrollment_utils import (find_enrollment, get_published_course, effective_price, enroll_user_in_course,
                                    completed_lesson_ids, mark_lesson_completed, ACTIVE_STATUSES)
from utils.payment_utils import create_transaction

enrollment_bp = Blueprint('enrollment_bp', __name__, url_prefix='/api')


def _optional_int(value):
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return None


@enrollment_bp.route('/courses/<int:course_id>/check-enrollment', methods=['GET'])
@token_required
def check_enrollment(course_id):
    conn = None
    try:
        conn = get_db_connection()
        enrollment = find_enrollment(conn, g.current_user['id'], course_id, ACTIVE_STATUSES)
    except Exception as e:
        log_error(db_logger, "Enrollment check failed", course_id=course_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to check enrollment'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({
        'success': True,
        'isEnrolled': enrollment is not None,
        'enrollmentData': dict(enrollment) if enrollment else None
    })


@enrollment_bp.route('/courses/<int:course_id>/enroll/free', methods=['POST'])
@token_required
@rate_limit('api')
def enroll_free(course_id):
    user_id = g.current_user['id']
    conn = None
    try:
        conn = get_db_connection()
        course = get_published_course(conn, course_id)
        if not course or effective_price(course) > 0:
            return jsonify({'success': False, 'message': 'Course not found or is not free'}), 404

        if find_enrollment(conn, user_id, course_id, ACTIVE_STATUSES):
            log_warning(app_logger, "Free enrollment refused - already enrolled", user_id=user_id, course_id=course_id)
            return jsonify({'success': False, 'message': 'You are already enrolled in this course'}), 400

        enrollment, _ = enroll_user_in_course(conn, user_id, course_id)
        create_transaction(conn, user_id, course, 0, 'free', status='completed')
        conn.commit()
        log_info(app_logger, "Free enrollment completed", user_id=user_id, course_id=course_id)
    except sqlite3.IntegrityError:
        # A concurrent request enrolled the user first
        log_warning(app_logger, "Free enrollment refused - already enrolled", user_id=user_id, course_id=course_id)
        return jsonify({'success': False, 'message': 'You are already enrolled in this course'}), 400
    except Exception as e:
        log_error(db_logger, "Free enrollment failed", course_id=course_id, error=str(e))
        return jsonify({'success': False, 'message': 'Enrollment failed'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'message': 'Successfully enrolled in course', 'enrollment': dict(enrollment)}), 201


@enrollment_bp.route('/user/enrollments', methods=['GET'])
@token_required
def user_enrollments():
    conn = None
    try:
        conn = get_db_connection()
        rows = conn.execute('''
            SELECT e.id, e.course_id, e.status, e.progress, e.enrolled_at, e.completed_at,
                   e.last_accessed_lesson_id, e.last_accessed_at, e.certificate_issued,
                   c.title, c.short_description, c.image_url, c.level, c.category,
                   u.full_name AS instructor_name,
                   (SELECT COUNT(*) FROM lessons l WHERE l.course_id = c.id) AS total_lessons,
                   (SELECT COUNT(*) FROM lesson_progress lp JOIN lessons l ON lp.lesson_id = l.id
                    WHERE lp.enrollment_id = e.id AND lp.status = 'completed') AS completed_lessons
            FROM enrollments e
            JOIN courses c ON e.course_id = c.id
            LEFT JOIN users u ON c.instructor_id = u.id
            WHERE e.user_id = ? AND e.status IN ('active', 'completed') AND c.deleted_at IS NULL
            ORDER BY COALESCE(e.last_accessed_at, e.enrolled_at) DESC
        ''', (g.current_user['id'],)).fetchall()
    except Exception as e:
        log_error(db_logger, "Failed to load enrollments", error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load enrollments'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'enrollments': rows_to_dicts(rows)})


@enrollment_bp.route('/lessons/<int:lesson_id>/progress', methods=['POST'])
@token_required
@rate_limit('api')
def save_lesson_progress(lesson_id):
    data = request.get_json(silent=True) or {}
    time_spent = _optional_int(data.get('timeSpent'))
    last_position = _optional_int(data.get('lastPosition'))
    user_id = g.current_user['id']

    conn = None
    try:
        conn = get_db_connection()
        lesson = conn.execute('SELECT id, course_id FROM lessons WHERE id = ?', (lesson_id,)).fetchone()
        if not lesson:
            return jsonify({'success': False, 'message': 'Lesson not found'}), 404

        enrollment = find_enrollment(conn, user_id, lesson['course_id'], ACTIVE_STATUSES)
        if not enrollment:
            log_warning(app_logger, "Progress refused - not enrolled", user_id=user_id, lesson_id=lesson_id)
            return jsonify({'success': False, 'message': 'You are not enrolled in this course'}), 403

        result = mark_lesson_completed(conn, enrollment, lesson_id, time_spent, last_position)
        conn.commit()
        log_info(app_logger, "Lesson progress saved", user_id=user_id, lesson_id=lesson_id, progress=result['progress'])
    except Exception as e:
        log_error(db_logger, "Failed to save lesson progress", lesson_id=lesson_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to save progress'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, **result})


@enrollment_bp.route('/courses/<int:course_id>/progress', methods=['GET'])
@token_required
def get_course_progress(course_id):
    conn = None
    try:
        conn = get_db_connection()
        enrollment = find_enrollment(conn, g.current_user['id'], course_id, ACTIVE_STATUSES)
        if not enrollment:
            return jsonify({'success': False, 'message': 'Enrollment not found'}), 404
        completed = completed_lesson_ids(conn, enrollment['id'])
    except Exception as e:
        log_error(db_logger, "Failed to load course progress", course_id=course_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load progress'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({
        'success': True,
        'overallProgress': enrollment['progress'],
        'completedLessons': completed,
        'status': enrollment['status'],
        'lastAccessedLessonId': enrollment['last_accessed_lesson_id']
    })
