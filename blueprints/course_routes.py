from flask import Blueprint, jsonify, request, g
import json
import math

from utils.db_utils import get_db_connection, return_db_connection, rows_to_dicts
from utils.logging_utils import app_logger, db_logger, log_info, log_error, log_warning
from utils.security_utils import sanitize_input, parse_positive_int
from utils.rate_limiter import rate_limit
from utils.auth_utils import token_required, optional_token, ROLE_ADMIN
from utils.content_utils import serialize_lesson, group_lessons_by_module, parse_element_properties
from utils.enrollment_utils import find_enrollment, mark_lesson_completed, ACTIVE_STATUSES

course_bp = Blueprint('course_bp', __name__, url_prefix='/api')

MAX_PAGE_SIZE = 100

# Per-course aggregates joined onto the course row
COURSE_STATS_SQL = '''
    SELECT c.*, u.full_name AS instructor_name,
           COALESCE(es.enrollment_count, 0) AS enrollment_count,
           ROUND(COALESCE(rs.average_rating, 0), 2) AS average_rating,
           COALESCE(rs.review_count, 0) AS review_count,
           COALESCE(ms.module_count, 0) AS module_count,
           COALESCE(ls.lesson_count, 0) AS lesson_count
    FROM courses c
    LEFT JOIN users u ON c.instructor_id = u.id
    LEFT JOIN (SELECT course_id, COUNT(*) AS enrollment_count FROM enrollments
               WHERE status IN ('active', 'completed') GROUP BY course_id) es ON es.course_id = c.id
    LEFT JOIN (SELECT course_id, AVG(rating) AS average_rating, COUNT(*) AS review_count
               FROM course_reviews GROUP BY course_id) rs ON rs.course_id = c.id
    LEFT JOIN (SELECT course_id, COUNT(*) AS module_count FROM modules GROUP BY course_id) ms ON ms.course_id = c.id
    LEFT JOIN (SELECT course_id, COUNT(*) AS lesson_count FROM lessons GROUP BY course_id) ls ON ls.course_id = c.id
'''

PUBLISHED_FILTER = "c.is_published = 1 AND c.status = 'published' AND c.deleted_at IS NULL"


def _course_payload(row):
    course = dict(row)
    course['is_published'] = bool(course.get('is_published'))
    return course


@course_bp.route('/courses', methods=['GET'])
@rate_limit('api')
def list_courses():
    page = parse_positive_int(request.args.get('page'), 1)
    limit = parse_positive_int(request.args.get('limit'), 12, maximum=MAX_PAGE_SIZE)
    search = (request.args.get('search') or '').strip()
    category = (request.args.get('category') or '').strip()
    level = (request.args.get('level') or '').strip()

    conditions = [PUBLISHED_FILTER]
    params = []
    if search:
        conditions.append('(c.title LIKE ? OR c.description LIKE ? OR c.short_description LIKE ?)')
        params.extend([f'%{search}%'] * 3)
    if category:
        conditions.append('c.category = ?')
        params.append(category)
    if level:
        conditions.append('c.level = ?')
        params.append(level)
    where_clause = ' AND '.join(conditions)

    conn = None
    try:
        conn = get_db_connection()
        total = conn.execute(f'SELECT COUNT(*) AS total FROM courses c WHERE {where_clause}', params).fetchone()['total']
        rows = conn.execute(f'''
            {COURSE_STATS_SQL}
            WHERE {where_clause}
            ORDER BY c.created_at DESC, c.id DESC
            LIMIT ? OFFSET ?
        ''', params + [limit, (page - 1) * limit]).fetchall()
    except Exception as e:
        log_error(db_logger, "Failed to list courses", error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load courses'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({
        'success': True,
        'courses': [_course_payload(row) for row in rows],
        'pagination': {
            'totalCount': total,
            'totalPages': math.ceil(total / limit) if total else 0,
            'currentPage': page,
            'limit': limit
        }
    })


@course_bp.route('/courses/<int:course_id>', methods=['GET'])
def get_course(course_id):
    conn = None
    try:
        conn = get_db_connection()
        course = conn.execute(f'{COURSE_STATS_SQL} WHERE c.id = ? AND {PUBLISHED_FILTER}', (course_id,)).fetchone()
        if not course:
            return jsonify({'success': False, 'message': 'Course not found'}), 404

        modules = conn.execute('''
            SELECT id, title, description, order_index FROM modules
            WHERE course_id = ? ORDER BY order_index, id
        ''', (course_id,)).fetchall()
        lessons = conn.execute('''
            SELECT id, module_id, title, description, content_type, element_properties,
                   duration, is_preview, order_index
            FROM lessons WHERE course_id = ? ORDER BY order_index, id
        ''', (course_id,)).fetchall()
    except Exception as e:
        log_error(db_logger, "Failed to load course details", course_id=course_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load course'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    # Only preview lessons expose their content on the public details page
    lesson_list = [serialize_lesson(lesson, include_content=bool(lesson['is_preview'])) for lesson in lessons]
    result = _course_payload(course)
    result['modules'] = group_lessons_by_module(modules, lesson_list)
    return jsonify({'success': True, 'course': result})


@course_bp.route('/courses/<int:course_id>/content', methods=['GET'])
@optional_token
def get_course_content(course_id):
    user = g.current_user
    conn = None
    try:
        conn = get_db_connection()
        course = conn.execute('SELECT * FROM courses WHERE id = ? AND deleted_at IS NULL', (course_id,)).fetchone()
        if not course:
            return jsonify({'success': False, 'message': 'Course not found'}), 404

        enrollment = None
        full_access = False
        if user:
            enrollment = find_enrollment(conn, user['id'], course_id, ACTIVE_STATUSES)
            full_access = (enrollment is not None or user['role'] == ROLE_ADMIN
                           or course['instructor_id'] == user['id'])

        if not full_access and not course['is_published']:
            return jsonify({'success': False, 'message': 'Course not found'}), 404

        modules = conn.execute('''
            SELECT id, title, description, order_index FROM modules
            WHERE course_id = ? ORDER BY order_index, id
        ''', (course_id,)).fetchall()
        lesson_query = 'SELECT * FROM lessons WHERE course_id = ?'
        if not full_access:
            lesson_query += ' AND is_preview = 1'
        lessons = conn.execute(lesson_query + ' ORDER BY order_index, id', (course_id,)).fetchall()

        if enrollment:
            conn.execute('UPDATE enrollments SET last_accessed_at = CURRENT_TIMESTAMP WHERE id = ?', (enrollment['id'],))
            conn.commit()
    except Exception as e:
        log_error(db_logger, "Failed to load course content", course_id=course_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load course content'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    lesson_list = [serialize_lesson(lesson) for lesson in lessons]
    modules_with_lessons = group_lessons_by_module(modules, lesson_list)
    if not full_access:
        modules_with_lessons = [module for module in modules_with_lessons if module['lessons']]

    return jsonify({
        'success': True,
        'course': _course_payload(course),
        'modules': modules_with_lessons,
        'enrollment': dict(enrollment) if enrollment else None,
        'is_preview': not full_access
    })


@course_bp.route('/courses/<int:course_id>/reviews', methods=['GET'])
def get_reviews(course_id):
    conn = None
    try:
        conn = get_db_connection()
        reviews = conn.execute('''
            SELECT r.id, r.rating, r.comment, r.created_at, r.updated_at, r.user_id, u.full_name AS user_name
            FROM course_reviews r JOIN users u ON r.user_id = u.id
            WHERE r.course_id = ?
            ORDER BY r.updated_at DESC, r.id DESC
        ''', (course_id,)).fetchall()
        summary = conn.execute('''
            SELECT COUNT(*) AS review_count, ROUND(COALESCE(AVG(rating), 0), 2) AS average_rating
            FROM course_reviews WHERE course_id = ?
        ''', (course_id,)).fetchone()
    except Exception as e:
        log_error(db_logger, "Failed to load reviews", course_id=course_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load reviews'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'reviews': rows_to_dicts(reviews), **dict(summary)})


@course_bp.route('/courses/<int:course_id>/reviews', methods=['POST'])
@token_required
@rate_limit('api')
def post_review(course_id):
    data = request.get_json(silent=True) or {}
    try:
        rating = int(data.get('rating'))
    except (TypeError, ValueError):
        rating = None
    if rating is None or not 1 <= rating <= 5:
        return jsonify({'success': False, 'message': 'Rating must be an integer between 1 and 5'}), 400
    comment = sanitize_input(data.get('comment') or '')
    user_id = g.current_user['id']

    conn = None
    try:
        conn = get_db_connection()
        if not find_enrollment(conn, user_id, course_id, ACTIVE_STATUSES):
            log_warning(app_logger, "Review refused - not enrolled", user_id=user_id, course_id=course_id)
            return jsonify({'success': False, 'message': 'Only enrolled students can review this course'}), 403

        # One review per student; posting again replaces it
        conn.execute('''
            INSERT INTO course_reviews (course_id, user_id, rating, comment)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (course_id, user_id)
            DO UPDATE SET rating = excluded.rating, comment = excluded.comment, updated_at = CURRENT_TIMESTAMP
        ''', (course_id, user_id, rating, comment))
        conn.commit()
        review = conn.execute('SELECT * FROM course_reviews WHERE course_id = ? AND user_id = ?',
                              (course_id, user_id)).fetchone()
        log_info(app_logger, "Review saved", user_id=user_id, course_id=course_id, rating=rating)
    except Exception as e:
        log_error(db_logger, "Failed to save review", course_id=course_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to save review'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'message': 'Review saved', 'review': dict(review)})


def _correct_answer_index(lesson):
    """Stored answer for a quiz lesson, or None when the lesson has no usable one."""
    props = parse_element_properties(lesson['element_properties'])
    value = props.get('correct_answer_index')
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        log_warning(app_logger, "Quiz has an invalid correct answer", lesson_id=lesson['id'])
        return None


@course_bp.route('/lessons/<int:lesson_id>/quiz', methods=['POST'])
@token_required
@rate_limit('api')
def submit_quiz(lesson_id):
    data = request.get_json(silent=True) or {}
    if 'answer_index' not in data:
        return jsonify({'success': False, 'message': 'Missing answer_index'}), 400
    try:
        submitted_answer_index = int(data['answer_index'])
    except (TypeError, ValueError):
        return jsonify({'success': False, 'message': 'answer_index must be an integer'}), 400
    user_id = g.current_user['id']

    conn = None
    try:
        conn = get_db_connection()
        lesson = conn.execute("SELECT id, course_id, element_properties FROM lessons WHERE id = ? AND content_type = 'quiz'",
                              (lesson_id,)).fetchone()
        if not lesson:
            return jsonify({'success': False, 'message': 'Quiz lesson not found'}), 404

        enrollment = find_enrollment(conn, user_id, lesson['course_id'], ACTIVE_STATUSES)
        if not enrollment:
            return jsonify({'success': False, 'message': 'You are not enrolled in this course'}), 403

        correct_answer_index = _correct_answer_index(lesson)
        is_correct = correct_answer_index is not None and submitted_answer_index == correct_answer_index
        score = 100 if is_correct else 0

        conn.execute('''
            INSERT INTO quiz_attempts (user_id, lesson_id, course_id, submitted_answers, is_correct, score)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', (user_id, lesson_id, lesson['course_id'], json.dumps({'answer_index': submitted_answer_index}),
              is_correct, score))

        progress = None
        if is_correct:
            progress = mark_lesson_completed(conn, enrollment, lesson_id)
        conn.commit()
        log_info(app_logger, "Quiz submitted", user_id=user_id, lesson_id=lesson_id, is_correct=is_correct)
    except Exception as e:
        log_error(db_logger, "Quiz submission failed", lesson_id=lesson_id, error=str(e))
        return jsonify({'success': False, 'message': 'Quiz submission failed'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({
        'success': True,
        'is_correct': is_correct,
        'score': score,
        'progress': progress,
        'message': 'Quiz submitted successfully'
    })
