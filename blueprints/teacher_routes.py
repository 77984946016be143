from flask import Blueprint, jsonify, request, g
import json
import math

from utils.db_utils import get_db_connection, return_db_connection, rows_to_dicts
from utils.logging_utils import app_logger, db_logger, log_info, log_error, log_warning
from utils.security_utils import sanitize_input, parse_positive_int
from utils.rate_limiter import rate_limit
from utils.auth_utils import roles_required, can_manage_course, is_admin, serialize_user, ROLE_TEACHER, ROLE_ADMIN
from utils.content_utils import serialize_lesson, LESSON_CONTENT_TYPES
from utils.enrollment_utils import recalculate_course_progress
from utils.notification_utils import notify_many

teacher_bp = Blueprint('teacher_bp', __name__, url_prefix='/api/teacher')

COURSE_STATUSES = ('draft', 'published', 'archived')
COURSE_TEXT_FIELDS = ('title', 'description', 'short_description', 'category', 'level', 'currency',
                      'image_url', 'requirements', 'objectives')
ENROLLMENT_STATUS_FILTERS = {
    'completed': "e.status = 'completed'",
    'in_progress': "e.status = 'active' AND e.progress > 0",
    'not_started': "e.status = 'active' AND e.progress = 0",
}


class ValidationError(ValueError):
    pass


def _pagination(total, page, limit):
    return {
        'totalCount': total,
        'totalPages': math.ceil(total / limit) if total else 0,
        'currentPage': page,
        'limit': limit
    }


def _scope():
    """SQL fragment restricting `c` to the caller's courses (admins see all)."""
    if is_admin():
        return '1 = 1', []
    return 'c.instructor_id = ?', [g.current_user['id']]


def _load_course(conn, course_id):
    """Returns (course, error_response) for a course the caller may manage."""
    course = conn.execute('SELECT * FROM courses WHERE id = ? AND deleted_at IS NULL', (course_id,)).fetchone()
    if not course:
        return None, (jsonify({'success': False, 'message': 'Course not found'}), 404)
    if not can_manage_course(course):
        log_warning(app_logger, "Course access denied", user_id=g.current_user['id'], course_id=course_id)
        return None, (jsonify({'success': False, 'message': 'You do not have access to this course'}), 403)
    return course, None


def _load_module(conn, module_id):
    module = conn.execute('''
        SELECT m.*, c.instructor_id FROM modules m JOIN courses c ON m.course_id = c.id
        WHERE m.id = ? AND c.deleted_at IS NULL
    ''', (module_id,)).fetchone()
    if not module:
        return None, (jsonify({'success': False, 'message': 'Module not found'}), 404)
    if not can_manage_course(module):
        return None, (jsonify({'success': False, 'message': 'You do not have access to this module'}), 403)
    return module, None


def _load_lesson(conn, lesson_id):
    lesson = conn.execute('''
        SELECT l.*, c.instructor_id FROM lessons l JOIN courses c ON l.course_id = c.id
        WHERE l.id = ? AND c.deleted_at IS NULL
    ''', (lesson_id,)).fetchone()
    if not lesson:
        return None, (jsonify({'success': False, 'message': 'Lesson not found'}), 404)
    if not can_manage_course(lesson):
        return None, (jsonify({'success': False, 'message': 'You do not have access to this lesson'}), 403)
    return lesson, None


def _money(value, field):
    if value is None or value == '':
        return None
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be a number')
    if amount < 0:
        raise ValidationError(f'{field} cannot be negative')
    return amount


def _course_changes(data):
    """Whitelisted column/value pairs from a course payload."""
    changes = {}
    for field in COURSE_TEXT_FIELDS:
        if field in data:
            changes[field] = sanitize_input(data[field]) if isinstance(data[field], str) else data[field]
    if 'title' in changes and not changes['title']:
        raise ValidationError('Course title is required')
    if 'price' in data:
        changes['price'] = _money(data['price'], 'price') or 0
    if 'discount_price' in data:
        changes['discount_price'] = _money(data['discount_price'], 'discount_price')
    if 'duration' in data:
        changes['duration'] = parse_positive_int(data['duration'], None)
    if 'status' in data:
        if data['status'] not in COURSE_STATUSES:
            raise ValidationError(f"status must be one of {', '.join(COURSE_STATUSES)}")
        changes['status'] = data['status']
        changes['is_published'] = 1 if data['status'] == 'published' else 0
    return changes


def _lesson_changes(data):
    changes = {}
    if 'title' in data:
        changes['title'] = sanitize_input(data['title'] or '')
        if not changes['title']:
            raise ValidationError('Lesson title is required')
    if 'description' in data:
        changes['description'] = data['description']
    if 'content_type' in data:
        if data['content_type'] not in LESSON_CONTENT_TYPES:
            raise ValidationError(f"content_type must be one of {', '.join(LESSON_CONTENT_TYPES)}")
        changes['content_type'] = data['content_type']
    if 'element_properties' in data:
        props = data['element_properties'] or {}
        if not isinstance(props, dict):
            raise ValidationError('element_properties must be an object')
        changes['element_properties'] = json.dumps(props)
    if 'duration' in data:
        changes['duration'] = parse_positive_int(data['duration'], None)
    if 'is_preview' in data:
        changes['is_preview'] = 1 if data['is_preview'] else 0
    if 'order_index' in data:
        changes['order_index'] = parse_positive_int(data['order_index'], 1)
    return changes


def _apply_update(conn, table, row_id, changes):
    assignments = [f"{column} = ?" for column in changes] + ['updated_at = CURRENT_TIMESTAMP']
    conn.execute(f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ?", list(changes.values()) + [row_id])


# --- Courses ---

@teacher_bp.route('/courses', methods=['GET'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
def list_courses():
    page = parse_positive_int(request.args.get('page'), 1)
    limit = parse_positive_int(request.args.get('limit'), 10, maximum=100)
    search = (request.args.get('search') or '').strip()
    status = (request.args.get('status') or '').strip()
    category = (request.args.get('category') or '').strip()

    scope_sql, params = _scope()
    conditions = [scope_sql, 'c.deleted_at IS NULL']
    if search:
        conditions.append('(c.title LIKE ? OR c.description LIKE ?)')
        params.extend([f'%{search}%', f'%{search}%'])
    if status:
        conditions.append('c.status = ?')
        params.append(status)
    if category:
        conditions.append('c.category = ?')
        params.append(category)
    where_clause = ' AND '.join(conditions)

    conn = None
    try:
        conn = get_db_connection()
        total = conn.execute(f'SELECT COUNT(*) AS total FROM courses c WHERE {where_clause}', params).fetchone()['total']
        rows = conn.execute(f'''
            SELECT c.*,
                   (SELECT COUNT(*) FROM enrollments e WHERE e.course_id = c.id AND e.status IN ('active', 'completed')) AS enrollment_count,
                   (SELECT COUNT(*) FROM modules m WHERE m.course_id = c.id) AS module_count,
                   (SELECT COUNT(*) FROM lessons l WHERE l.course_id = c.id) AS lesson_count
            FROM courses c
            WHERE {where_clause}
            ORDER BY c.updated_at DESC, c.id DESC
            LIMIT ? OFFSET ?
        ''', params + [limit, (page - 1) * limit]).fetchall()
    except Exception as e:
        log_error(db_logger, "Failed to list teacher courses", error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load courses'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'courses': rows_to_dicts(rows), 'pagination': _pagination(total, page, limit)})


@teacher_bp.route('/courses', methods=['POST'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
@rate_limit('api')
def create_course():
    data = request.get_json(silent=True) or {}
    if not data.get('title'):
        log_warning(app_logger, "Course creation failed - missing title")
        return jsonify({'success': False, 'message': 'Course title is required'}), 400
    try:
        changes = _course_changes(data)
    except ValidationError as e:
        return jsonify({'success': False, 'message': str(e)}), 400
    # New courses always start as drafts
    changes['status'] = 'draft'
    changes['is_published'] = 0
    changes['instructor_id'] = g.current_user['id']

    conn = None
    try:
        conn = get_db_connection()
        columns = ', '.join(changes)
        placeholders = ', '.join('?' for _ in changes)
        cursor = conn.execute(f'INSERT INTO courses ({columns}) VALUES ({placeholders})', list(changes.values()))
        conn.commit()
        course = conn.execute('SELECT * FROM courses WHERE id = ?', (cursor.lastrowid,)).fetchone()
        log_info(app_logger, "Course created successfully", course_id=course['id'], instructor_id=g.current_user['id'])
    except Exception as e:
        log_error(db_logger, "Course creation failed with database error", error=str(e))
        return jsonify({'success': False, 'message': 'Failed to create course'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'message': 'Course created successfully', 'course': dict(course)}), 201


@teacher_bp.route('/courses/<int:course_id>', methods=['GET'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
def get_course(course_id):
    conn = None
    try:
        conn = get_db_connection()
        course, error = _load_course(conn, course_id)
        if error:
            return error
        modules = conn.execute('''
            SELECT m.*, (SELECT COUNT(*) FROM lessons l WHERE l.module_id = m.id) AS lesson_count
            FROM modules m WHERE m.course_id = ? ORDER BY m.order_index, m.id
        ''', (course_id,)).fetchall()
        recent_enrollments = conn.execute('''
            SELECT e.id, e.user_id, e.status, e.progress, e.enrolled_at, u.full_name, u.email
            FROM enrollments e JOIN users u ON e.user_id = u.id
            WHERE e.course_id = ?
            ORDER BY e.enrolled_at DESC, e.id DESC LIMIT 10
        ''', (course_id,)).fetchall()
    except Exception as e:
        log_error(db_logger, "Failed to load teacher course", course_id=course_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load course'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    result = dict(course)
    result['modules'] = rows_to_dicts(modules)
    result['recent_enrollments'] = rows_to_dicts(recent_enrollments)
    return jsonify({'success': True, 'course': result})


@teacher_bp.route('/courses/<int:course_id>', methods=['PUT'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
def update_course(course_id):
    data = request.get_json(silent=True)
    if not data:
        return jsonify({'success': False, 'message': 'No data provided'}), 400
    try:
        changes = _course_changes(data)
    except ValidationError as e:
        return jsonify({'success': False, 'message': str(e)}), 400
    if not changes:
        return jsonify({'success': False, 'message': 'No fields to update'}), 400

    conn = None
    try:
        conn = get_db_connection()
        course, error = _load_course(conn, course_id)
        if error:
            return error
        _apply_update(conn, 'courses', course_id, changes)
        conn.commit()
        course = conn.execute('SELECT * FROM courses WHERE id = ?', (course_id,)).fetchone()
        log_info(app_logger, "Course updated", course_id=course_id, fields=list(changes))
    except Exception as e:
        log_error(db_logger, "Course update failed", course_id=course_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to update course'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'message': 'Course updated successfully', 'course': dict(course)})


@teacher_bp.route('/courses/<int:course_id>', methods=['DELETE'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
def delete_course(course_id):
    conn = None
    try:
        conn = get_db_connection()
        course, error = _load_course(conn, course_id)
        if error:
            return error
        # Soft delete keeps enrollments and payments intact
        conn.execute('''
            UPDATE courses SET deleted_at = CURRENT_TIMESTAMP, is_published = 0, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
        ''', (course_id,))
        conn.commit()
        log_info(app_logger, "Course deleted", course_id=course_id, user_id=g.current_user['id'])
    except Exception as e:
        log_error(db_logger, "Course deletion failed", course_id=course_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to delete course'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'message': 'Course deleted successfully'})


# --- Modules ---

@teacher_bp.route('/courses/<int:course_id>/modules', methods=['POST'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
def create_module(course_id):
    data = request.get_json(silent=True) or {}
    title = sanitize_input(data.get('title') or '')
    if not title:
        return jsonify({'success': False, 'message': 'Missing module title'}), 400

    conn = None
    try:
        conn = get_db_connection()
        course, error = _load_course(conn, course_id)
        if error:
            return error
        next_index = conn.execute('SELECT COALESCE(MAX(order_index), 0) + 1 AS next_index FROM modules WHERE course_id = ?',
                                  (course_id,)).fetchone()['next_index']
        order_index = parse_positive_int(data.get('order_index'), next_index)
        cursor = conn.execute('INSERT INTO modules (course_id, title, description, order_index) VALUES (?, ?, ?, ?)',
                              (course_id, title, data.get('description', ''), order_index))
        conn.commit()
        module = conn.execute('SELECT * FROM modules WHERE id = ?', (cursor.lastrowid,)).fetchone()
        log_info(app_logger, "Module created", course_id=course_id, module_id=module['id'])
    except Exception as e:
        log_error(db_logger, "Module creation failed", course_id=course_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to create module'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'message': 'Module created successfully', 'module': dict(module)}), 201


@teacher_bp.route('/modules/<int:module_id>', methods=['PUT'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
def update_module(module_id):
    data = request.get_json(silent=True) or {}
    changes = {}
    if 'title' in data:
        changes['title'] = sanitize_input(data['title'] or '')
        if not changes['title']:
            return jsonify({'success': False, 'message': 'Module title is required'}), 400
    if 'description' in data:
        changes['description'] = data['description']
    if 'order_index' in data:
        changes['order_index'] = parse_positive_int(data['order_index'], 1)
    if not changes:
        return jsonify({'success': False, 'message': 'No fields to update'}), 400

    conn = None
    try:
        conn = get_db_connection()
        module, error = _load_module(conn, module_id)
        if error:
            return error
        _apply_update(conn, 'modules', module_id, changes)
        conn.commit()
        module = conn.execute('SELECT * FROM modules WHERE id = ?', (module_id,)).fetchone()
    except Exception as e:
        log_error(db_logger, "Module update failed", module_id=module_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to update module'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'message': 'Module updated successfully', 'module': dict(module)})


@teacher_bp.route('/modules/<int:module_id>', methods=['DELETE'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
def delete_module(module_id):
    conn = None
    try:
        conn = get_db_connection()
        module, error = _load_module(conn, module_id)
        if error:
            return error
        conn.execute('DELETE FROM lessons WHERE module_id = ?', (module_id,))
        conn.execute('DELETE FROM modules WHERE id = ?', (module_id,))
        recalculate_course_progress(conn, module['course_id'])
        conn.commit()
        log_info(app_logger, "Module deleted", module_id=module_id, course_id=module['course_id'])
    except Exception as e:
        log_error(db_logger, "Module deletion failed", module_id=module_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to delete module'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'message': 'Module deleted successfully'})


# --- Lessons ---

@teacher_bp.route('/modules/<int:module_id>/lessons', methods=['POST'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
def create_lesson(module_id):
    data = request.get_json(silent=True) or {}
    if not data.get('title'):
        return jsonify({'success': False, 'message': 'Missing lesson title'}), 400
    data.setdefault('content_type', 'text')
    try:
        changes = _lesson_changes(data)
    except ValidationError as e:
        return jsonify({'success': False, 'message': str(e)}), 400

    conn = None
    try:
        conn = get_db_connection()
        module, error = _load_module(conn, module_id)
        if error:
            return error
        if 'order_index' not in changes:
            changes['order_index'] = conn.execute(
                'SELECT COALESCE(MAX(order_index), 0) + 1 AS next_index FROM lessons WHERE module_id = ?',
                (module_id,)).fetchone()['next_index']
        changes['module_id'] = module_id
        changes['course_id'] = module['course_id']
        columns = ', '.join(changes)
        placeholders = ', '.join('?' for _ in changes)
        cursor = conn.execute(f'INSERT INTO lessons ({columns}) VALUES ({placeholders})', list(changes.values()))
        # A new lesson lowers everyone's percentage
        recalculate_course_progress(conn, module['course_id'])
        conn.commit()
        lesson = conn.execute('SELECT * FROM lessons WHERE id = ?', (cursor.lastrowid,)).fetchone()
        log_info(app_logger, "Lesson created", lesson_id=lesson['id'], module_id=module_id)
    except Exception as e:
        log_error(db_logger, "Lesson creation failed", module_id=module_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to create lesson'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'message': 'Lesson created successfully',
                    'lesson': serialize_lesson(lesson, reveal_answers=True)}), 201


@teacher_bp.route('/modules/<int:module_id>/lessons', methods=['GET'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
def list_lessons(module_id):
    conn = None
    try:
        conn = get_db_connection()
        module, error = _load_module(conn, module_id)
        if error:
            return error
        lessons = conn.execute('SELECT * FROM lessons WHERE module_id = ? ORDER BY order_index, id',
                               (module_id,)).fetchall()
    except Exception as e:
        log_error(db_logger, "Failed to list lessons", module_id=module_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load lessons'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'lessons': [serialize_lesson(lesson, reveal_answers=True) for lesson in lessons]})


@teacher_bp.route('/lessons/<int:lesson_id>', methods=['GET'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
def get_lesson(lesson_id):
    conn = None
    try:
        conn = get_db_connection()
        lesson, error = _load_lesson(conn, lesson_id)
    except Exception as e:
        log_error(db_logger, "Failed to load lesson", lesson_id=lesson_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load lesson'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    if error:
        return error
    result = serialize_lesson(lesson, reveal_answers=True)
    result.pop('instructor_id', None)
    return jsonify({'success': True, 'lesson': result})


@teacher_bp.route('/lessons/<int:lesson_id>', methods=['PUT'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
def update_lesson(lesson_id):
    data = request.get_json(silent=True) or {}
    try:
        changes = _lesson_changes(data)
    except ValidationError as e:
        return jsonify({'success': False, 'message': str(e)}), 400
    if not changes:
        return jsonify({'success': False, 'message': 'No fields to update'}), 400

    conn = None
    try:
        conn = get_db_connection()
        lesson, error = _load_lesson(conn, lesson_id)
        if error:
            return error
        _apply_update(conn, 'lessons', lesson_id, changes)
        conn.commit()
        lesson = conn.execute('SELECT * FROM lessons WHERE id = ?', (lesson_id,)).fetchone()
        log_info(app_logger, "Lesson updated", lesson_id=lesson_id, fields=list(changes))
    except Exception as e:
        log_error(db_logger, "Lesson update failed", lesson_id=lesson_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to update lesson'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'message': 'Lesson updated successfully',
                    'lesson': serialize_lesson(lesson, reveal_answers=True)})


@teacher_bp.route('/lessons/<int:lesson_id>', methods=['DELETE'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
def delete_lesson(lesson_id):
    conn = None
    try:
        conn = get_db_connection()
        lesson, error = _load_lesson(conn, lesson_id)
        if error:
            return error
        conn.execute('DELETE FROM lessons WHERE id = ?', (lesson_id,))
        recalculate_course_progress(conn, lesson['course_id'])
        conn.commit()
        log_info(app_logger, "Lesson deleted", lesson_id=lesson_id, course_id=lesson['course_id'])
    except Exception as e:
        log_error(db_logger, "Lesson deletion failed", lesson_id=lesson_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to delete lesson'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'message': 'Lesson deleted successfully'})


# --- Enrollments ---

@teacher_bp.route('/courses/<int:course_id>/enrollments', methods=['GET'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
def course_enrollments(course_id):
    page = parse_positive_int(request.args.get('page'), 1)
    limit = parse_positive_int(request.args.get('limit'), 10, maximum=100)
    search = (request.args.get('search') or '').strip()
    status = (request.args.get('status') or '').strip()

    conditions = ['e.course_id = ?', "e.status IN ('active', 'completed')"]
    params = [course_id]
    if search:
        conditions.append('(u.full_name LIKE ? OR u.email LIKE ?)')
        params.extend([f'%{search}%', f'%{search}%'])
    if status in ENROLLMENT_STATUS_FILTERS:
        conditions.append(ENROLLMENT_STATUS_FILTERS[status])
    where_clause = ' AND '.join(conditions)

    conn = None
    try:
        conn = get_db_connection()
        course, error = _load_course(conn, course_id)
        if error:
            return error
        total = conn.execute(f'''
            SELECT COUNT(*) AS total FROM enrollments e JOIN users u ON e.user_id = u.id WHERE {where_clause}
        ''', params).fetchone()['total']
        rows = conn.execute(f'''
            SELECT e.id, e.user_id, e.status, e.progress, e.enrolled_at, e.completed_at, e.last_accessed_at,
                   u.full_name, u.email, u.avatar
            FROM enrollments e JOIN users u ON e.user_id = u.id
            WHERE {where_clause}
            ORDER BY e.enrolled_at DESC, e.id DESC
            LIMIT ? OFFSET ?
        ''', params + [limit, (page - 1) * limit]).fetchall()
        stats = conn.execute('''
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END), 0) AS completed,
                   COALESCE(SUM(CASE WHEN status = 'active' AND progress > 0 THEN 1 ELSE 0 END), 0) AS in_progress,
                   COALESCE(SUM(CASE WHEN status = 'active' AND progress = 0 THEN 1 ELSE 0 END), 0) AS not_started,
                   ROUND(COALESCE(AVG(progress), 0), 2) AS average_progress
            FROM enrollments WHERE course_id = ? AND status IN ('active', 'completed')
        ''', (course_id,)).fetchone()
    except Exception as e:
        log_error(db_logger, "Failed to load course enrollments", course_id=course_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load enrollments'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({
        'success': True,
        'enrollments': rows_to_dicts(rows),
        'statistics': dict(stats),
        'pagination': _pagination(total, page, limit)
    })


# --- Students ---

STUDENT_SUMMARY_SQL = '''
    SELECT u.id, u.full_name, u.email, u.phone, u.avatar,
           COUNT(DISTINCT e.course_id) AS course_count,
           ROUND(AVG(e.progress), 2) AS average_progress,
           MAX(COALESCE(e.last_accessed_at, e.enrolled_at)) AS last_activity
    FROM users u
    JOIN enrollments e ON e.user_id = u.id AND e.status IN ('active', 'completed')
    JOIN courses c ON e.course_id = c.id AND c.deleted_at IS NULL
'''


@teacher_bp.route('/students', methods=['GET'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
def list_students():
    page = parse_positive_int(request.args.get('page'), 1)
    limit = parse_positive_int(request.args.get('limit'), 20, maximum=100)
    course_id = request.args.get('courseId')

    scope_sql, params = _scope()
    conditions = [scope_sql]
    if course_id:
        conditions.append('c.id = ?')
        params.append(course_id)
    where_clause = ' AND '.join(conditions)

    conn = None
    try:
        conn = get_db_connection()
        total = conn.execute(f'''
            SELECT COUNT(DISTINCT e.user_id) AS total
            FROM enrollments e JOIN courses c ON e.course_id = c.id AND c.deleted_at IS NULL
            WHERE e.status IN ('active', 'completed') AND {where_clause}
        ''', params).fetchone()['total']
        rows = conn.execute(f'''
            {STUDENT_SUMMARY_SQL}
            WHERE {where_clause}
            GROUP BY u.id
            ORDER BY last_activity DESC, u.id
            LIMIT ? OFFSET ?
        ''', params + [limit, (page - 1) * limit]).fetchall()
    except Exception as e:
        log_error(db_logger, "Failed to list students", error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load students'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'students': rows_to_dicts(rows), 'pagination': _pagination(total, page, limit)})


@teacher_bp.route('/students/search/<query>', methods=['GET'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
def search_students(query):
    query = query.strip()
    if len(query) < 2:
        return jsonify({'success': False, 'message': 'Search query must be at least 2 characters'}), 400

    scope_sql, params = _scope()
    params.extend([f'%{query}%', f'%{query}%'])
    conn = None
    try:
        conn = get_db_connection()
        rows = conn.execute(f'''
            {STUDENT_SUMMARY_SQL}
            WHERE {scope_sql} AND (u.full_name LIKE ? OR u.email LIKE ?)
            GROUP BY u.id
            ORDER BY u.full_name
            LIMIT 50
        ''', params).fetchall()
    except Exception as e:
        log_error(db_logger, "Student search failed", error=str(e))
        return jsonify({'success': False, 'message': 'Failed to search students'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'students': rows_to_dicts(rows)})


@teacher_bp.route('/students/<int:student_id>', methods=['GET'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
def get_student(student_id):
    scope_sql, params = _scope()
    conn = None
    try:
        conn = get_db_connection()
        student = conn.execute('SELECT * FROM users WHERE id = ?', (student_id,)).fetchone()
        if not student:
            return jsonify({'success': False, 'message': 'Student not found'}), 404
        enrollments = conn.execute(f'''
            SELECT e.id, e.course_id, e.status, e.progress, e.enrolled_at, e.completed_at, e.last_accessed_at,
                   c.title AS course_title
            FROM enrollments e JOIN courses c ON e.course_id = c.id
            WHERE e.user_id = ? AND c.deleted_at IS NULL AND {scope_sql}
            ORDER BY e.enrolled_at DESC
        ''', [student_id] + params).fetchall()
        if not enrollments:
            log_warning(app_logger, "Student access denied", user_id=g.current_user['id'], student_id=student_id)
            return jsonify({'success': False, 'message': 'This student is not enrolled in any of your courses'}), 403
        submissions = conn.execute(f'''
            SELECT s.id, s.assignment_id, a.title AS assignment_title, s.submitted_at, s.status, s.score, s.is_late
            FROM assignment_submissions s
            JOIN assignments a ON s.assignment_id = a.id
            JOIN courses c ON a.course_id = c.id
            WHERE s.user_id = ? AND {scope_sql}
            ORDER BY s.submitted_at DESC
        ''', [student_id] + params).fetchall()
    except Exception as e:
        log_error(db_logger, "Failed to load student", student_id=student_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load student'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({
        'success': True,
        'student': serialize_user(student),
        'enrollments': rows_to_dicts(enrollments),
        'submissions': rows_to_dicts(submissions)
    })


@teacher_bp.route('/students/notify', methods=['POST'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
@rate_limit('api')
def notify_students():
    data = request.get_json(silent=True) or {}
    student_ids = data.get('studentIds')
    title = sanitize_input(data.get('title') or '')
    content = sanitize_input(data.get('content') or '')
    course_id = data.get('courseId')

    if not isinstance(student_ids, list) or not student_ids:
        return jsonify({'success': False, 'message': 'studentIds must be a non-empty list'}), 400
    if not title or not content:
        return jsonify({'success': False, 'message': 'Title and content are required'}), 400
    try:
        student_ids = sorted({int(student_id) for student_id in student_ids})
    except (TypeError, ValueError):
        return jsonify({'success': False, 'message': 'studentIds must contain integers'}), 400

    conn = None
    try:
        conn = get_db_connection()
        scope_sql, params = _scope()
        if course_id is not None:
            course, error = _load_course(conn, course_id)
            if error:
                return error
            scope_sql, params = 'c.id = ?', [course['id']]

        placeholders = ', '.join('?' for _ in student_ids)
        rows = conn.execute(f'''
            SELECT DISTINCT e.user_id FROM enrollments e JOIN courses c ON e.course_id = c.id
            WHERE e.user_id IN ({placeholders}) AND e.status IN ('active', 'completed')
              AND c.deleted_at IS NULL AND {scope_sql}
        ''', student_ids + params).fetchall()
        enrolled = {row['user_id'] for row in rows}
        missing = [student_id for student_id in student_ids if student_id not in enrolled]
        if missing:
            return jsonify({'success': False, 'message': 'Some students are not enrolled in your courses',
                            'invalidStudentIds': missing}), 400

        sent = notify_many(conn, student_ids, 'teacher_message', title, content,
                           related_id=course_id, related_type='course' if course_id is not None else None)
        conn.commit()
        log_info(app_logger, "Teacher notification sent", teacher_id=g.current_user['id'], recipients=sent)
    except Exception as e:
        log_error(db_logger, "Failed to notify students", error=str(e))
        return jsonify({'success': False, 'message': 'Failed to send notifications'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'message': f'Notification sent to {sent} students', 'sentCount': sent})
