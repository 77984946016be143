from flask import Blueprint, jsonify, request, g, current_app
import os
from datetime import datetime, timezone

from utils.db_utils import get_db_connection, return_db_connection, rows_to_dicts
from utils.logging_utils import app_logger, db_logger, log_info, log_error, log_warning
from utils.security_utils import sanitize_input, allowed_file, unique_upload_name
from utils.rate_limiter import rate_limit
from utils.auth_utils import token_required, roles_required, can_manage_course, is_admin, ROLE_TEACHER, ROLE_ADMIN
from utils.enrollment_utils import find_enrollment, ACTIVE_STATUSES
from utils.notification_utils import create_notification, notify_many

assignment_bp = Blueprint('assignment_bp', __name__, url_prefix='/api')

DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class AssignmentInputError(ValueError):
    pass


def _request_data():
    """Assignment payloads arrive as JSON or as multipart form fields."""
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form.to_dict()


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _text_field(data, key):
    value = data.get(key)
    if value is None:
        return ''
    if not isinstance(value, str):
        raise AssignmentInputError(f'{key} must be a string')
    return value


def parse_due_date(value):
    """Parse an ISO date/datetime into the stored UTC format; None when empty."""
    if value in (None, ''):
        return None
    text = str(value).strip().replace('Z', '+00:00')
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise AssignmentInputError('dueDate must be an ISO 8601 date')
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed.strftime(DATE_FORMAT)


def _total_points(value):
    if value in (None, ''):
        return None
    try:
        points = int(value)
    except (TypeError, ValueError):
        raise AssignmentInputError('totalPoints must be an integer')
    if points <= 0:
        raise AssignmentInputError('totalPoints must be positive')
    return points


def _uploaded_files(field):
    files = [file for file in request.files.getlist(field) if file and file.filename]
    if len(files) > current_app.config['MAX_FILES_PER_REQUEST']:
        raise AssignmentInputError(f"At most {current_app.config['MAX_FILES_PER_REQUEST']} files can be uploaded at once")
    for file in files:
        if not allowed_file(file.filename):
            raise AssignmentInputError(f'File type not allowed: {file.filename}')
        file.stream.seek(0, os.SEEK_END)
        size = file.stream.tell()
        file.stream.seek(0)
        if size > current_app.config['MAX_FILE_SIZE']:
            raise AssignmentInputError(f'File too large: {file.filename}')
    return files


def _save_upload(file, subdir):
    """Store an upload under UPLOAD_FOLDER/subdir; returns its metadata with a relative path."""
    target_dir = os.path.join(current_app.config['UPLOAD_FOLDER'], subdir)
    os.makedirs(target_dir, exist_ok=True)
    stored_name = unique_upload_name(file.filename)
    absolute_path = os.path.join(target_dir, stored_name)
    file.save(absolute_path)
    return {
        'file_name': file.filename,
        'file_path': os.path.join(subdir, stored_name),
        'file_size': os.path.getsize(absolute_path),
        'file_type': file.mimetype,
    }


def _remove_upload(relative_path):
    if not relative_path:
        return
    absolute_path = os.path.join(current_app.config['UPLOAD_FOLDER'], relative_path)
    try:
        if os.path.exists(absolute_path):
            os.remove(absolute_path)
    except OSError as e:
        log_warning(app_logger, "Could not remove uploaded file", path=relative_path, error=str(e))


def _store_assignment_files(conn, assignment_id, files, saved_paths):
    for file in files:
        meta = _save_upload(file, os.path.join('assignments', str(assignment_id)))
        saved_paths.append(meta['file_path'])
        conn.execute('''
            INSERT INTO assignment_files (assignment_id, file_name, file_path, file_size, file_type)
            VALUES (?, ?, ?, ?, ?)
        ''', (assignment_id, meta['file_name'], meta['file_path'], meta['file_size'], meta['file_type']))


def _load_assignment(conn, assignment_id):
    """Returns (assignment, error_response) for an assignment the caller manages."""
    assignment = conn.execute('''
        SELECT a.*, c.title AS course_title, c.instructor_id
        FROM assignments a JOIN courses c ON a.course_id = c.id
        WHERE a.id = ?
    ''', (assignment_id,)).fetchone()
    if not assignment:
        return None, (jsonify({'success': False, 'message': 'Assignment not found'}), 404)
    if not can_manage_course(assignment):
        log_warning(app_logger, "Assignment access denied", user_id=g.current_user['id'], assignment_id=assignment_id)
        return None, (jsonify({'success': False, 'message': 'You do not have access to this assignment'}), 403)
    return assignment, None


def _assignment_payload(conn, assignment):
    result = dict(assignment)
    result.pop('instructor_id', None)
    result['files'] = rows_to_dicts(conn.execute('''
        SELECT id, file_name, file_path, file_size, file_type, uploaded_at
        FROM assignment_files WHERE assignment_id = ? ORDER BY id
    ''', (assignment['id'],)).fetchall())
    return result


# --- Teacher side ---

@assignment_bp.route('/teacher/assignments', methods=['GET'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
def list_assignments():
    search = (request.args.get('search') or '').strip()
    course_id = request.args.get('courseId')

    conditions = ['c.deleted_at IS NULL']
    params = []
    if not is_admin():
        conditions.append('c.instructor_id = ?')
        params.append(g.current_user['id'])
    if search:
        conditions.append('(a.title LIKE ? OR a.description LIKE ?)')
        params.extend([f'%{search}%', f'%{search}%'])
    if course_id:
        conditions.append('a.course_id = ?')
        params.append(course_id)

    conn = None
    try:
        conn = get_db_connection()
        rows = conn.execute(f'''
            SELECT a.*, c.title AS course_title,
                   (SELECT COUNT(*) FROM assignment_submissions s WHERE s.assignment_id = a.id) AS submission_count,
                   (SELECT COUNT(*) FROM assignment_submissions s WHERE s.assignment_id = a.id AND s.status = 'graded') AS graded_count,
                   (SELECT COUNT(*) FROM enrollments e WHERE e.course_id = a.course_id AND e.status = 'active') AS student_count
            FROM assignments a JOIN courses c ON a.course_id = c.id
            WHERE {' AND '.join(conditions)}
            ORDER BY a.created_at DESC, a.id DESC
        ''', params).fetchall()
    except Exception as e:
        log_error(db_logger, "Failed to list assignments", error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load assignments'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'assignments': rows_to_dicts(rows)})


@assignment_bp.route('/teacher/assignments/<int:assignment_id>', methods=['GET'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
def get_assignment(assignment_id):
    conn = None
    try:
        conn = get_db_connection()
        assignment, error = _load_assignment(conn, assignment_id)
        if error:
            return error
        result = _assignment_payload(conn, assignment)
    except Exception as e:
        log_error(db_logger, "Failed to load assignment", assignment_id=assignment_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load assignment'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'assignment': result})


@assignment_bp.route('/teacher/assignments', methods=['POST'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
@rate_limit('api')
def create_assignment():
    data = _request_data()
    course_id = data.get('courseId') or data.get('course_id')
    try:
        title = sanitize_input(_text_field(data, 'title'))
        description = _text_field(data, 'description')
        if not title or not course_id:
            raise AssignmentInputError('Title and courseId are required')
        due_date = parse_due_date(data.get('dueDate'))
        total_points = _total_points(data.get('totalPoints')) or 100
        files = _uploaded_files('files')
    except AssignmentInputError as e:
        return jsonify({'success': False, 'message': str(e)}), 400

    saved_paths = []
    conn = None
    try:
        conn = get_db_connection()
        course = conn.execute('SELECT * FROM courses WHERE id = ? AND deleted_at IS NULL', (course_id,)).fetchone()
        if not course:
            return jsonify({'success': False, 'message': 'Course not found'}), 404
        if not can_manage_course(course):
            return jsonify({'success': False, 'message': 'You do not have access to this course'}), 403

        cursor = conn.execute('''
            INSERT INTO assignments (course_id, title, description, due_date, total_points, created_by)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', (course['id'], title, description, due_date, total_points, g.current_user['id']))
        assignment_id = cursor.lastrowid
        _store_assignment_files(conn, assignment_id, files, saved_paths)
        conn.commit()
        assignment, _ = _load_assignment(conn, assignment_id)
        result = _assignment_payload(conn, assignment)
        log_info(app_logger, "Assignment created", assignment_id=assignment_id, course_id=course['id'], files=len(files))
    except Exception as e:
        for path in saved_paths:
            _remove_upload(path)
        log_error(db_logger, "Assignment creation failed", error=str(e))
        return jsonify({'success': False, 'message': 'Failed to create assignment'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'message': 'Assignment created successfully', 'assignment': result}), 201


@assignment_bp.route('/teacher/assignments/<int:assignment_id>', methods=['PUT'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
def update_assignment(assignment_id):
    data = _request_data()
    changes = {}
    try:
        if 'title' in data:
            changes['title'] = sanitize_input(_text_field(data, 'title'))
            if not changes['title']:
                raise AssignmentInputError('Title cannot be empty')
        if 'description' in data:
            changes['description'] = _text_field(data, 'description')
        if 'dueDate' in data:
            changes['due_date'] = parse_due_date(data['dueDate'])
        if 'totalPoints' in data:
            changes['total_points'] = _total_points(data['totalPoints']) or 100
        files = _uploaded_files('files')
    except AssignmentInputError as e:
        return jsonify({'success': False, 'message': str(e)}), 400
    if not changes and not files:
        return jsonify({'success': False, 'message': 'No fields to update'}), 400

    saved_paths = []
    conn = None
    try:
        conn = get_db_connection()
        assignment, error = _load_assignment(conn, assignment_id)
        if error:
            return error
        assignments = [f"{column} = ?" for column in changes] + ['updated_at = CURRENT_TIMESTAMP']
        conn.execute(f"UPDATE assignments SET {', '.join(assignments)} WHERE id = ?",
                     list(changes.values()) + [assignment_id])
        _store_assignment_files(conn, assignment_id, files, saved_paths)
        conn.commit()
        assignment, _ = _load_assignment(conn, assignment_id)
        result = _assignment_payload(conn, assignment)
        log_info(app_logger, "Assignment updated", assignment_id=assignment_id, fields=list(changes))
    except Exception as e:
        for path in saved_paths:
            _remove_upload(path)
        log_error(db_logger, "Assignment update failed", assignment_id=assignment_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to update assignment'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'message': 'Assignment updated successfully', 'assignment': result})


@assignment_bp.route('/teacher/assignments/<int:assignment_id>', methods=['DELETE'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
def delete_assignment(assignment_id):
    conn = None
    try:
        conn = get_db_connection()
        assignment, error = _load_assignment(conn, assignment_id)
        if error:
            return error
        paths = [row['file_path'] for row in conn.execute(
            'SELECT file_path FROM assignment_files WHERE assignment_id = ?', (assignment_id,)).fetchall()]
        paths += [row['file_path'] for row in conn.execute(
            'SELECT file_path FROM assignment_submissions WHERE assignment_id = ? AND file_path IS NOT NULL',
            (assignment_id,)).fetchall()]
        conn.execute('DELETE FROM assignment_files WHERE assignment_id = ?', (assignment_id,))
        conn.execute('DELETE FROM assignment_submissions WHERE assignment_id = ?', (assignment_id,))
        conn.execute('DELETE FROM assignments WHERE id = ?', (assignment_id,))
        conn.commit()
        log_info(app_logger, "Assignment deleted", assignment_id=assignment_id)
    except Exception as e:
        log_error(db_logger, "Assignment deletion failed", assignment_id=assignment_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to delete assignment'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    for path in paths:
        _remove_upload(path)
    return jsonify({'success': True, 'message': 'Assignment deleted successfully'})


@assignment_bp.route('/teacher/assignments/<int:assignment_id>/submissions', methods=['GET'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
def list_submissions(assignment_id):
    conn = None
    try:
        conn = get_db_connection()
        assignment, error = _load_assignment(conn, assignment_id)
        if error:
            return error
        rows = conn.execute('''
            SELECT s.*, u.full_name, u.email
            FROM assignment_submissions s JOIN users u ON s.user_id = u.id
            WHERE s.assignment_id = ?
            ORDER BY s.submitted_at DESC, s.id DESC
        ''', (assignment_id,)).fetchall()
    except Exception as e:
        log_error(db_logger, "Failed to list submissions", assignment_id=assignment_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load submissions'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'assignment': {'id': assignment['id'], 'title': assignment['title'],
                                                     'total_points': assignment['total_points']},
                    'submissions': rows_to_dicts(rows)})


@assignment_bp.route('/teacher/assignments/<int:assignment_id>/assign', methods=['POST'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
def assign_to_students(assignment_id):
    data = request.get_json(silent=True) or {}
    try:
        due_date = parse_due_date(data.get('dueDate'))
    except AssignmentInputError as e:
        return jsonify({'success': False, 'message': str(e)}), 400

    conn = None
    try:
        conn = get_db_connection()
        assignment, error = _load_assignment(conn, assignment_id)
        if error:
            return error
        students = [row['user_id'] for row in conn.execute(
            "SELECT user_id FROM enrollments WHERE course_id = ? AND status = 'active'",
            (assignment['course_id'],)).fetchall()]
        if not students:
            return jsonify({'success': False, 'message': 'No active students found in this course'}), 400

        if due_date:
            conn.execute('UPDATE assignments SET due_date = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?',
                         (due_date, assignment_id))
        effective_due = due_date or assignment['due_date']
        content = f"New assignment in {assignment['course_title']}: {assignment['title']}"
        if effective_due:
            content += f" (due {effective_due} UTC)"
        sent = notify_many(conn, students, 'assignment', 'New assignment', content,
                           related_id=assignment_id, related_type='assignment')
        conn.commit()
        log_info(app_logger, "Assignment assigned", assignment_id=assignment_id, students=sent)
    except Exception as e:
        log_error(db_logger, "Assigning assignment failed", assignment_id=assignment_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to assign assignment'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'message': f'Assignment sent to {sent} students', 'studentCount': sent,
                    'dueDate': effective_due})


@assignment_bp.route('/teacher/assignments/submissions/<int:submission_id>/grade', methods=['POST'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
def grade_submission(submission_id):
    data = request.get_json(silent=True) or {}
    if data.get('score') is None:
        return jsonify({'success': False, 'message': 'Score is required'}), 400
    try:
        score = float(data['score'])
    except (TypeError, ValueError):
        return jsonify({'success': False, 'message': 'Score must be a number'}), 400
    try:
        feedback = sanitize_input(_text_field(data, 'feedback'))
    except AssignmentInputError as e:
        return jsonify({'success': False, 'message': str(e)}), 400

    conn = None
    try:
        conn = get_db_connection()
        submission = conn.execute('SELECT * FROM assignment_submissions WHERE id = ?', (submission_id,)).fetchone()
        if not submission:
            return jsonify({'success': False, 'message': 'Submission not found'}), 404
        assignment, error = _load_assignment(conn, submission['assignment_id'])
        if error:
            return error
        if not 0 <= score <= assignment['total_points']:
            return jsonify({'success': False,
                            'message': f"Score must be between 0 and {assignment['total_points']}"}), 400

        conn.execute('''
            UPDATE assignment_submissions
            SET score = ?, feedback = ?, status = 'graded', graded_at = CURRENT_TIMESTAMP, graded_by = ?
            WHERE id = ?
        ''', (score, feedback, g.current_user['id'], submission_id))
        create_notification(conn, submission['user_id'], 'grade', 'Assignment graded',
                            f"Your submission for {assignment['title']} scored {score:g}/{assignment['total_points']}.",
                            related_id=assignment['id'], related_type='assignment')
        conn.commit()
        graded = conn.execute('SELECT * FROM assignment_submissions WHERE id = ?', (submission_id,)).fetchone()
        log_info(app_logger, "Submission graded", submission_id=submission_id, score=score, grader=g.current_user['id'])
    except Exception as e:
        log_error(db_logger, "Grading failed", submission_id=submission_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to grade submission'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'message': 'Submission graded', 'submission': dict(graded)})


@assignment_bp.route('/teacher/assignments/files/<int:file_id>', methods=['DELETE'])
@roles_required(ROLE_TEACHER, ROLE_ADMIN)
def delete_assignment_file(file_id):
    conn = None
    try:
        conn = get_db_connection()
        file_row = conn.execute('SELECT * FROM assignment_files WHERE id = ?', (file_id,)).fetchone()
        if not file_row:
            return jsonify({'success': False, 'message': 'File not found'}), 404
        assignment, error = _load_assignment(conn, file_row['assignment_id'])
        if error:
            return error
        conn.execute('DELETE FROM assignment_files WHERE id = ?', (file_id,))
        conn.commit()
    except Exception as e:
        log_error(db_logger, "Assignment file deletion failed", file_id=file_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to delete file'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    _remove_upload(file_row['file_path'])
    return jsonify({'success': True, 'message': 'File deleted successfully'})


# --- Student side ---

@assignment_bp.route('/assignments', methods=['GET'])
@token_required
def student_assignments():
    conn = None
    try:
        conn = get_db_connection()
        rows = conn.execute('''
            SELECT a.id, a.course_id, a.title, a.description, a.due_date, a.total_points, a.created_at,
                   c.title AS course_title,
                   s.id AS submission_id, s.status AS submission_status, s.submitted_at, s.is_late,
                   s.score, s.feedback
            FROM assignments a
            JOIN courses c ON a.course_id = c.id AND c.deleted_at IS NULL
            JOIN enrollments e ON e.course_id = a.course_id AND e.user_id = ? AND e.status IN ('active', 'completed')
            LEFT JOIN assignment_submissions s ON s.assignment_id = a.id AND s.user_id = e.user_id
            ORDER BY a.due_date IS NULL, a.due_date, a.id
        ''', (g.current_user['id'],)).fetchall()
    except Exception as e:
        log_error(db_logger, "Failed to load student assignments", error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load assignments'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'assignments': rows_to_dicts(rows)})


@assignment_bp.route('/assignments/<int:assignment_id>/submit', methods=['POST'])
@token_required
@rate_limit('api')
def submit_assignment(assignment_id):
    data = _request_data()
    try:
        content = _text_field(data, 'content')
        files = _uploaded_files('file')
    except AssignmentInputError as e:
        return jsonify({'success': False, 'message': str(e)}), 400
    if len(files) > 1:
        return jsonify({'success': False, 'message': 'Only one file can be submitted'}), 400
    if not content.strip() and not files:
        return jsonify({'success': False, 'message': 'Submission content or a file is required'}), 400

    user_id = g.current_user['id']
    saved_path = None
    old_path = None
    conn = None
    try:
        conn = get_db_connection()
        assignment = conn.execute('SELECT * FROM assignments WHERE id = ?', (assignment_id,)).fetchone()
        if not assignment:
            return jsonify({'success': False, 'message': 'Assignment not found'}), 404
        if not find_enrollment(conn, user_id, assignment['course_id'], ACTIVE_STATUSES):
            return jsonify({'success': False, 'message': 'You are not enrolled in this course'}), 403

        # Late work is accepted but flagged
        is_late = bool(assignment['due_date']) and _utcnow() > datetime.strptime(assignment['due_date'], DATE_FORMAT)
        if files:
            saved_path = _save_upload(files[0], os.path.join('submissions', str(assignment_id)))['file_path']

        existing = conn.execute('SELECT * FROM assignment_submissions WHERE assignment_id = ? AND user_id = ?',
                                (assignment_id, user_id)).fetchone()
        if existing:
            # Resubmission replaces the previous work and clears its grade
            old_path = existing['file_path'] if saved_path else None
            conn.execute('''
                UPDATE assignment_submissions
                SET content = ?, file_path = COALESCE(?, file_path), submitted_at = CURRENT_TIMESTAMP, is_late = ?,
                    score = NULL, feedback = NULL, status = 'submitted', graded_at = NULL, graded_by = NULL
                WHERE id = ?
            ''', (content, saved_path, is_late, existing['id']))
            submission_id = existing['id']
        else:
            cursor = conn.execute('''
                INSERT INTO assignment_submissions (assignment_id, user_id, content, file_path, is_late)
                VALUES (?, ?, ?, ?, ?)
            ''', (assignment_id, user_id, content, saved_path, is_late))
            submission_id = cursor.lastrowid
        conn.commit()
        submission = conn.execute('SELECT * FROM assignment_submissions WHERE id = ?', (submission_id,)).fetchone()
        log_info(app_logger, "Assignment submitted", assignment_id=assignment_id, user_id=user_id, is_late=is_late)
    except Exception as e:
        _remove_upload(saved_path)
        log_error(db_logger, "Assignment submission failed", assignment_id=assignment_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to submit assignment'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    _remove_upload(old_path)
    return jsonify({'success': True, 'message': 'Assignment submitted successfully', 'submission': dict(submission)}), 201
