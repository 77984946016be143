"""Enrollment and progress bookkeeping shared by the enrollment, payment and teacher routes.

All helpers take an open connection and leave committing to the caller, so a
payment callback can complete a transaction and enroll the student atomically.
"""
from utils.logging_utils import app_logger, log_info
from utils.notification_utils import create_notification

ACTIVE_STATUSES = ('active', 'completed')


def effective_price(course):
    """Price the student pays: the discount price when one is set, else the list price."""
    discount = course['discount_price']
    price = discount if discount else course['price']
    return float(price or 0)


def get_published_course(conn, course_id):
    return conn.execute('''
        SELECT * FROM courses
        WHERE id = ? AND is_published = 1 AND status = 'published' AND deleted_at IS NULL
    ''', (course_id,)).fetchone()


def find_enrollment(conn, user_id, course_id, statuses=None):
    query = 'SELECT * FROM enrollments WHERE user_id = ? AND course_id = ?'
    params = [user_id, course_id]
    if statuses:
        query += f" AND status IN ({', '.join('?' for _ in statuses)})"
        params.extend(statuses)
    return conn.execute(query, params).fetchone()


def refresh_enrolled_count(conn, course_id):
    conn.execute(f'''
        UPDATE courses SET enrolled_count = (
            SELECT COUNT(*) FROM enrollments
            WHERE course_id = ? AND status IN ({', '.join('?' for _ in ACTIVE_STATUSES)})
        )
        WHERE id = ?
    ''', (course_id, *ACTIVE_STATUSES, course_id))


def enroll_user_in_course(conn, user_id, course_id):
    """Create an active enrollment unless one exists; returns (row, created)."""
    existing = find_enrollment(conn, user_id, course_id)
    if existing and existing['status'] in ACTIVE_STATUSES:
        log_info(app_logger, "User already enrolled", user_id=user_id, course_id=course_id)
        return existing, False

    if existing:
        # Cancelled enrollments are reactivated rather than duplicated
        enrollment_id = existing['id']
        conn.execute("UPDATE enrollments SET status = 'active', last_accessed_at = CURRENT_TIMESTAMP WHERE id = ?",
                     (enrollment_id,))
        # Lessons may have changed while the enrollment was cancelled
        recalculate_progress(conn, enrollment_id)
        log_info(app_logger, "Enrollment reactivated", user_id=user_id, course_id=course_id,
                 enrollment_id=enrollment_id)
    else:
        cursor = conn.execute('''
            INSERT INTO enrollments (user_id, course_id, status, progress, last_accessed_at)
            VALUES (?, ?, 'active', 0, CURRENT_TIMESTAMP)
        ''', (user_id, course_id))
        enrollment_id = cursor.lastrowid
        log_info(app_logger, "User enrolled in course", user_id=user_id, course_id=course_id,
                 enrollment_id=enrollment_id)
    refresh_enrolled_count(conn, course_id)

    course = conn.execute('SELECT title FROM courses WHERE id = ?', (course_id,)).fetchone()
    title = course['title'] if course else f'course {course_id}'
    create_notification(conn, user_id, 'enrollment', 'Enrollment confirmed',
                        f'You are now enrolled in {title}.', related_id=course_id, related_type='course')

    return conn.execute('SELECT * FROM enrollments WHERE id = ?', (enrollment_id,)).fetchone(), True


def completed_lesson_ids(conn, enrollment_id):
    rows = conn.execute('''
        SELECT lp.lesson_id
        FROM lesson_progress lp
        JOIN enrollments e ON lp.enrollment_id = e.id
        JOIN lessons l ON lp.lesson_id = l.id AND l.course_id = e.course_id
        WHERE lp.enrollment_id = ? AND lp.status = 'completed'
        ORDER BY lp.lesson_id
    ''', (enrollment_id,)).fetchall()
    return [row['lesson_id'] for row in rows]


def progress_percentage(completed, total):
    """Whole percentage, halves rounded up."""
    if total <= 0:
        return 0
    return min(100, (completed * 200 + total) // (2 * total))


def recalculate_progress(conn, enrollment_id):
    """Recompute the enrollment's percentage from its course's current lessons."""
    enrollment = conn.execute('SELECT * FROM enrollments WHERE id = ?', (enrollment_id,)).fetchone()
    if enrollment is None:
        return 0

    total = conn.execute('SELECT COUNT(*) AS total FROM lessons WHERE course_id = ?',
                         (enrollment['course_id'],)).fetchone()['total']
    completed = len(completed_lesson_ids(conn, enrollment_id))
    progress = progress_percentage(completed, total)

    conn.execute('UPDATE enrollments SET progress = ? WHERE id = ?', (progress, enrollment_id))

    if progress == 100 and enrollment['status'] != 'completed':
        conn.execute('''
            UPDATE enrollments SET status = 'completed', completed_at = CURRENT_TIMESTAMP, certificate_issued = 1
            WHERE id = ?
        ''', (enrollment_id,))
        course = conn.execute('SELECT title FROM courses WHERE id = ?', (enrollment['course_id'],)).fetchone()
        create_notification(conn, enrollment['user_id'], 'course_completed', 'Course completed',
                            f"Congratulations! You have completed {course['title'] if course else 'the course'}.",
                            related_id=enrollment['course_id'], related_type='course', priority='high')
        log_info(app_logger, "Enrollment completed", enrollment_id=enrollment_id, user_id=enrollment['user_id'])
    elif progress < 100 and enrollment['status'] == 'completed':
        # New lessons were added after completion
        conn.execute("UPDATE enrollments SET status = 'active', completed_at = NULL WHERE id = ?", (enrollment_id,))

    return progress


def recalculate_course_progress(conn, course_id):
    rows = conn.execute("SELECT id FROM enrollments WHERE course_id = ? AND status IN ('active', 'completed')",
                        (course_id,)).fetchall()
    for row in rows:
        recalculate_progress(conn, row['id'])
    return len(rows)


def mark_lesson_completed(conn, enrollment, lesson_id, time_spent=None, last_position=None):
    """Upsert the lesson's progress row as completed and refresh the enrollment."""
    existing = conn.execute('SELECT id FROM lesson_progress WHERE enrollment_id = ? AND lesson_id = ?',
                            (enrollment['id'], lesson_id)).fetchone()
    if existing:
        conn.execute('''
            UPDATE lesson_progress
            SET status = 'completed',
                completed_at = COALESCE(completed_at, CURRENT_TIMESTAMP),
                time_spent = COALESCE(?, time_spent),
                last_position = COALESCE(?, last_position)
            WHERE id = ?
        ''', (time_spent, last_position, existing['id']))
    else:
        conn.execute('''
            INSERT INTO lesson_progress (enrollment_id, lesson_id, status, completed_at, time_spent, last_position)
            VALUES (?, ?, 'completed', CURRENT_TIMESTAMP, ?, ?)
        ''', (enrollment['id'], lesson_id, time_spent or 0, last_position or 0))

    conn.execute('''
        UPDATE enrollments SET last_accessed_lesson_id = ?, last_accessed_at = CURRENT_TIMESTAMP
        WHERE id = ?
    ''', (lesson_id, enrollment['id']))

    progress = recalculate_progress(conn, enrollment['id'])
    return {
        'lessonId': lesson_id,
        'status': 'completed',
        'progress': progress,
        'completedLessons': completed_lesson_ids(conn, enrollment['id'])
    }
