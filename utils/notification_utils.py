from utils.logging_utils import app_logger, log_debug

def create_notification(conn, user_id, notification_type, title, content,
                        related_id=None, related_type=None, priority='normal'):
    """Insert a notification using the caller's connection (caller commits)."""
    cursor = conn.execute('''
        INSERT INTO notifications (user_id, type, title, content, related_id, related_type, priority, is_read)
        VALUES (?, ?, ?, ?, ?, ?, ?, 0)
    ''', (user_id, notification_type, title, content, related_id, related_type, priority))
    log_debug(app_logger, "Notification queued", user_id=user_id, type=notification_type, related_id=related_id)
    return cursor.lastrowid

def notify_many(conn, user_ids, notification_type, title, content,
                related_id=None, related_type=None, priority='normal'):
    count = 0
    for user_id in user_ids:
        create_notification(conn, user_id, notification_type, title, content,
                            related_id=related_id, related_type=related_type, priority=priority)
        count += 1
    return count
