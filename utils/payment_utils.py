"""Payment transaction bookkeeping shared by the free-enrollment and payment routes."""
import json
import random
import time
import uuid

from flask import has_request_context, request

from utils.logging_utils import payment_logger, log_info, log_warning
from utils.enrollment_utils import enroll_user_in_course
from utils.notification_utils import create_notification



def _now_ms():
    return int(time.time() * 1000)


def generate_transaction_code(method):
    if method == 'free':
        return f"FREE-{uuid.uuid4()}"
    if method == 'vnpay':
        return f"VNP{_now_ms()}"
    if method == 'paypal':
        return f"PPL{_now_ms()}"
    if method == 'vietqr':
        return f"VQR{_now_ms()}{random.randint(0, 999):03d}"
    raise ValueError(f"Unknown payment method: {method}")


def record_payment_history(conn, transaction_id, status, message, notes=None):
    """Append an audit row for a transaction step, tagged with the caller's IP and agent."""
    ip_address = user_agent = None
    if has_request_context():
        ip_address = request.headers.get('X-Forwarded-For', request.remote_addr)
        user_agent = request.headers.get('User-Agent')
    conn.execute('''
        INSERT INTO payment_history (transaction_id, status, message, notes, ip_address, user_agent)
        VALUES (?, ?, ?, ?, ?, ?)
    ''', (transaction_id, status, message, notes, ip_address, user_agent))


def create_transaction(conn, user_id, course, amount, method, status='pending', details=None):
    code = generate_transaction_code(method)
    cursor = conn.execute('''
        INSERT INTO payment_transactions
            (user_id, course_id, amount, currency, payment_method, transaction_code, payment_status,
             payment_details, payment_date)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, CASE WHEN ? = 'completed' THEN CURRENT_TIMESTAMP END)
    ''', (user_id, course['id'], amount, course['currency'] or 'VND', method, code, status,
          json.dumps(details) if details is not None else None, status))
    transaction = conn.execute('SELECT * FROM payment_transactions WHERE id = ?', (cursor.lastrowid,)).fetchone()
    record_payment_history(conn, transaction['id'], status, f'{method} transaction created')
    log_info(payment_logger, "Payment transaction created", transaction_id=transaction['id'],
             transaction_code=code, method=method, amount=amount, user_id=user_id)
    return transaction


def merge_payment_details(transaction, updates):
    details = {}
    if transaction['payment_details']:
        try:
            details = json.loads(transaction['payment_details'])
        except ValueError:
            details = {}
    details.update(updates)
    return details


def update_transaction_status(conn, transaction, status, message, details=None, notes=None):
    params = [status]
    assignments = ['payment_status = ?', 'updated_at = CURRENT_TIMESTAMP']
    if details is not None:
        assignments.append('payment_details = ?')
        params.append(json.dumps(merge_payment_details(transaction, details)))
    if notes is not None:
        assignments.append('notes = ?')
        params.append(notes)
    if status == 'completed':
        assignments.append('payment_date = CURRENT_TIMESTAMP')
    params.append(transaction['id'])
    conn.execute(f"UPDATE payment_transactions SET {', '.join(assignments)} WHERE id = ?", params)
    record_payment_history(conn, transaction['id'], status, message, notes)
    log_info(payment_logger, "Payment transaction updated", transaction_id=transaction['id'], status=status)


def complete_transaction(conn, transaction, message, details=None):
    """Mark a transaction paid and enroll its user; a completed transaction is left untouched.

    Returns (enrollment, newly_completed).
    """
    if transaction['payment_status'] == 'completed':
        log_warning(payment_logger, "Transaction already completed", transaction_id=transaction['id'])
        enrollment, _ = enroll_user_in_course(conn, transaction['user_id'], transaction['course_id'])
        return enrollment, False

    update_transaction_status(conn, transaction, 'completed', message, details=details)
    enrollment, _ = enroll_user_in_course(conn, transaction['user_id'], transaction['course_id'])
    create_notification(conn, transaction['user_id'], 'payment', 'Payment successful',
                        f"Payment {transaction['transaction_code']} was received.",
                        related_id=transaction['id'], related_type='payment')
    return enrollment, True


def cancel_stale_pending(conn, user_id, ttl_minutes):
    """Cancel the user's pending transactions older than ttl_minutes; returns how many."""
    rows = conn.execute('''
        SELECT * FROM payment_transactions
        WHERE user_id = ? AND payment_status = 'pending'
          AND created_at < datetime('now', ?)
    ''', (user_id, f'-{int(ttl_minutes)} minutes')).fetchall()
    for transaction in rows:
        update_transaction_status(conn, transaction, 'cancelled', 'Payment timed out',
                                  notes=f'Automatically cancelled after {ttl_minutes} minutes')
    return len(rows)
