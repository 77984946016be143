from flask import Blueprint, jsonify, request, g, current_app, redirect, url_for
import json
from urllib.parse import urlencode

from utils.db_utils import get_db_connection, return_db_connection, rows_to_dicts
from utils.logging_utils import payment_logger, db_logger, log_info, log_error, log_warning
from utils.rate_limiter import rate_limit
from utils.auth_utils import token_required, is_admin
from utils.enrollment_utils import get_published_course, find_enrollment, effective_price, ACTIVE_STATUSES
from utils.payment_utils import (create_transaction, update_transaction_status, complete_transaction,
                                 cancel_stale_pending, merge_payment_details)
from utils.payment_gateways import (VNPayClient, PayPalClient, PaymentGatewayError, build_vietqr_payment,
                                    sanitize_bank_code)

payment_bp = Blueprint('payment_bp', __name__, url_prefix='/api')


def get_vnpay_client():
    config = current_app.config
    return VNPayClient(config.get('VNP_TMN_CODE'), config.get('VNP_HASH_SECRET'), config.get('VNP_URL'))


def get_paypal_client():
    """One client per app so the OAuth token cache survives between requests."""
    client = current_app.extensions.get('paypal_client')
    if client is None:
        config = current_app.config
        client = PayPalClient(config.get('PAYPAL_CLIENT_ID'), config.get('PAYPAL_CLIENT_SECRET'),
                              mode=config.get('PAYPAL_MODE', 'sandbox'),
                              vnd_rate=config.get('PAYPAL_VND_RATE', 25000.0))
        current_app.extensions['paypal_client'] = client
    return client


def _client_ip():
    return request.headers.get('X-Forwarded-For', request.remote_addr)


def _payment_details(transaction):
    return merge_payment_details(transaction, {})


def _prepare_purchase(conn, user_id, course_id):
    """Checks shared by every paid checkout; returns (course, amount, error_response)."""
    course = get_published_course(conn, course_id)
    if not course:
        return None, None, (jsonify({'success': False, 'message': 'Course not found'}), 404)
    if find_enrollment(conn, user_id, course_id, ACTIVE_STATUSES):
        return None, None, (jsonify({'success': False, 'message': 'You are already enrolled in this course'}), 400)
    amount = effective_price(course)
    if amount <= 0:
        return None, None, (jsonify({'success': False, 'message': 'Free courses should use the free enrollment endpoint'}), 400)
    return course, amount, None


def _get_user_transaction(conn, transaction_id, method=None):
    transaction = conn.execute('SELECT * FROM payment_transactions WHERE id = ?', (transaction_id,)).fetchone()
    if not transaction:
        return None
    if transaction['user_id'] != g.current_user['id'] and not is_admin():
        return None
    if method and transaction['payment_method'] != method:
        return None
    return transaction


def _result_redirect(status, **params):
    query = urlencode({'status': status, **{key: value for key, value in params.items() if value is not None}})
    return redirect(f"{current_app.config['CLIENT_URL']}/payment-result?{query}")


# --- VNPay ---

@payment_bp.route('/courses/<int:course_id>/create-payment', methods=['POST'])
@token_required
@rate_limit('api')
def create_vnpay_payment(course_id):
    data = request.get_json(silent=True) or {}
    bank_code = sanitize_bank_code(data.get('bankCode'))
    user_id = g.current_user['id']

    conn = None
    try:
        conn = get_db_connection()
        course, amount, error = _prepare_purchase(conn, user_id, course_id)
        if error:
            return error

        transaction = create_transaction(conn, user_id, course, amount, 'vnpay',
                                         details={'bankCode': bank_code} if bank_code else None)
        client = get_vnpay_client()
        return_url = current_app.config.get('VNP_RETURN_URL') or url_for('payment_bp.vnpay_callback', _external=True)
        try:
            payment_url = client.build_payment_url(
                transaction['transaction_code'], amount,
                f"Payment for course {course['id']}: {course['title']}"[:255],
                return_url, _client_ip(), bank_code=bank_code)
        except PaymentGatewayError as e:
            update_transaction_status(conn, transaction, 'failed', str(e))
            conn.commit()
            log_error(payment_logger, "VNPay payment URL could not be built", transaction_id=transaction['id'], error=str(e))
            return jsonify({'success': False, 'message': str(e)}), 500

        conn.commit()
        log_info(payment_logger, "VNPay payment created", transaction_id=transaction['id'], course_id=course_id)
    except Exception as e:
        log_error(db_logger, "VNPay payment creation failed", course_id=course_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to create payment'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({
        'success': True,
        'paymentUrl': payment_url,
        'transactionId': transaction['id'],
        'transactionCode': transaction['transaction_code']
    })


@payment_bp.route('/payment/vnpay/callback', methods=['GET'])
def vnpay_callback():
    result = get_vnpay_client().verify_return(request.args.to_dict())
    txn_ref = result['txn_ref']

    conn = None
    try:
        conn = get_db_connection()
        transaction = conn.execute('SELECT * FROM payment_transactions WHERE transaction_code = ?', (txn_ref,)).fetchone()
        if not transaction:
            log_warning(payment_logger, "VNPay callback for unknown transaction", txn_ref=txn_ref)
            return _result_redirect('error', message='Transaction not found')

        if not result['is_verified']:
            update_transaction_status(conn, transaction, transaction['payment_status'], 'Invalid VNPay signature')
            conn.commit()
            log_warning(payment_logger, "VNPay callback signature mismatch", transaction_id=transaction['id'])
            return _result_redirect('invalid', transactionId=transaction['id'])

        if transaction['payment_status'] == 'completed':
            return _result_redirect('success', courseId=transaction['course_id'], transactionId=transaction['id'])

        if result['is_success']:
            complete_transaction(conn, transaction, 'VNPay payment successful', details={
                'vnpTransactionNo': result['transaction_no'],
                'bankCode': result['bank_code'],
                'responseCode': result['response_code'],
            })
            conn.commit()
            log_info(payment_logger, "VNPay payment completed", transaction_id=transaction['id'])
            return _result_redirect('success', courseId=transaction['course_id'], transactionId=transaction['id'])

        update_transaction_status(conn, transaction, 'failed', f"VNPay payment failed with code {result['response_code']}",
                                  details={'responseCode': result['response_code']})
        conn.commit()
        log_warning(payment_logger, "VNPay payment failed", transaction_id=transaction['id'], code=result['response_code'])
        return _result_redirect('failed', courseId=transaction['course_id'], transactionId=transaction['id'],
                                code=result['response_code'])
    except Exception as e:
        log_error(payment_logger, "VNPay callback processing failed", txn_ref=txn_ref, error=str(e))
        return _result_redirect('error', message='Payment processing failed')
    finally:
        if conn:
            return_db_connection(conn)


@payment_bp.route('/payment/vnpay/transaction/<int:transaction_id>', methods=['GET'])
@token_required
def vnpay_transaction(transaction_id):
    conn = None
    try:
        conn = get_db_connection()
        transaction = _get_user_transaction(conn, transaction_id)
        if not transaction:
            return jsonify({'success': False, 'message': 'Transaction not found'}), 404
        course = conn.execute('SELECT title FROM courses WHERE id = ?', (transaction['course_id'],)).fetchone()
    except Exception as e:
        log_error(db_logger, "Failed to load transaction", transaction_id=transaction_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load transaction'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({
        'success': True,
        'transaction': {
            'id': transaction['id'],
            'transactionCode': transaction['transaction_code'],
            'amount': transaction['amount'],
            'currency': transaction['currency'],
            'paymentMethod': transaction['payment_method'],
            'status': transaction['payment_status'],
            'paymentDate': transaction['payment_date'],
            'createdAt': transaction['created_at'],
            'courseId': transaction['course_id'],
            'courseTitle': course['title'] if course else None,
            'details': _payment_details(transaction)
        }
    })


# --- VietQR ---

@payment_bp.route('/courses/<int:course_id>/create-vietqr', methods=['POST'])
@token_required
@rate_limit('api')
def create_vietqr_payment(course_id):
    user_id = g.current_user['id']
    conn = None
    try:
        conn = get_db_connection()
        course, amount, error = _prepare_purchase(conn, user_id, course_id)
        if error:
            return error

        transaction = create_transaction(conn, user_id, course, amount, 'vietqr')
        qr_data = build_vietqr_payment(current_app.config, transaction['transaction_code'], amount)
        conn.execute('UPDATE payment_transactions SET payment_details = ? WHERE id = ?',
                     (json.dumps(qr_data), transaction['id']))
        conn.commit()
        log_info(payment_logger, "VietQR payment created", transaction_id=transaction['id'], course_id=course_id)
    except Exception as e:
        log_error(db_logger, "VietQR payment creation failed", course_id=course_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to create VietQR payment'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'transactionId': transaction['id'], **qr_data})


@payment_bp.route('/payments/verify-vietqr', methods=['POST'])
@token_required
@rate_limit('api')
def verify_vietqr_payment():
    data = request.get_json(silent=True) or {}
    transaction_code = data.get('transactionCode')
    if not transaction_code:
        return jsonify({'success': False, 'message': 'transactionCode is required'}), 400

    conn = None
    try:
        conn = get_db_connection()
        transaction = conn.execute('''
            SELECT * FROM payment_transactions WHERE transaction_code = ? AND payment_method = 'vietqr'
        ''', (transaction_code,)).fetchone()
        if not transaction or (transaction['user_id'] != g.current_user['id'] and not is_admin()):
            return jsonify({'success': False, 'message': 'Transaction not found'}), 404

        if transaction['payment_status'] in ('cancelled', 'failed', 'refunded'):
            return jsonify({'success': False, 'message': f"Transaction is {transaction['payment_status']}"}), 400

        enrollment, newly_completed = complete_transaction(conn, transaction, 'VietQR transfer confirmed')
        conn.commit()
    except Exception as e:
        log_error(payment_logger, "VietQR verification failed", transaction_code=transaction_code, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to verify payment'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({
        'success': True,
        'message': 'Payment verified' if newly_completed else 'Payment already processed',
        'alreadyProcessed': not newly_completed,
        'courseId': transaction['course_id'],
        'enrollment': dict(enrollment)
    })


# --- PayPal ---

def _place_paypal_order(conn, transaction, message):
    """Create a PayPal order for a pending transaction and store its approval link; returns (order_id, approval_url)."""
    config = current_app.config
    client = get_paypal_client()
    return_base = config.get('PAYPAL_RETURN_URL') or f"{config['CLIENT_URL']}/payment/paypal/success"
    cancel_base = config.get('PAYPAL_CANCEL_URL') or f"{config['CLIENT_URL']}/payment/paypal/cancel"
    query = urlencode({'transactionId': transaction['id']})
    order = client.create_order(transaction, f"{return_base}?{query}", f"{cancel_base}?{query}")

    approval_url = PayPalClient.approval_url(order)
    update_transaction_status(conn, transaction, 'pending', message, details={
        'orderId': order.get('id'),
        'approvalUrl': approval_url,
        'usdAmount': client.to_usd(transaction['amount'], transaction['currency']),
    })
    return order.get('id'), approval_url


@payment_bp.route('/courses/<int:course_id>/create-paypal-order', methods=['POST'])
@token_required
@rate_limit('api')
def create_paypal_order(course_id):
    user_id = g.current_user['id']
    conn = None
    try:
        conn = get_db_connection()
        course, amount, error = _prepare_purchase(conn, user_id, course_id)
        if error:
            return error

        transaction = create_transaction(conn, user_id, course, amount, 'paypal')
        try:
            order_id, approval_url = _place_paypal_order(conn, transaction, 'PayPal order created')
        except PaymentGatewayError as e:
            update_transaction_status(conn, transaction, 'failed', f'PayPal order creation failed: {e}')
            conn.commit()
            log_error(payment_logger, "PayPal order creation failed", transaction_id=transaction['id'], error=str(e))
            return jsonify({'success': False, 'message': 'Failed to create PayPal order'}), 500
        conn.commit()
    except Exception as e:
        log_error(db_logger, "PayPal order creation failed", course_id=course_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to create PayPal order'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({
        'success': True,
        'orderId': order_id,
        'approvalUrl': approval_url,
        'transactionId': transaction['id'],
        'transactionCode': transaction['transaction_code']
    })


@payment_bp.route('/payment/paypal/approval/<int:transaction_id>', methods=['GET'])
@token_required
def paypal_approval_url(transaction_id):
    """Approval link for resuming a pending PayPal checkout; a fresh order is placed when none is stored."""
    conn = None
    try:
        conn = get_db_connection()
        transaction = conn.execute('''
            SELECT * FROM payment_transactions
            WHERE id = ? AND user_id = ? AND payment_method = 'paypal' AND payment_status = 'pending'
        ''', (transaction_id, g.current_user['id'])).fetchone()
        if not transaction:
            return jsonify({'success': False, 'message': 'Pending PayPal transaction not found'}), 404

        approval_url = _payment_details(transaction).get('approvalUrl')
        resumed = bool(approval_url)
        if not approval_url:
            try:
                _, approval_url = _place_paypal_order(conn, transaction, 'PayPal order re-created')
            except PaymentGatewayError as e:
                log_error(payment_logger, "PayPal order re-creation failed", transaction_id=transaction_id,
                          error=str(e))
                return jsonify({'success': False, 'message': 'Could not generate PayPal approval URL'}), 500
            if not approval_url:
                conn.rollback()
                return jsonify({'success': False, 'message': 'Could not generate PayPal approval URL'}), 500
            conn.commit()
        log_info(payment_logger, "PayPal approval URL issued", transaction_id=transaction_id, resumed=resumed)
    except Exception as e:
        log_error(payment_logger, "PayPal approval lookup failed", transaction_id=transaction_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to get PayPal approval URL'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'approvalUrl': approval_url, 'transactionId': transaction['id']})


@payment_bp.route('/payment/paypal/success', methods=['POST'])
@token_required
@rate_limit('api')
def paypal_success():
    data = request.get_json(silent=True) or {}
    transaction_id = data.get('transactionId')
    payer_id = data.get('PayerID') or data.get('payerId')
    if not transaction_id:
        return jsonify({'success': False, 'message': 'transactionId is required'}), 400

    conn = None
    try:
        conn = get_db_connection()
        transaction = _get_user_transaction(conn, transaction_id, 'paypal')
        if not transaction:
            return jsonify({'success': False, 'message': 'Transaction not found'}), 404

        if transaction['payment_status'] == 'completed':
            enrollment, _ = complete_transaction(conn, transaction, 'PayPal payment already captured')
            conn.commit()
            return jsonify({'success': True, 'message': 'Payment already processed', 'alreadyProcessed': True,
                            'courseId': transaction['course_id'], 'enrollment': dict(enrollment)})

        order_id = _payment_details(transaction).get('orderId') or data.get('token')
        if not order_id:
            return jsonify({'success': False, 'message': 'PayPal order not found for this transaction'}), 400

        try:
            capture = get_paypal_client().validate_and_capture(order_id)
        except PaymentGatewayError as e:
            update_transaction_status(conn, transaction, 'failed', f'PayPal capture failed: {e}',
                                      details={'payerId': payer_id})
            conn.commit()
            log_error(payment_logger, "PayPal capture failed", transaction_id=transaction['id'], error=str(e))
            return jsonify({'success': False, 'message': 'Payment capture failed'}), 400

        capture_id = None
        for unit in capture.get('purchase_units', []):
            for item in unit.get('payments', {}).get('captures', []):
                capture_id = item.get('id')
        enrollment, _ = complete_transaction(conn, transaction, 'PayPal payment captured', details={
            'payerId': payer_id,
            'captureId': capture_id,
            'captureStatus': capture.get('status'),
        })
        conn.commit()
        log_info(payment_logger, "PayPal payment completed", transaction_id=transaction['id'], capture_id=capture_id)
    except Exception as e:
        log_error(payment_logger, "PayPal success handling failed", transaction_id=transaction_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to process payment'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'message': 'Payment successful', 'alreadyProcessed': False,
                    'courseId': transaction['course_id'], 'enrollment': dict(enrollment)})


@payment_bp.route('/payment/paypal/cancel', methods=['POST'])
@token_required
def paypal_cancel():
    data = request.get_json(silent=True) or {}
    transaction_id = data.get('transactionId')
    if not transaction_id:
        return jsonify({'success': False, 'message': 'transactionId is required'}), 400

    conn = None
    try:
        conn = get_db_connection()
        transaction = _get_user_transaction(conn, transaction_id, 'paypal')
        if not transaction:
            return jsonify({'success': False, 'message': 'Transaction not found'}), 404
        if transaction['payment_status'] == 'completed':
            return jsonify({'success': False, 'message': 'Cannot cancel a completed transaction'}), 400
        update_transaction_status(conn, transaction, 'cancelled', 'PayPal payment cancelled by user')
        conn.commit()
    except Exception as e:
        log_error(payment_logger, "PayPal cancel handling failed", transaction_id=transaction_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to cancel payment'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'message': 'Payment cancelled'})


# --- History ---

@payment_bp.route('/user/payment-history', methods=['GET'])
@token_required
def user_payment_history():
    user_id = g.current_user['id']
    conn = None
    try:
        conn = get_db_connection()
        cancelled = cancel_stale_pending(conn, user_id, current_app.config['PENDING_PAYMENT_TTL_MINUTES'])
        conn.commit()
        if cancelled:
            log_info(payment_logger, "Stale pending payments cancelled", user_id=user_id, count=cancelled)
        rows = conn.execute('''
            SELECT t.id, t.course_id, t.amount, t.currency, t.payment_method, t.transaction_code,
                   t.payment_status, t.payment_date, t.notes, t.created_at, t.updated_at,
                   c.title AS course_title, c.image_url AS course_image
            FROM payment_transactions t
            LEFT JOIN courses c ON t.course_id = c.id
            WHERE t.user_id = ?
            ORDER BY t.created_at DESC, t.id DESC
        ''', (user_id,)).fetchall()
    except Exception as e:
        log_error(db_logger, "Failed to load payment history", user_id=user_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load payment history'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'payments': rows_to_dicts(rows)})


@payment_bp.route('/courses/<int:course_id>/payment-history', methods=['GET'])
@token_required
def course_payment_history(course_id):
    conn = None
    try:
        conn = get_db_connection()
        transactions = conn.execute('''
            SELECT * FROM payment_transactions WHERE user_id = ? AND course_id = ?
            ORDER BY created_at DESC, id DESC
        ''', (g.current_user['id'], course_id)).fetchall()
        payments = []
        for transaction in transactions:
            payment = dict(transaction)
            payment['payment_details'] = _payment_details(transaction)
            payment['history'] = rows_to_dicts(conn.execute('''
                SELECT status, message, notes, created_at FROM payment_history
                WHERE transaction_id = ? ORDER BY id
            ''', (transaction['id'],)).fetchall())
            payments.append(payment)
    except Exception as e:
        log_error(db_logger, "Failed to load course payment history", course_id=course_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to load payment history'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'payments': payments})


def _delete_cancelled(conn, user_id, payment_ids):
    """Delete the caller's cancelled transactions among payment_ids; returns the deleted ids."""
    deleted = []
    for payment_id in payment_ids:
        transaction = conn.execute('''
            SELECT id FROM payment_transactions WHERE id = ? AND user_id = ? AND payment_status = 'cancelled'
        ''', (payment_id, user_id)).fetchone()
        if transaction:
            conn.execute('DELETE FROM payment_history WHERE transaction_id = ?', (payment_id,))
            conn.execute('DELETE FROM payment_transactions WHERE id = ?', (payment_id,))
            deleted.append(payment_id)
    return deleted


@payment_bp.route('/payments/<int:payment_id>', methods=['DELETE'])
@token_required
def delete_payment(payment_id):
    user_id = g.current_user['id']
    conn = None
    try:
        conn = get_db_connection()
        transaction = conn.execute('SELECT * FROM payment_transactions WHERE id = ? AND user_id = ?',
                                   (payment_id, user_id)).fetchone()
        if not transaction:
            return jsonify({'success': False, 'message': 'Payment not found'}), 404
        if transaction['payment_status'] != 'cancelled':
            return jsonify({'success': False, 'message': 'Only cancelled payments can be deleted'}), 400
        _delete_cancelled(conn, user_id, [payment_id])
        conn.commit()
        log_info(payment_logger, "Payment deleted", payment_id=payment_id, user_id=user_id)
    except Exception as e:
        log_error(db_logger, "Failed to delete payment", payment_id=payment_id, error=str(e))
        return jsonify({'success': False, 'message': 'Failed to delete payment'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'message': 'Payment deleted'})


@payment_bp.route('/payments/delete-many', methods=['POST'])
@token_required
def delete_many_payments():
    data = request.get_json(silent=True) or {}
    payment_ids = data.get('paymentIds')
    if not isinstance(payment_ids, list) or not payment_ids:
        return jsonify({'success': False, 'message': 'paymentIds must be a non-empty list'}), 400
    try:
        payment_ids = [int(payment_id) for payment_id in payment_ids]
    except (TypeError, ValueError):
        return jsonify({'success': False, 'message': 'paymentIds must contain integers'}), 400

    user_id = g.current_user['id']
    conn = None
    try:
        conn = get_db_connection()
        deleted = _delete_cancelled(conn, user_id, payment_ids)
        conn.commit()
        log_info(payment_logger, "Payments deleted", user_id=user_id, deleted=deleted)
    except Exception as e:
        log_error(db_logger, "Failed to delete payments", error=str(e))
        return jsonify({'success': False, 'message': 'Failed to delete payments'}), 500
    finally:
        if conn:
            return_db_connection(conn)

    return jsonify({'success': True, 'deletedCount': len(deleted), 'deletedIds': deleted})
