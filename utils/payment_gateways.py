"""Clients for the external payment providers (VNPay, PayPal, VietQR)."""
import hashlib
import hmac
import re
import time
import urllib.parse
from datetime import datetime, timedelta, timezone

import requests

from utils.logging_utils import payment_logger, log_info, log_warning, log_error

VNPAY_VERSION = '2.1.0'
VNPAY_SUCCESS_CODE = '00'
# VNPay expects Vietnam local time (GMT+7) in vnp_CreateDate / vnp_ExpireDate
VN_TIMEZONE = timezone(timedelta(hours=7))

PAYPAL_SANDBOX_URL = 'https://api-m.sandbox.paypal.com'
PAYPAL_LIVE_URL = 'https://api-m.paypal.com'


class PaymentGatewayError(Exception):
    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


def normalize_client_ip(ip_address):
    """VNPay only accepts IPv4; IPv6 (including ::1) becomes loopback."""
    if not ip_address:
        return '127.0.0.1'
    ip_address = ip_address.split(',')[0].strip()
    if ':' in ip_address:
        return '127.0.0.1'
    return ip_address


class VNPayClient:
    """Builds signed VNPay payment URLs and verifies return/IPN signatures."""

    def __init__(self, tmn_code, hash_secret, payment_url):
        self.tmn_code = tmn_code
        self.hash_secret = hash_secret
        self.payment_url = payment_url

    @property
    def configured(self):
        return bool(self.tmn_code and self.hash_secret and self.payment_url)

    @staticmethod
    def _query_string(params):
        return '&'.join(
            f"{key}={urllib.parse.quote_plus(str(value))}"
            for key, value in sorted(params.items())
        )

    def _sign(self, query_string):
        return hmac.new(self.hash_secret.encode('utf-8'), query_string.encode('utf-8'),
                        hashlib.sha512).hexdigest()

    def build_payment_url(self, txn_ref, amount, order_info, return_url, client_ip,
                          bank_code=None, locale='vn', created_at=None):
        if not self.configured:
            raise PaymentGatewayError('Missing VNPay configuration')

        created_at = (created_at or datetime.now(timezone.utc)).astimezone(VN_TIMEZONE)
        params = {
            'vnp_Version': VNPAY_VERSION,
            'vnp_Command': 'pay',
            'vnp_TmnCode': self.tmn_code,
            # VNPay amounts carry two implied decimals
            'vnp_Amount': int(round(float(amount) * 100)),
            'vnp_CurrCode': 'VND',
            'vnp_TxnRef': txn_ref,
            'vnp_OrderInfo': order_info,
            'vnp_OrderType': 'billpayment',
            'vnp_Locale': locale,
            'vnp_ReturnUrl': return_url,
            'vnp_IpAddr': normalize_client_ip(client_ip),
            'vnp_CreateDate': created_at.strftime('%Y%m%d%H%M%S'),
            'vnp_ExpireDate': (created_at + timedelta(minutes=15)).strftime('%Y%m%d%H%M%S'),
        }
        if bank_code:
            params['vnp_BankCode'] = bank_code

        query_string = self._query_string(params)
        return f"{self.payment_url}?{query_string}&vnp_SecureHash={self._sign(query_string)}"

    def verify_return(self, query):
        """Check the signature of a VNPay redirect and summarise the outcome."""
        params = {key: value for key, value in query.items()
                  if key.startswith('vnp_') and key not in ('vnp_SecureHash', 'vnp_SecureHashType')}
        received_hash = query.get('vnp_SecureHash', '')
        is_verified = bool(self.hash_secret) and bool(received_hash) and hmac.compare_digest(
            self._sign(self._query_string(params)), received_hash.lower())

        response_code = params.get('vnp_ResponseCode')
        transaction_status = params.get('vnp_TransactionStatus', response_code)
        try:
            amount = int(params.get('vnp_Amount', 0)) / 100
        except (TypeError, ValueError):
            amount = 0
        return {
            'is_verified': is_verified,
            'is_success': is_verified and response_code == VNPAY_SUCCESS_CODE and transaction_status == VNPAY_SUCCESS_CODE,
            'txn_ref': params.get('vnp_TxnRef'),
            'response_code': response_code,
            'amount': amount,
            'bank_code': params.get('vnp_BankCode'),
            'transaction_no': params.get('vnp_TransactionNo'),
        }


def sanitize_bank_code(bank_code):
    """Drop placeholder or malformed bank codes so VNPay shows its own bank picker."""
    if not isinstance(bank_code, str):
        return None
    bank_code = bank_code.strip()
    if not bank_code or bank_code.lower() in ('undefined', 'null'):
        return None
    if not re.match(r'^[A-Za-z0-9_]{2,20}$', bank_code):
        return None
    return bank_code.upper()


def build_vietqr_payment(config, transaction_code, amount):
    """Bank-transfer instructions plus the img.vietqr.io QR image for a transaction."""
    description = f"CampusLearning-{transaction_code}"
    amount_value = int(round(float(amount)))
    query = urllib.parse.urlencode({'amount': amount_value, 'addInfo': description})
    return {
        'transactionCode': transaction_code,
        'bankAccount': config['VIETQR_ACCOUNT_NUMBER'],
        'bankName': config['VIETQR_BANK_NAME'],
        'accountName': config['VIETQR_ACCOUNT_NAME'],
        'amount': amount_value,
        'description': description,
        'qrImageUrl': (f"https://img.vietqr.io/image/{config['VIETQR_BANK_CODE']}-"
                       f"{config['VIETQR_ACCOUNT_NUMBER']}-compact.png?{query}"),
    }


class PayPalClient:
    """Minimal PayPal Orders v2 client with token caching and retries."""

    def __init__(self, client_id, client_secret, mode='sandbox', vnd_rate=25000.0,
                 max_retries=3, retry_delay=1.0, sleep=time.sleep):
        self.client_id = client_id
        self.client_secret = client_secret
        self.mode = mode
        self.base_url = PAYPAL_SANDBOX_URL if mode == 'sandbox' else PAYPAL_LIVE_URL
        self.vnd_rate = vnd_rate
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.sleep = sleep
        self.access_token = None
        self.token_expiry = 0

    @property
    def configured(self):
        return bool(self.client_id and self.client_secret)

    def _with_retry(self, api_call):
        last_error = None
        for attempt in range(self.max_retries):
            try:
                return api_call()
            except requests.HTTPError as e:
                last_error = e
                status = e.response.status_code if e.response is not None else None
                if status == 401:
                    # Stale token; fetch a new one on the next attempt
                    self.access_token = None
                    self.token_expiry = 0
                elif status is not None and 400 <= status < 500 and status != 429:
                    break
            except requests.RequestException as e:
                last_error = e
            if attempt < self.max_retries - 1:
                log_warning(payment_logger, "PayPal call failed, retrying", attempt=attempt + 1, error=str(last_error))
                self.sleep(self.retry_delay * (2 ** attempt))

        status = None
        if isinstance(last_error, requests.HTTPError) and last_error.response is not None:
            status = last_error.response.status_code
        raise PaymentGatewayError(f'PayPal request failed: {last_error}', status_code=status)

    def get_access_token(self):
        if self.access_token and self.token_expiry > time.time():
            return self.access_token
        if not self.configured:
            raise PaymentGatewayError('Missing PayPal configuration')

        def call():
            response = requests.post(
                f"{self.base_url}/v1/oauth2/token",
                auth=(self.client_id, self.client_secret),
                headers={'Accept': 'application/json'},
                data={'grant_type': 'client_credentials'},
                timeout=10,
            )
            response.raise_for_status()
            return response.json()

        data = self._with_retry(call)
        self.access_token = data['access_token']
        # Refresh a minute early
        self.token_expiry = time.time() + int(data.get('expires_in', 0)) - 60
        return self.access_token

    def _headers(self, request_id=None):
        headers = {
            'Content-Type': 'application/json',
            'Accept': 'application/json',
            'Authorization': f"Bearer {self.get_access_token()}",
        }
        if request_id:
            headers['PayPal-Request-Id'] = request_id
        return headers

    def to_usd(self, amount, currency):
        value = float(amount)
        if currency == 'VND':
            value = value / self.vnd_rate
        value = round(value, 2)
        if value <= 0:
            value = 1.00
        return f"{value:.2f}"

    def create_order(self, transaction, return_url, cancel_url, brand_name='CampusLearning'):
        payload = {
            'intent': 'CAPTURE',
            'purchase_units': [{
                'reference_id': transaction['transaction_code'],
                'description': f"Payment for Course ID: {transaction['course_id']}",
                'amount': {
                    'currency_code': 'USD',
                    'value': self.to_usd(transaction['amount'], transaction['currency']),
                },
            }],
            'application_context': {
                'brand_name': brand_name,
                'landing_page': 'BILLING',
                'user_action': 'PAY_NOW',
                'return_url': return_url,
                'cancel_url': cancel_url,
                'shipping_preference': 'NO_SHIPPING',
            },
        }

        def call():
            response = requests.post(
                f"{self.base_url}/v2/checkout/orders",
                json=payload,
                headers=self._headers(f"order_{transaction['id']}_{transaction['transaction_code']}"),
                timeout=15,
            )
            response.raise_for_status()
            return response.json()

        order = self._with_retry(call)
        log_info(payment_logger, "PayPal order created", order_id=order.get('id'), status=order.get('status'))
        return order

    def get_order(self, order_id):
        def call():
            response = requests.get(f"{self.base_url}/v2/checkout/orders/{order_id}",
                                    headers=self._headers(), timeout=10)
            response.raise_for_status()
            return response.json()
        return self._with_retry(call)

    def capture_order(self, order_id):
        def call():
            response = requests.post(f"{self.base_url}/v2/checkout/orders/{order_id}/capture",
                                     headers=self._headers(f"capture_{order_id}"), timeout=15)
            response.raise_for_status()
            return response.json()
        return self._with_retry(call)

    def validate_and_capture(self, order_id):
        """Capture an approved order; an already completed order is returned as is."""
        order = self.get_order(order_id)
        status = order.get('status')
        if status == 'COMPLETED':
            return order
        capturable = ('APPROVED', 'CREATED') if self.mode == 'sandbox' else ('APPROVED',)
        if status not in capturable:
            log_error(payment_logger, "PayPal order not capturable", order_id=order_id, status=status)
            raise PaymentGatewayError(f'Order is not in a capturable state. Current status: {status}', status_code=400)
        return self.capture_order(order_id)

    @staticmethod
    def approval_url(order):
        for link in order.get('links', []):
            if link.get('rel') in ('approve', 'payer-action'):
                return link.get('href')
        return None
