import os

from dotenv import load_dotenv

from utils.security_utils import get_env_variable

# Load environment variables
load_dotenv()

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _as_bool(value):
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Application settings read from the environment (and .env)."""

    SECRET_KEY = get_env_variable('SECRET_KEY', 'campus-learning-secret-key')
    DEBUG = _as_bool(get_env_variable('FLASK_DEBUG', 'false'))
    TESTING = False

    # Auth
    JWT_SECRET = get_env_variable('JWT_SECRET', 'campus-learning-jwt-secret')
    JWT_ACCESS_EXPIRES_MINUTES = int(get_env_variable('JWT_ACCESS_EXPIRES_MINUTES', '60'))
    JWT_REFRESH_EXPIRES_DAYS = int(get_env_variable('JWT_REFRESH_EXPIRES_DAYS', '30'))

    # Database
    DATABASE_PATH = get_env_variable('DATABASE_PATH', os.path.join(BASE_DIR, 'campus_learning.db'))
    DB_POOL_SIZE = int(get_env_variable('DB_POOL_SIZE', '10'))

    # Uploads (10MB per file, 5 files per request)
    UPLOAD_FOLDER = get_env_variable('UPLOAD_FOLDER', os.path.join(BASE_DIR, 'uploads'))
    MAX_FILE_SIZE = 10 * 1024 * 1024
    MAX_FILES_PER_REQUEST = 5
    # Body cap is the file budget plus 1MB of multipart framing and form fields
    MAX_CONTENT_LENGTH = int(get_env_variable('MAX_CONTENT_LENGTH',
                                              str(MAX_FILES_PER_REQUEST * MAX_FILE_SIZE + 1024 * 1024)))

    # HTTP
    CORS_ORIGIN = get_env_variable('CORS_ORIGIN', '*')
    CLIENT_URL = get_env_variable('CLIENT_URL', 'http://localhost:5004')
    RATELIMIT_ENABLED = _as_bool(get_env_variable('RATELIMIT_ENABLED', 'true'))

    # Logging
    LOG_LEVEL = get_env_variable('LOG_LEVEL', 'INFO')
    LOG_FILE = get_env_variable('LOG_FILE')

    # VNPay
    VNP_TMN_CODE = get_env_variable('VNP_TMN_CODE')
    VNP_HASH_SECRET = get_env_variable('VNP_HASH_SECRET')
    VNP_URL = get_env_variable('VNP_URL', 'https://sandbox.vnpayment.vn/paymentv2/vpcpay.html')
    VNP_RETURN_URL = get_env_variable('VNP_RETURN_URL')

    # VietQR
    VIETQR_ACCOUNT_NUMBER = get_env_variable('VIETQR_ACCOUNT_NUMBER', '9999991909')
    VIETQR_BANK_NAME = get_env_variable('VIETQR_BANK_NAME', 'MBBANK')
    VIETQR_ACCOUNT_NAME = get_env_variable('VIETQR_ACCOUNT_NAME', 'CampusLearning EDUCATION')
    VIETQR_BANK_CODE = get_env_variable('VIETQR_BANK_CODE', 'MB')

    # PayPal
    PAYPAL_CLIENT_ID = get_env_variable('PAYPAL_CLIENT_ID')
    PAYPAL_CLIENT_SECRET = get_env_variable('PAYPAL_CLIENT_SECRET')
    PAYPAL_MODE = get_env_variable('PAYPAL_MODE', 'sandbox')
    PAYPAL_RETURN_URL = get_env_variable('PAYPAL_RETURN_URL')
    PAYPAL_CANCEL_URL = get_env_variable('PAYPAL_CANCEL_URL')
    PAYPAL_VND_RATE = float(get_env_variable('PAYPAL_VND_RATE', '25000'))

    # Pending payments older than this are cancelled when history is read
    PENDING_PAYMENT_TTL_MINUTES = 30
