import logging
import os
import time

from flask import g, request

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

LOG_LEVELS = {
    'DEBUG': logging.DEBUG,
    'INFO': logging.INFO,
    'WARNING': logging.WARNING,
    'ERROR': logging.ERROR,
    'CRITICAL': logging.CRITICAL
}

# One logger per concern; handlers live on the root logger
app_logger = logging.getLogger('app')
db_logger = logging.getLogger('database')
security_logger = logging.getLogger('security')
payment_logger = logging.getLogger('payment')
request_logger = logging.getLogger('request')

def setup_logging(level_name='INFO', log_file=None):
    """
    Configure the root logger for the API process.

    Args:
        level_name: LOG_LEVEL value (unknown names fall back to INFO)
        log_file: optional file that receives a copy of the console output
    """
    formatter = logging.Formatter(LOG_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(LOG_LEVELS.get(str(level_name).upper(), logging.INFO))

    # create_app() may run many times in one process (tests)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    return root_logger

def init_request_logging(app):
    """Log every API request with its status, caller and duration."""

    @app.before_request
    def _start_timer():
        g.request_started = time.perf_counter()

    @app.after_request
    def _log_request(response):
        started = g.pop('request_started', None)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 1) if started else None
        user = g.get('current_user')
        log_fn = log_warning if response.status_code >= 500 else log_debug
        log_fn(request_logger, f"{request.method} {request.path} {response.status_code}",
               user_id=user['id'] if user else None, ip=request.remote_addr, ms=elapsed_ms)
        return response

def _with_data(message, data):
    if data:
        return f"{message} | Data: {data}"
    return message

def log_info(logger, message, **data):
    logger.info(_with_data(message, data))

def log_warning(logger, message, **data):
    logger.warning(_with_data(message, data))

def log_error(logger, message, **data):
    logger.error(_with_data(message, data))

def log_debug(logger, message, **data):
    logger.debug(_with_data(message, data))
