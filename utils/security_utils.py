import os
import re
import secrets

from werkzeug.utils import secure_filename

EMAIL_RE = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')
HTML_ENTITIES = {'<': '&lt;', '>': '&gt;', '"': '&quot;', "'": '&#x27;'}

# Course materials and assignment submissions
ALLOWED_UPLOAD_EXTENSIONS = {'pdf', 'doc', 'docx', 'ppt', 'pptx', 'xls', 'xlsx', 'txt', 'md', 'csv',
                             'jpg', 'jpeg', 'png', 'gif', 'zip', 'rar', '7z',
                             'py', 'js', 'java', 'c', 'cpp', 'ipynb'}

def validate_email(email):
    return isinstance(email, str) and EMAIL_RE.match(email) is not None

def validate_phone(phone):
    """Accept local (0901 234 567) and international (+84 901 234 567) numbers."""
    if not isinstance(phone, str) or re.search(r'[^\d\s().+-]', phone):
        return False
    digits = re.sub(r'\D', '', phone)
    return 10 <= len(digits) <= 15

def sanitize_input(text):
    """HTML-escape user text stored for later display (names, titles, reviews, feedback)."""
    if not isinstance(text, str):
        return text
    text = text.strip().replace('&', '&amp;')
    for char, entity in HTML_ENTITIES.items():
        text = text.replace(char, entity)
    return text

def allowed_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_UPLOAD_EXTENSIONS

def unique_upload_name(filename):
    """Secure a client filename and make it unique inside the upload folder."""
    name_part, ext_part = os.path.splitext(secure_filename(filename))
    return f"{name_part or 'file'}_{secrets.token_hex(6)}{ext_part.lower()}"

def parse_positive_int(value, default, maximum=None):
    """Parse a query-string integer, falling back to default on bad input."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    if number < 1:
        return default
    if maximum is not None and number > maximum:
        return maximum
    return number

def get_env_variable(var_name, default_value=None, required=False):
    value = os.environ.get(var_name, default_value)
    if required and value in (None, ''):
        raise ValueError(f"Required environment variable {var_name} is not set")
    return value
