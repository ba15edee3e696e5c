"""
Authentication and Permission Decorators
Bearer token resolution for Flask-Login and route protection helpers
"""
from functools import wraps
import logging

from flask_login import current_user

from models import db, User
from utils.errors import Unauthorized

logger = logging.getLogger(__name__)


def parse_bearer_token(header_value):
    """
    Split an ``Authorization: Bearer <user_id>.<secret>`` header

    Returns:
        (user_id, secret) tuple, or None when the header is malformed
    """
    if not header_value:
        return None
    scheme, _, token = header_value.partition(' ')
    if scheme.lower() != 'bearer' or not token:
        return None
    user_id, _, secret = token.strip().partition('.')
    if not user_id.isdigit() or not secret:
        return None
    return int(user_id), secret


def load_user_from_header(header_value):
    """Resolve the user an API token belongs to (None when invalid)"""
    parsed = parse_bearer_token(header_value)
    if parsed is None:
        return None

    user_id, secret = parsed
    user = db.session.get(User, user_id)
    if user is None or not user.verify_api_token(secret):
        logger.warning(f'Rejected API token for user id {user_id}')
        return None
    return user


def current_caller():
    """Authenticated user for the current request, or None"""
    if current_user.is_authenticated:
        return current_user._get_current_object()
    return None


def require_caller():
    caller = current_caller()
    if caller is None:
        raise Unauthorized('Missing or invalid API token')
    return caller


def api_login_required(f):
    """
    Decorator to require an authenticated operator
    Usage: @api_login_required
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        require_caller()
        return f(*args, **kwargs)
    return decorated_function
