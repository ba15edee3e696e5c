"""
Shared Flask extension instances
Created once at import time and bound to the application in create_app()
"""
from flask import current_app, request
from flask_login import LoginManager, current_user
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_socketio import SocketIO


def rate_limit_key():
    """
    Identify the caller for rate limiting.

    Authenticated operators are keyed by user id whatever they send, devices
    by the device_id they send, anything else by remote address.
    """
    if current_user.is_authenticated:
        return f'user:{current_user.id}'
    data = request.get_json(silent=True) or {}
    if isinstance(data, dict) and data.get('device_id'):
        return f"device:{data['device_id']}"
    return get_remote_address()


socketio = SocketIO()
login_manager = LoginManager()
limiter = Limiter(key_func=rate_limit_key)


def api_rate_limit():
    """Configured per-identifier limit, e.g. '60 per minute'"""
    return f"{current_app.config['API_RATE_LIMIT']} per {current_app.config['API_RATE_WINDOW']}"
