"""
API Routes Blueprint
Service health, screen liveness and alert endpoints, plus the shared API logger
"""
import logging
from datetime import datetime
from flask import Blueprint, request, jsonify, current_app

from utils.notifications import AlertService
from utils.permissions import api_login_required, current_caller

api_bp = Blueprint('api', __name__)

# Setup API logger
api_logger = logging.getLogger('api')


def log_api_request(device_id, endpoint, method, status_code):
    """Log one API request to the API log file"""
    api_logger.info(f'{method} {endpoint} - Device:{device_id} IP:{request.remote_addr} Status:{status_code}')


# ============================================================================
# HEALTH CHECK
# ============================================================================

@api_bp.route('/health', methods=['GET'])
def health_check():
    """
    Simple health check endpoint (no authentication required)

    Response JSON:
    {
        "status": "healthy",
        "timestamp": "2025-10-31T10:00:00"
    }
    """
    return jsonify({
        'status': 'healthy',
        'timestamp': datetime.utcnow().isoformat()
    }), 200


@api_bp.route('/health/devices', methods=['GET'])
@api_login_required
def device_health():
    """
    Online/offline summary of every screen's heartbeat record

    Response JSON:
    {
        "checked_at": "...",
        "total_screens": 3,
        "online": 2,
        "offline": 1,
        "online_screens": [...],
        "offline_screens": [...]
    }
    """
    summary = current_app.control_plane.health.check_device_health()
    caller = current_caller()
    if not caller.is_admin:
        owned = {screen.screen_id for screen in caller.screens}
        for key in ('online_screens', 'offline_screens'):
            summary[key] = [entry for entry in summary[key] if entry['screen_id'] in owned]
        summary['online'] = len(summary['online_screens'])
        summary['offline'] = len(summary['offline_screens'])
        summary['total_screens'] = summary['online'] + summary['offline']
    return jsonify(summary), 200


# ============================================================================
# ALERTS
# ============================================================================

@api_bp.route('/alerts', methods=['GET'])
@api_login_required
def list_alerts():
    """
    Unresolved alerts for the caller (administrators also see unaddressed ones)

    Query params: type, limit
    """
    caller = current_caller()
    alert_type = request.args.get('type')
    limit = min(request.args.get('limit', 50, type=int), 200)

    if caller.is_admin:
        alerts = AlertService.open_alerts(alert_type=alert_type, limit=limit)
    else:
        alerts = AlertService.open_alerts(user_id=caller.id, alert_type=alert_type, limit=limit)

    return jsonify({
        'alerts': [alert.to_dict() for alert in alerts],
        'count': len(alerts)
    }), 200


# Setup API logger file handler
def setup_api_logger(app):
    """Setup API-specific file logger"""
    if app.testing:
        return
    handler = logging.FileHandler(app.config['API_LOG_FILE'])
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s'
    ))
    api_logger.addHandler(handler)
    api_logger.setLevel(logging.INFO)
