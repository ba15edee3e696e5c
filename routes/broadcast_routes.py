"""
Broadcast Routes Blueprint
HTTP transport for broadcast session control (start, stop, status, schedule)
"""
from flask import Blueprint, request, jsonify, current_app

from extensions import limiter, api_rate_limit
from utils.broadcast import handle_action
from utils.permissions import require_caller

broadcast_bp = Blueprint('broadcast', __name__)


@broadcast_bp.route('/broadcast', methods=['POST'])
@limiter.limit(api_rate_limit)
def broadcast():
    """
    Request JSON:
    {"action": "start", "screenId": "scr1", "bookingId": "bk1", "contentUrl": "https://..."}
    {"action": "stop" | "status" | "schedule", "screenId": "scr1"}

    Every response carries a ``timestamp``. Starting a broadcast on a
    screen whose device is offline still succeeds, with
    ``"warning": "device_offline"``.
    """
    caller = require_caller()
    response = handle_action(current_app.control_plane.broadcasts, caller, request.get_json(silent=True))

    current_app.logger.info(f"Broadcast {response['action']} for screen {response['screenId']} by user {caller.id}")
    return jsonify(response), 200
