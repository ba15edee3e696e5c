"""
Telemetry Routes Blueprint
Fire-and-forget ingestion of player playback-quality metrics
"""
from flask import Blueprint, request, jsonify, current_app

from extensions import limiter, api_rate_limit
from utils.telemetry import is_bot

telemetry_bp = Blueprint('telemetry', __name__)


def client_ip():
    """First hop of X-Forwarded-For, falling back to the socket address"""
    forwarded = request.headers.get('X-Forwarded-For') or request.headers.get('X-Real-IP')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.remote_addr


@telemetry_bp.route('/frontend-telemetry', methods=['POST'])
@limiter.limit(api_rate_limit)
def frontend_telemetry():
    """
    Request JSON:
    {"events": [{"metric_name": "rebuffer", "value": 1, "id_value": "dev1"}], "path": "/player", "session_id": "..."}

    Always answers 200; nothing the client sends can make ingestion fail loudly.
    """
    if is_bot(request.headers.get('User-Agent')):
        return jsonify({'ok': True, 'inserted': 0, 'ignored': 'bot'}), 200

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}

    inserted = current_app.control_plane.telemetry.ingest(
        data.get('events'),
        data.get('path'),
        session_id=data.get('session_id'),
        client_ip=client_ip()
    )
    return jsonify({'ok': True, 'inserted': inserted}), 200
