"""
Device Routes Blueprint
Command queue, layered settings, screen binding, device lifecycle and
playback metrics endpoints.
Every endpoint takes a JSON body; ``action``/``mode`` selects the operation.
"""
from datetime import datetime
from flask import Blueprint, request, jsonify, current_app

from extensions import limiter, api_rate_limit
from routes.api_routes import log_api_request
from utils.errors import InvalidArgument
from utils.permissions import require_caller
from utils.targets import parse_settings_scope, parse_target

device_bp = Blueprint('devices', __name__)


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise InvalidArgument('Request body must be a JSON object')
    return data


def _services():
    return current_app.control_plane


@device_bp.after_request
def log_device_request(response):
    data = request.get_json(silent=True)
    device_id = data.get('device_id') if isinstance(data, dict) else None
    log_api_request(device_id, request.path, request.method, response.status_code)
    return response


# ============================================================================
# COMMAND QUEUE
# ============================================================================

@device_bp.route('/device-commands', methods=['POST'])
@limiter.limit(api_rate_limit)
def device_commands():
    """
    Enqueue, poll or acknowledge device commands

    Request JSON:
    {"action": "enqueue", "screen_id" | "device_id": "...", "command": "reload", "payload": {}}
    {"action": "poll", "device_id": "dev1", "screen_id": "scr1"}
    {"action": "ack", "device_id": "dev1", "ack_ids": [1, 2]}
    """
    data = _json_body()
    action = data.get('action')
    services = _services()

    if not action:
        raise InvalidArgument('action is required', code='missing_action')

    if action == 'enqueue':
        caller = require_caller()
        target = parse_target(data)
        command_id = services.commands.enqueue(caller, target, data.get('command'), data.get('payload'))
        return jsonify({'ok': True, 'id': command_id}), 201

    if action == 'poll':
        device_id = data.get('device_id')
        screen_id = data.get('screen_id')
        if not device_id or not screen_id:
            raise InvalidArgument('device_id and screen_id are required', code='device_id_and_screen_id_required')
        commands = services.commands.poll(str(device_id), str(screen_id))
        return jsonify({'commands': [command.to_wire() for command in commands]}), 200

    if action == 'ack':
        device_id = data.get('device_id')
        if not device_id:
            raise InvalidArgument('device_id is required', code='invalid_ack')
        acknowledged = services.commands.ack(str(device_id), data.get('ack_ids'))
        return jsonify({'ok': True, 'acknowledged': acknowledged}), 200

    raise InvalidArgument(f'Unknown action: {action}', code='unknown_action')


# ============================================================================
# SETTINGS
# ============================================================================

@device_bp.route('/device-settings', methods=['POST'])
@limiter.limit(api_rate_limit)
def device_settings():
    """
    Read effective settings or write a settings map

    Request JSON:
    {"mode": "get", "device_id": "dev1", "screen_id": "scr1"}
    {"mode": "set", "device_id"?: "dev1", "screen_id"?: "scr1", "settings": {"volume": 40}}
    """
    data = _json_body()
    mode = data.get('mode')
    services = _services()

    if not mode:
        raise InvalidArgument('mode is required', code='missing_mode')

    if mode == 'get':
        device_id, screen_id = parse_settings_scope(data)
        return jsonify({'settings': services.settings.get(device_id, screen_id)}), 200

    if mode == 'set':
        caller = require_caller()
        device_id, screen_id = parse_settings_scope(data)
        services.settings.set(caller, device_id, screen_id, data.get('settings'))
        return jsonify({'ok': True}), 200

    raise InvalidArgument(f'Unknown mode: {mode}', code='unknown_mode')


# ============================================================================
# BINDING & LIFECYCLE
# ============================================================================

@device_bp.route('/device-bind-screen', methods=['POST'])
@limiter.limit(api_rate_limit)
def bind_screen():
    """
    Bind a device to a screen, creating or renaming the screen

    Request JSON:
    {"device_id": "dev1", "screen_id": "scr2", "screen_name": "Lobby"}
    """
    caller = require_caller()
    data = _json_body()

    result = _services().registry.bind(
        caller,
        data.get('device_id'),
        data.get('screen_id'),
        data.get('screen_name')
    )
    current_app.logger.info(f"Device {result['device_id']} bound to screen {result['screen_id']} by user {caller.id}")

    return jsonify({'success': True, **result}), 200


@device_bp.route('/device-pair', methods=['POST'])
@limiter.limit(api_rate_limit)
def pair_device():
    """
    Claim ownership of a provisioned device

    Request JSON:
    {"device_id": "dev1"}
    """
    caller = require_caller()
    data = _json_body()
    device_id = data.get('device_id')
    if not device_id:
        raise InvalidArgument('device_id is required')

    device = _services().registry.pair(caller, device_id)
    return jsonify({'success': True, 'device': device.to_dict()}), 200


@device_bp.route('/device-retire', methods=['POST'])
@limiter.limit(api_rate_limit)
def retire_device():
    """Unbind a device and mark it offline"""
    caller = require_caller()
    data = _json_body()
    device_id = data.get('device_id')
    if not device_id:
        raise InvalidArgument('device_id is required')

    device = _services().registry.retire(caller, device_id)
    return jsonify({'success': True, 'device': device.to_dict()}), 200


# ============================================================================
# HEARTBEAT
# ============================================================================

@device_bp.route('/device-heartbeat', methods=['POST'])
@limiter.limit(api_rate_limit)
def device_heartbeat():
    """
    Receive heartbeat from device, provisioning it on first contact

    Request JSON:
    {
        "device_id": "dev1",
        "provisioning_token": "...",
        "status": "playing",
        "current_content": "https://cdn/ad.mp4",
        "signal_strength": -61,
        "diagnostics": {"temp_c": 51}
    }

    Response JSON:
    {"ok": true, "action": "created" | "updated", "screen_id": "scr1", "server_time": "..."}
    """
    data = _json_body()
    device_id = data.get('device_id')
    token = data.get('provisioning_token')
    if not device_id or not isinstance(device_id, str):
        raise InvalidArgument('device_id is required')
    if not token or not isinstance(token, str):
        raise InvalidArgument('provisioning_token is required')

    services = _services()
    result = services.registry.provision(device_id, token, data.get('status'))
    device = result['device']

    reported_screen = data.get('screen_id')
    if reported_screen and reported_screen != device.screen_id:
        current_app.logger.warning(
            f'Device {device_id} reported screen {reported_screen} but is bound to {device.screen_id}'
        )

    if device.screen_id:
        signal_strength = data.get('signal_strength')
        diagnostics = data.get('diagnostics')
        services.health.record_heartbeat(
            device.screen_id,
            status=data.get('status'),
            current_content=data.get('current_content'),
            signal_strength=signal_strength if isinstance(signal_strength, int) else None,
            diagnostics=diagnostics if isinstance(diagnostics, dict) else None
        )

    return jsonify({
        'ok': True,
        'action': 'created' if result['created'] else 'updated',
        'screen_id': device.screen_id,
        'server_time': datetime.utcnow().isoformat()
    }), 201 if result['created'] else 200


# ============================================================================
# PLAYBACK METRICS
# ============================================================================

@device_bp.route('/device-metrics', methods=['POST'])
@limiter.limit(api_rate_limit)
def device_metrics():
    """
    Record an adaptive-streaming sample from a player

    Request JSON:
    {
        "device_id": "dev1",
        "screen_id": "scr1",
        "bitrate_kbps": 4500,
        "bandwidth_kbps": 12000,
        "buffer_seconds": 8.5,
        "dropped_frames": 3,
        "rebuffer_count": 0,
        "playback_state": "playing",
        "error_code": null
    }
    """
    data = _json_body()
    metric = _services().telemetry.record_device_metrics(data)
    return jsonify({'ok': True, 'id': metric.id}), 201
