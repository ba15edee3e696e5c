"""
WebSocket Event Handlers
Real-time broadcast control, screen status and alert notifications
"""
from datetime import datetime
import logging

from flask import current_app, request
from flask_login import current_user
from flask_socketio import emit, join_room, leave_room

from extensions import socketio
from utils.broadcast import handle_action
from utils.errors import ControlPlaneError
from utils.permissions import load_user_from_header
from utils.targets import ScreenTarget

logger = logging.getLogger(__name__)

ADMIN_ROOM = 'admins'

# Track connected clients
connected_clients = {}


def _caller():
    """Operator behind the current Socket.IO event, or None"""
    if current_user.is_authenticated:
        return current_user._get_current_object()
    client = connected_clients.get(request.sid)
    if client is None:
        return None
    from models import db, User
    return db.session.get(User, client['user_id'])


@socketio.on('connect')
def handle_connect(auth=None):
    """Handle client connection (Authorization header or ``{token}`` auth payload)"""
    user = current_user._get_current_object() if current_user.is_authenticated else None
    if user is None and isinstance(auth, dict) and auth.get('token'):
        user = load_user_from_header(f"Bearer {auth['token']}")

    if user is None:
        logger.warning(f'Unauthenticated connection attempt from {request.sid}')
        return False

    client_id = request.sid
    user_room = f'user_{user.id}'
    rooms = [user_room]

    # Join user-specific room for notifications
    join_room(user_room)
    if user.is_admin:
        join_room(ADMIN_ROOM)
        rooms.append(ADMIN_ROOM)

    connected_clients[client_id] = {
        'user_id': user.id,
        'username': user.username,
        'rooms': rooms
    }
    logger.info(f'Client connected: {user.username} (SID: {client_id})')
    emit('connection_response', {
        'status': 'connected',
        'message': 'Connected to real-time server',
        'client_id': client_id
    })


@socketio.on('disconnect')
def handle_disconnect():
    """Handle client disconnection"""
    client_id = request.sid
    if client_id in connected_clients:
        user_info = connected_clients.pop(client_id)
        logger.info(f'Client disconnected: {user_info["username"]} (SID: {client_id})')


@socketio.on('watch_screen')
def handle_watch_screen(data):
    """Subscribe to status changes of one screen"""
    caller = _caller()
    if caller is None:
        emit('error', {'error': 'unauthorized', 'message': 'Authentication required'})
        return

    screen_id = (data or {}).get('screenId')
    if not screen_id:
        emit('error', {'error': 'invalid_argument', 'message': 'screenId is required'})
        return

    registry = current_app.control_plane.registry
    if not registry.is_authorized(caller, ScreenTarget(screen_id)):
        emit('error', {'error': 'forbidden', 'message': 'You do not own this screen'})
        return

    room = f'screen_{screen_id}'
    join_room(room)
    if request.sid in connected_clients and room not in connected_clients[request.sid]['rooms']:
        connected_clients[request.sid]['rooms'].append(room)
    emit('room_joined', {'room': room, 'status': 'success'})


@socketio.on('unwatch_screen')
def handle_unwatch_screen(data):
    screen_id = (data or {}).get('screenId')
    if not screen_id:
        return
    room = f'screen_{screen_id}'
    leave_room(room)
    client = connected_clients.get(request.sid)
    if client and room in client['rooms']:
        client['rooms'].remove(room)
    emit('room_left', {'room': room, 'status': 'success'})


@socketio.on('broadcast')
def handle_broadcast(data):
    """
    Broadcast session control over the persistent connection

    Replies with broadcast_started, broadcast_stopped, status_response or
    schedule_response; failures are reported on the ``error`` event.
    """
    caller = _caller()
    if caller is None:
        emit('error', {'error': 'unauthorized', 'message': 'Authentication required',
                       'timestamp': datetime.utcnow().isoformat()})
        return

    try:
        response = handle_action(current_app.control_plane.broadcasts, caller, data)
    except ControlPlaneError as e:
        payload = e.to_dict()
        payload['timestamp'] = datetime.utcnow().isoformat()
        emit('error', payload)
        return

    emit(response['action'], response)


@socketio.on('ping')
def handle_ping():
    """Respond to ping (keep-alive)"""
    emit('pong', {'timestamp': datetime.utcnow().isoformat()})


# ============================================================================
# SERVER-SIDE BROADCAST FUNCTIONS
# These are called from the control plane services to push updates
# ============================================================================

def broadcast_alert(alert, user_id=None):
    """
    Push a newly created alert to its owner (or to administrators)

    Args:
        alert: Alert dictionary
        user_id: Owning user id, None for administrator alerts
    """
    room = f'user_{user_id}' if user_id is not None else ADMIN_ROOM
    socketio.emit('alert', alert, room=room, namespace='/')


def broadcast_screen_status(screen_id, status_data):
    """Broadcast a screen's broadcast-session change to its watchers"""
    socketio.emit('screen_status_changed', {
        'screenId': screen_id,
        'status': status_data,
        'timestamp': datetime.utcnow().isoformat()
    }, room=f'screen_{screen_id}', namespace='/')
