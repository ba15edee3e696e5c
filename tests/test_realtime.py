from datetime import datetime, timedelta

from app import create_app
from extensions import socketio
from models import db, DeviceStatus, User, UserRole


def received_events(client):
    return {event['name']: event['args'][0] for event in client.get_received()}


def test_unauthenticated_socket_is_rejected(app, fleet):
    client = socketio.test_client(app)
    assert not client.is_connected()


def test_socket_broadcast_actions(app, fleet):
    client = socketio.test_client(app, headers=fleet['owner']['headers'])
    assert client.is_connected()
    assert 'connection_response' in received_events(client)

    client.emit('broadcast', {
        'action': 'start',
        'screenId': 'scr1',
        'bookingId': 'bk1',
        'contentUrl': 'https://cdn.example.com/a.mp4'
    })
    events = received_events(client)
    assert events['broadcast_started']['screenId'] == 'scr1'
    assert events['broadcast_started']['warning'] == 'device_offline'
    assert 'timestamp' in events['broadcast_started']

    client.emit('broadcast', {'action': 'status', 'screenId': 'scr1'})
    events = received_events(client)
    assert events['status_response']['status']['broadcast_state'] == 'broadcasting'

    client.emit('broadcast', {'action': 'stop', 'screenId': 'scr9'})
    events = received_events(client)
    assert events['error']['error'] == 'forbidden'
    client.disconnect()


def test_socket_auth_payload(app, fleet):
    client = socketio.test_client(app, auth={'token': fleet['admin']['token']})
    assert client.is_connected()
    client.disconnect()


def test_watchers_see_status_changes(app, fleet, client):
    sock = socketio.test_client(app, headers=fleet['owner']['headers'])
    sock.get_received()
    sock.emit('watch_screen', {'screenId': 'scr1'})
    assert 'room_joined' in received_events(sock)

    client.post('/broadcast', json={
        'action': 'start',
        'screenId': 'scr1',
        'bookingId': 'bk1',
        'contentUrl': 'https://cdn.example.com/a.mp4'
    }, headers=fleet['owner']['headers'])

    events = received_events(sock)
    assert events['screen_status_changed']['status']['current_content'] == 'https://cdn.example.com/a.mp4'
    sock.disconnect()


def test_offline_alert_is_pushed_to_owner(app, fleet):
    sock = socketio.test_client(app, headers=fleet['owner']['headers'])
    sock.get_received()

    with app.app_context():
        db.session.add(DeviceStatus(
            screen_id='scr1',
            status='online',
            last_heartbeat=datetime.utcnow() - timedelta(minutes=30)
        ))
        db.session.commit()
        app.control_plane.health.sweep()

    events = received_events(sock)
    assert events['alert']['alert_type'] == 'device_offline'
    assert events['alert']['metadata'] == {'screen_id': 'scr1'}
    sock.disconnect()


def test_rate_limit_returns_429_with_retry_after():
    app = create_app('testing', test_config={'RATELIMIT_ENABLED': True, 'API_RATE_LIMIT': 2})
    with app.app_context():
        db.create_all()
    client = app.test_client()
    body = {'action': 'poll', 'device_id': 'rl-dev', 'screen_id': 'rl-scr'}

    assert client.post('/device-commands', json=body).status_code == 200
    assert client.post('/device-commands', json=body).status_code == 200

    response = client.post('/device-commands', json=body)
    assert response.status_code == 429
    assert response.get_json()['error'] == 'rate_limited'
    assert response.get_json()['retry_after'] >= 1
    assert 'Retry-After' in response.headers

    # Limits are per device
    other = {**body, 'device_id': 'rl-dev-2'}
    assert client.post('/device-commands', json=other).status_code == 200


def test_event_handlers_survive_a_second_app():
    create_app('testing')
    second = create_app('testing')

    client = socketio.test_client(second)
    assert not client.is_connected()


def test_operators_are_limited_by_user_not_by_device_id():
    app = create_app('testing', test_config={'RATELIMIT_ENABLED': True, 'API_RATE_LIMIT': 2})
    with app.app_context():
        db.create_all()
        user = User(username='op', email='op@example.com', role=UserRole.OWNER)
        db.session.add(user)
        db.session.flush()
        token = user.issue_api_token()
        db.session.commit()
    client = app.test_client()
    headers = {'Authorization': f'Bearer {token}'}

    for device_id in ('rot-1', 'rot-2'):
        body = {'action': 'poll', 'device_id': device_id, 'screen_id': 'rot-scr'}
        assert client.post('/device-commands', json=body, headers=headers).status_code == 200

    body = {'action': 'poll', 'device_id': 'rot-3', 'screen_id': 'rot-scr'}
    assert client.post('/device-commands', json=body, headers=headers).status_code == 429
