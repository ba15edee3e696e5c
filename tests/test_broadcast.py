import threading
from datetime import datetime, timedelta

import pytest

from models import db, Alert, Booking, DeviceCommand, DeviceStatus
from utils.broadcast import ScreenLocks
from utils.errors import InvalidArgument, NotFound, Transient


def add_booking(booking_id, screen_id='scr1', start=None, end=None, payment_status='completed',
                content_url='https://cdn.example.com/spot.mp4'):
    now = datetime.utcnow()
    db.session.add(Booking(
        id=booking_id,
        screen_id=screen_id,
        content_url=content_url,
        scheduled_start=start or now - timedelta(minutes=5),
        scheduled_end=end or now + timedelta(minutes=25),
        payment_status=payment_status
    ))
    db.session.commit()


def screen_commands(screen_id='scr1'):
    return DeviceCommand.query.filter_by(screen_id=screen_id).order_by(DeviceCommand.id).all()


def test_start_is_idempotent(fleet, ctx):
    add_booking('bk1')
    url = 'https://cdn.example.com/spot.mp4'

    first = ctx.broadcasts.start('scr1', 'bk1', url)
    second = ctx.broadcasts.start('scr1', 'bk1', url)

    assert first['changed'] is True
    assert second['changed'] is False
    record = DeviceStatus.query.filter_by(screen_id='scr1').first()
    assert record.broadcast_state == 'broadcasting'
    assert record.current_content == url
    assert record.booking_id == 'bk1'
    assert db.session.get(Booking, 'bk1').status == 'broadcasting'
    assert [c.command for c in screen_commands()] == ['set_content']
    assert screen_commands()[0].payload == {'content_url': url, 'booking_id': 'bk1'}


def test_start_on_offline_screen_warns(fleet, ctx):
    result = ctx.broadcasts.start('scr1', 'bk-x', 'https://cdn.example.com/a.mp4')
    assert result['success'] is True
    assert result['live'] is False
    assert result['warning'] == 'device_offline'
    # The command is queued for when the device comes back
    assert len(screen_commands()) == 1


def test_start_on_live_screen_has_no_warning(fleet, ctx):
    ctx.health.record_heartbeat('scr1')
    result = ctx.broadcasts.start('scr1', 'bk-x', 'https://cdn.example.com/a.mp4')
    assert result['live'] is True
    assert 'warning' not in result


def test_stop_clears_content_and_is_idempotent(fleet, ctx):
    ctx.broadcasts.start('scr1', 'bk1', 'https://cdn.example.com/a.mp4')

    assert ctx.broadcasts.stop('scr1')['changed'] is True
    assert ctx.broadcasts.stop('scr1')['changed'] is False

    record = DeviceStatus.query.filter_by(screen_id='scr1').first()
    assert record.broadcast_state == 'idle'
    assert record.current_content is None
    assert record.booking_id is None
    assert [c.command for c in screen_commands()] == ['set_content', 'stop_content']


def test_start_requires_booking_and_content(fleet, ctx):
    with pytest.raises(InvalidArgument):
        ctx.broadcasts.start('scr1', None, 'https://cdn.example.com/a.mp4')
    with pytest.raises(InvalidArgument):
        ctx.broadcasts.start('scr1', 'bk1', '')


def test_failed_start_leaves_nothing_half_done(fleet, ctx, monkeypatch):
    url = 'https://cdn.example.com/a.mp4'
    stage = ctx.commands.stage
    calls = []

    def flaky(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise Transient('command store unavailable')
        return stage(*args, **kwargs)

    monkeypatch.setattr(ctx.commands, 'stage', flaky)
    with pytest.raises(Transient):
        ctx.broadcasts.start('scr1', 'bk1', url)
    assert ctx.broadcasts.status('scr1') is None

    result = ctx.broadcasts.start('scr1', 'bk1', url)
    assert result['changed'] is True
    assert [c.command for c in screen_commands()] == ['set_content']


def test_failed_stop_keeps_broadcasting(fleet, ctx, monkeypatch):
    ctx.broadcasts.start('scr1', 'bk1', 'https://cdn.example.com/a.mp4')

    def unavailable(*args, **kwargs):
        raise Transient('command store unavailable')

    monkeypatch.setattr(ctx.commands, 'stage', unavailable)
    with pytest.raises(Transient):
        ctx.broadcasts.stop('scr1')
    assert ctx.broadcasts.status('scr1')['broadcast_state'] == 'broadcasting'

    monkeypatch.undo()
    assert ctx.broadcasts.stop('scr1')['changed'] is True
    assert [c.command for c in screen_commands()] == ['set_content', 'stop_content']


def test_start_keeps_offline_screen_offline(fleet, ctx):
    db.session.add(DeviceStatus(
        screen_id='scr1',
        status='online',
        broadcast_state='idle',
        last_heartbeat=datetime.utcnow() - timedelta(minutes=30)
    ))
    db.session.commit()

    ctx.health.sweep()
    ctx.broadcasts.start('scr1', 'bk1', 'https://cdn.example.com/a.mp4')
    ctx.health.sweep()

    record = DeviceStatus.query.filter_by(screen_id='scr1').first()
    assert record.status == 'offline'
    assert record.broadcast_state == 'broadcasting'
    assert Alert.query.filter_by(alert_type='device_offline').count() == 1


def test_start_on_unknown_screen_is_404(fleet, ctx):
    with pytest.raises(NotFound):
        ctx.broadcasts.start('ghost', 'bk1', 'https://cdn.example.com/a.mp4')
    assert DeviceStatus.query.filter_by(screen_id='ghost').count() == 0
    assert screen_commands('ghost') == []


def test_reconcile_starts_once_for_active_booking(fleet, ctx):
    add_booking('bk3')
    now = datetime.utcnow()

    first = ctx.broadcasts.reconcile('scr1', now)
    second = ctx.broadcasts.reconcile('scr1', now + timedelta(seconds=1))

    assert first['action'] == 'start'
    assert second['action'] == 'none'
    assert DeviceStatus.query.filter_by(screen_id='scr1').first().broadcast_state == 'broadcasting'
    assert len(screen_commands()) == 1


def test_reconcile_stops_when_booking_ends(fleet, ctx):
    add_booking('bk3')
    now = datetime.utcnow()
    ctx.broadcasts.reconcile('scr1', now)

    result = ctx.broadcasts.reconcile('scr1', now + timedelta(hours=1))
    assert result['action'] == 'stop'
    assert DeviceStatus.query.filter_by(screen_id='scr1').first().broadcast_state == 'idle'


def test_reconcile_ignores_unpaid_bookings(fleet, ctx):
    add_booking('bk-unpaid', payment_status='pending')
    assert ctx.broadcasts.reconcile('scr1')['action'] == 'none'
    assert screen_commands() == []


def test_reconcile_switches_to_next_booking(fleet, ctx):
    now = datetime.utcnow()
    add_booking('early', start=now - timedelta(minutes=10), end=now + timedelta(minutes=1),
                content_url='https://cdn.example.com/early.mp4')
    add_booking('late', start=now + timedelta(minutes=2), end=now + timedelta(minutes=20),
                content_url='https://cdn.example.com/late.mp4')

    ctx.broadcasts.reconcile('scr1', now)
    result = ctx.broadcasts.reconcile('scr1', now + timedelta(minutes=3))

    assert result['action'] == 'start'
    record = DeviceStatus.query.filter_by(screen_id='scr1').first()
    assert record.booking_id == 'late'
    assert record.current_content == 'https://cdn.example.com/late.mp4'


def test_reconcile_leaves_overlapping_bookings_alone(fleet, ctx):
    add_booking('a')
    add_booking('b')
    result = ctx.broadcasts.reconcile('scr1')
    assert result['action'] == 'none'
    assert result['reason'] == 'overlapping_bookings'


def test_reconcile_all_isolates_failures(fleet, ctx, monkeypatch):
    add_booking('bk1', screen_id='scr1')
    add_booking('bk9', screen_id='scr9')

    original = ctx.broadcasts.reconcile

    def flaky(screen_id, now=None):
        if screen_id == 'scr1':
            raise RuntimeError('lost connection')
        return original(screen_id, now)

    monkeypatch.setattr(ctx.broadcasts, 'reconcile', flaky)
    result = ctx.broadcasts.reconcile_all()

    assert result['errors'] == 1
    assert result['changed'] == [{'screen_id': 'scr9', 'action': 'start'}]


def test_status_is_a_pure_read(fleet, ctx):
    assert ctx.broadcasts.status('scr1') is None
    ctx.broadcasts.start('scr1', 'bk1', 'https://cdn.example.com/a.mp4')
    before = len(screen_commands())

    status = ctx.broadcasts.status('scr1')
    assert status['broadcast_state'] == 'broadcasting'
    assert status['live'] is False
    assert status['devices'] == ['dev1']
    assert len(screen_commands()) == before


def test_screen_locks_are_per_screen():
    locks = ScreenLocks()
    assert locks.get('scr1') is locks.get('scr1')
    assert locks.get('scr1') is not locks.get('scr2')

    entered = threading.Event()

    def other_screen():
        with locks.hold('scr2'):
            entered.set()

    with locks.hold('scr1'):
        worker = threading.Thread(target=other_screen)
        worker.start()
        worker.join(timeout=2)
    assert entered.is_set()


def test_changes_to_one_screen_are_serialized(ctx, monkeypatch):
    stopped = threading.Event()

    def record_stop(screen_id):
        stopped.set()
        return {'screen_id': screen_id, 'changed': False}

    monkeypatch.setattr(ctx.broadcasts, '_stop', record_stop)

    with ctx.broadcasts.locks.hold('scr1'):
        worker = threading.Thread(target=ctx.broadcasts.stop, args=('scr1',))
        worker.start()
        assert not stopped.wait(timeout=0.3)

    worker.join(timeout=2)
    assert stopped.is_set()


def test_broadcast_endpoint(client, fleet):
    headers = fleet['owner']['headers']
    response = client.post('/broadcast', json={
        'action': 'start',
        'screenId': 'scr1',
        'bookingId': 'bk1',
        'contentUrl': 'https://cdn.example.com/a.mp4'
    }, headers=headers)
    assert response.status_code == 200
    body = response.get_json()
    assert body['action'] == 'broadcast_started'
    assert body['warning'] == 'device_offline'
    assert 'timestamp' in body

    body = client.post('/broadcast', json={'action': 'status', 'screenId': 'scr1'}, headers=headers).get_json()
    assert body['action'] == 'status_response'
    assert body['status']['current_content'] == 'https://cdn.example.com/a.mp4'

    body = client.post('/broadcast', json={'action': 'schedule', 'screenId': 'scr1'}, headers=headers).get_json()
    assert body['action'] == 'schedule_response'
    assert body['activeBookings'] == []

    body = client.post('/broadcast', json={'action': 'stop', 'screenId': 'scr1'}, headers=headers).get_json()
    assert body['action'] == 'broadcast_stopped'
    assert 'timestamp' in body


def test_broadcast_endpoint_authorization(client, fleet):
    body = {'action': 'stop', 'screenId': 'scr9'}
    assert client.post('/broadcast', json=body).status_code == 401
    assert client.post('/broadcast', json=body, headers=fleet['owner']['headers']).status_code == 403
    assert client.post('/broadcast', json=body, headers=fleet['admin']['headers']).status_code == 200

    response = client.post('/broadcast', json={'action': 'pause', 'screenId': 'scr1'}, headers=fleet['owner']['headers'])
    assert response.status_code == 400
