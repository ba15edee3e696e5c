from datetime import datetime, timedelta

from models import db, Alert, Device, DeviceStatus


NOW = datetime(2026, 3, 2, 12, 0, 0)


def set_heartbeat(screen_id, when, status='online'):
    record = DeviceStatus.query.filter_by(screen_id=screen_id).first()
    if record is None:
        record = DeviceStatus(screen_id=screen_id)
        db.session.add(record)
    record.status = status
    record.last_heartbeat = when
    db.session.commit()
    return record


def test_record_heartbeat_upserts(fleet, ctx):
    ctx.health.record_heartbeat('scr1', status='playing', signal_strength=-60, diagnostics={'temp_c': 48})
    ctx.health.record_heartbeat('scr1', current_content='https://cdn.example.com/ad.mp4')

    records = DeviceStatus.query.filter_by(screen_id='scr1').all()
    assert len(records) == 1
    record = records[0]
    assert record.status == 'online'
    assert record.signal_strength == -60
    assert record.diagnostics == {'temp_c': 48}
    assert record.current_content == 'https://cdn.example.com/ad.mp4'
    assert record.last_heartbeat is not None


def test_sweep_threshold_boundary(fleet, ctx):
    threshold = timedelta(minutes=5)
    set_heartbeat('scr1', NOW - threshold - timedelta(seconds=1))
    set_heartbeat('scr9', NOW - threshold + timedelta(seconds=1))

    result = ctx.health.sweep(now=NOW)

    assert result['marked_offline'] == ['scr1']
    assert DeviceStatus.query.filter_by(screen_id='scr1').first().status == 'offline'
    assert DeviceStatus.query.filter_by(screen_id='scr9').first().status == 'online'


def test_sweep_alerts_once_per_transition(fleet, ctx):
    set_heartbeat('scr1', NOW - timedelta(minutes=30))

    first = ctx.health.sweep(now=NOW)
    second = ctx.health.sweep(now=NOW + timedelta(minutes=1))

    assert first['alerts'] == 1
    assert second['alerts'] == 0
    alerts = Alert.query.filter_by(alert_type='device_offline').all()
    assert len(alerts) == 1
    assert alerts[0].user_id == fleet['owner']['id']
    assert alerts[0].severity.value == 'medium'
    assert alerts[0].details == {'screen_id': 'scr1'}
    assert 'Lobby' in alerts[0].message


def test_screen_back_online_alerts_again_on_next_drop(fleet, ctx):
    set_heartbeat('scr1', NOW - timedelta(minutes=30))
    ctx.health.sweep(now=NOW)

    set_heartbeat('scr1', NOW + timedelta(minutes=1))
    ctx.health.sweep(now=NOW + timedelta(minutes=2))
    assert Alert.query.count() == 1

    ctx.health.sweep(now=NOW + timedelta(minutes=10))
    assert Alert.query.count() == 2


def test_never_seen_record_goes_offline(fleet, ctx):
    db.session.add(DeviceStatus(screen_id='scr1', status='online', last_heartbeat=None))
    db.session.commit()

    result = ctx.health.sweep(now=NOW)
    assert result['marked_offline'] == ['scr1']


def test_sweep_isolates_failing_records(fleet, ctx, monkeypatch):
    set_heartbeat('scr1', NOW - timedelta(minutes=30))
    set_heartbeat('scr9', NOW - timedelta(minutes=30))

    original = ctx.health._alert_offline

    def flaky(screen_id):
        if screen_id == 'scr1':
            raise RuntimeError('alert store unavailable')
        return original(screen_id)

    monkeypatch.setattr(ctx.health, '_alert_offline', flaky)
    result = ctx.health.sweep(now=NOW)

    assert result['errors'] == 1
    assert result['marked_offline'] == ['scr9']
    assert result['alerts'] == 1
    assert Alert.query.filter_by(user_id=fleet['other']['id']).count() == 1


def test_failed_alert_is_retried_by_next_sweep(fleet, ctx, monkeypatch):
    set_heartbeat('scr1', NOW - timedelta(minutes=30))

    def unavailable(*args, **kwargs):
        raise RuntimeError('alert store unavailable')

    monkeypatch.setattr(ctx.alerts, 'device_offline', unavailable)
    assert ctx.health.sweep(now=NOW)['errors'] == 1
    # The transition is rolled back together with the alert
    assert DeviceStatus.query.filter_by(screen_id='scr1').first().status == 'online'

    monkeypatch.undo()
    result = ctx.health.sweep(now=NOW + timedelta(minutes=1))
    assert result['marked_offline'] == ['scr1']
    assert DeviceStatus.query.filter_by(screen_id='scr1').first().status == 'offline'
    alerts = Alert.query.filter_by(alert_type='device_offline').all()
    assert len(alerts) == 1
    assert alerts[0].user_id == fleet['owner']['id']


def test_sweep_marks_stale_devices_offline(fleet, ctx):
    device = db.session.get(Device, 'dev1')
    device.last_seen = NOW - timedelta(minutes=6)
    fresh = db.session.get(Device, 'dev9')
    fresh.last_seen = NOW - timedelta(minutes=1)
    db.session.commit()

    result = ctx.health.sweep(now=NOW)

    assert result['devices_marked_offline'] == 1
    db.session.expire_all()
    assert db.session.get(Device, 'dev1').status == 'offline'
    assert db.session.get(Device, 'dev9').status == 'idle'


def test_is_live(fleet, ctx):
    assert not ctx.health.is_live('scr1', now=NOW)
    set_heartbeat('scr1', NOW - timedelta(minutes=1))
    assert ctx.health.is_live('scr1', now=NOW)
    assert not ctx.health.is_live('scr1', now=NOW + timedelta(minutes=10))


def test_check_device_health_summary(fleet, ctx):
    set_heartbeat('scr1', NOW - timedelta(minutes=1))
    set_heartbeat('scr9', NOW - timedelta(minutes=20))

    summary = ctx.health.check_device_health(now=NOW)
    assert summary['total_screens'] == 2
    assert summary['online'] == 1
    assert summary['offline_screens'][0]['screen_id'] == 'scr9'
    assert summary['offline_screens'][0]['offline_minutes'] == 20


def test_heartbeat_endpoint_updates_bound_screen(client, app, fleet):
    response = client.post('/device-heartbeat', json={
        'device_id': 'dev1',
        'provisioning_token': 'prov-secret',
        'status': 'playing',
        'signal_strength': -55
    })
    assert response.status_code == 200
    assert response.get_json()['screen_id'] == 'scr1'

    with app.app_context():
        record = DeviceStatus.query.filter_by(screen_id='scr1').first()
        assert record.status == 'playing'
        assert record.signal_strength == -55


def test_health_endpoints(client, fleet):
    assert client.get('/api/health').get_json()['status'] == 'healthy'

    assert client.get('/api/health/devices').status_code == 401
    response = client.get('/api/health/devices', headers=fleet['owner']['headers'])
    assert response.status_code == 200
    assert response.get_json()['total_screens'] == 0


def test_alerts_endpoint_scopes_to_caller(app, fleet, client):
    with app.app_context():
        set_heartbeat('scr1', NOW - timedelta(minutes=30))
        set_heartbeat('scr9', NOW - timedelta(minutes=30))
        app.control_plane.health.sweep(now=NOW)

    owner_alerts = client.get('/api/alerts', headers=fleet['owner']['headers']).get_json()
    assert owner_alerts['count'] == 1
    assert owner_alerts['alerts'][0]['metadata'] == {'screen_id': 'scr1'}

    admin_alerts = client.get('/api/alerts', headers=fleet['admin']['headers']).get_json()
    assert admin_alerts['count'] == 2
