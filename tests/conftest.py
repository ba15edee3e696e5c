from datetime import datetime

import pytest

from app import create_app
from models import db, Device, Screen, User, UserRole


def _make_user(username, role=UserRole.OWNER):
    user = User(username=username, email=f'{username}@example.com', role=role)
    db.session.add(user)
    db.session.flush()
    token = user.issue_api_token()
    db.session.commit()
    return {'id': user.id, 'token': token, 'headers': {'Authorization': f'Bearer {token}'}}


def _make_device(device_id, owner_id=None, screen_id=None, token='prov-secret'):
    device = Device(
        device_id=device_id,
        owner_id=owner_id,
        screen_id=screen_id,
        provisioning_token_hash=Device.hash_provisioning_token(token),
        status='idle' if owner_id else 'unpaired',
        last_seen=datetime.utcnow()
    )
    db.session.add(device)
    db.session.commit()
    return device_id


@pytest.fixture
def app():
    app = create_app('testing')
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def ctx(app):
    """App context for exercising the services directly"""
    with app.app_context():
        yield app.control_plane


@pytest.fixture
def fleet(app):
    """
    Two owners and an admin. ``owner`` owns screen scr1 with dev1 bound to
    it; ``other`` owns screen scr9 with dev9 bound to it.
    """
    with app.app_context():
        owner = _make_user('owner')
        other = _make_user('other')
        admin = _make_user('root', role=UserRole.ADMIN)

        db.session.add(Screen(screen_id='scr1', owner_id=owner['id'], display_name='Lobby'))
        db.session.add(Screen(screen_id='scr9', owner_id=other['id'], display_name='Elsewhere'))
        db.session.commit()

        _make_device('dev1', owner_id=owner['id'], screen_id='scr1')
        _make_device('dev9', owner_id=other['id'], screen_id='scr9')

    return {'owner': owner, 'other': other, 'admin': admin}


@pytest.fixture
def make_device(app):
    def _factory(device_id, owner_id=None, screen_id=None, token='prov-secret'):
        with app.app_context():
            return _make_device(device_id, owner_id, screen_id, token)
    return _factory
