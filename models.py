"""
ScreenHub Database Models
SQLAlchemy ORM models for users, screens, devices, the command queue,
layered settings, heartbeat records, bookings, alerts and telemetry
"""
from datetime import datetime
from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash
import secrets
import enum

db = SQLAlchemy()


class UserRole(enum.Enum):
    """User role enumeration"""
    ADMIN = 'admin'    # May act on every screen and device
    OWNER = 'owner'    # May act on the screens and devices they own


class User(UserMixin, db.Model):
    """Operator / screen owner account"""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    email = db.Column(db.String(120), unique=True, nullable=True)
    role = db.Column(db.Enum(UserRole), default=UserRole.OWNER, nullable=False)
    api_token_hash = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def issue_api_token(self):
        """
        Generate a new API token for this user and store its hash.

        The token embeds the user id so that verification is a single
        lookup followed by one hash check. The plain token is returned once
        and never stored.
        """
        secret = secrets.token_urlsafe(32)
        self.api_token_hash = generate_password_hash(secret)
        return f'{self.id}.{secret}'

    def verify_api_token(self, secret):
        """Verify the secret part of an API token against the stored hash"""
        if not self.api_token_hash:
            return False
        return check_password_hash(self.api_token_hash, secret)

    @property
    def is_admin(self):
        """Check if user has admin role"""
        return self.role == UserRole.ADMIN

    def __repr__(self):
        return f'<User {self.username}>'


class Screen(db.Model):
    """Logical advertising surface that devices are bound to"""
    __tablename__ = 'screens'

    screen_id = db.Column(db.String(100), primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    display_name = db.Column(db.String(200), nullable=False)
    active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    owner = db.relationship('User', backref=db.backref('screens', lazy='dynamic'))

    def to_dict(self):
        return {
            'screen_id': self.screen_id,
            'owner_id': self.owner_id,
            'display_name': self.display_name,
            'active': self.active
        }

    def __repr__(self):
        return f'<Screen {self.screen_id} ({self.display_name})>'


class DeviceState(enum.Enum):
    """Device status values"""
    UNPAIRED = 'unpaired'
    IDLE = 'idle'
    PLAYING = 'playing'
    ERROR = 'error'
    OFFLINE = 'offline'


class Device(db.Model):
    """Physical or virtual player that polls for commands"""
    __tablename__ = 'devices'

    device_id = db.Column(db.String(100), primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)
    screen_id = db.Column(db.String(100), db.ForeignKey('screens.screen_id'), nullable=True, index=True)
    provisioning_token_hash = db.Column(db.String(255), nullable=False)
    last_seen = db.Column(db.DateTime, nullable=True)
    status = db.Column(db.String(20), default=DeviceState.UNPAIRED.value, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    owner = db.relationship('User', backref=db.backref('devices', lazy='dynamic'))
    screen = db.relationship('Screen', backref=db.backref('devices', lazy='dynamic'))

    @staticmethod
    def hash_provisioning_token(token):
        """Hash provisioning token for secure storage"""
        return generate_password_hash(token)

    def verify_provisioning_token(self, token):
        """Verify provisioning token against stored hash"""
        return check_password_hash(self.provisioning_token_hash, token)

    def to_dict(self):
        return {
            'device_id': self.device_id,
            'owner_id': self.owner_id,
            'screen_id': self.screen_id,
            'status': self.status,
            'last_seen': self.last_seen.isoformat() if self.last_seen else None
        }

    def __repr__(self):
        return f'<Device {self.device_id} -> {self.screen_id}>'


# ============================================================================
# COMMAND QUEUE
# ============================================================================

class DeviceCommand(db.Model):
    """
    Command addressed to exactly one device or to every device on a screen.

    Rows are never deleted: the queue is append/ack, so readers always
    filter by status.
    """
    __tablename__ = 'device_commands'

    id = db.Column(db.Integer, primary_key=True)
    device_id = db.Column(db.String(100), nullable=True, index=True)
    screen_id = db.Column(db.String(100), nullable=True, index=True)
    command = db.Column(db.String(50), nullable=False)  # reload, set_content, restart, ...
    payload = db.Column(db.JSON, nullable=False, default=dict)
    status = db.Column(db.String(20), default='pending', nullable=False, index=True)  # pending, acknowledged
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)
    acknowledged_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.CheckConstraint(
            '(device_id IS NULL) != (screen_id IS NULL)',
            name='ck_device_commands_single_target'
        ),
    )

    @property
    def is_pending(self):
        """Check if command is pending"""
        return self.status == 'pending'

    def to_wire(self):
        """Shape returned to polling devices"""
        return {
            'id': self.id,
            'command': self.command,
            'payload': self.payload or {}
        }

    def __repr__(self):
        target = self.device_id or f'screen:{self.screen_id}'
        return f'<DeviceCommand {self.command} for {target} - {self.status}>'


# ============================================================================
# LAYERED SETTINGS
# ============================================================================

class DeviceSettings(db.Model):
    """Settings map for a device, a screen, or a device on a screen"""
    __tablename__ = 'device_settings'

    id = db.Column(db.Integer, primary_key=True)
    device_id = db.Column(db.String(100), nullable=True, index=True)
    screen_id = db.Column(db.String(100), nullable=True, index=True)
    settings = db.Column(db.JSON, nullable=False, default=dict)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint('device_id', 'screen_id', name='uix_device_settings_target'),
    )

    def __repr__(self):
        return f'<DeviceSettings device={self.device_id} screen={self.screen_id}>'


# ============================================================================
# HEARTBEAT / BROADCAST STATE
# ============================================================================

class DeviceStatus(db.Model):
    """
    Heartbeat record for a screen.

    ``status`` holds the last reported or forced state (online, idle,
    playing, broadcasting, error, offline). ``broadcast_state`` is the
    broadcast session view reconciled against bookings.
    """
    __tablename__ = 'device_status'

    id = db.Column(db.Integer, primary_key=True)
    screen_id = db.Column(db.String(100), unique=True, nullable=False, index=True)
    status = db.Column(db.String(20), default='online', nullable=False)
    last_heartbeat = db.Column(db.DateTime, nullable=True, index=True)
    current_content = db.Column(db.String(500), nullable=True)
    booking_id = db.Column(db.String(100), nullable=True)
    broadcast_state = db.Column(db.String(20), default='idle', nullable=False)
    signal_strength = db.Column(db.Integer, nullable=True)
    diagnostics = db.Column(db.JSON, nullable=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            'screen_id': self.screen_id,
            'status': self.status,
            'broadcast_state': self.broadcast_state,
            'last_heartbeat': self.last_heartbeat.isoformat() if self.last_heartbeat else None,
            'current_content': self.current_content,
            'booking_id': self.booking_id,
            'signal_strength': self.signal_strength,
            'diagnostics': self.diagnostics
        }

    def __repr__(self):
        return f'<DeviceStatus {self.screen_id} {self.status}/{self.broadcast_state}>'


class Booking(db.Model):
    """Booking window as exposed by the scheduling system"""
    __tablename__ = 'bookings'

    id = db.Column(db.String(100), primary_key=True)
    screen_id = db.Column(db.String(100), nullable=False, index=True)
    content_url = db.Column(db.String(500), nullable=True)
    scheduled_start = db.Column(db.DateTime, nullable=False)
    scheduled_end = db.Column(db.DateTime, nullable=False)
    payment_status = db.Column(db.String(20), default='pending', nullable=False)
    status = db.Column(db.String(20), default='scheduled', nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'screen_id': self.screen_id,
            'content_url': self.content_url,
            'scheduled_start': self.scheduled_start.isoformat(),
            'scheduled_end': self.scheduled_end.isoformat(),
            'payment_status': self.payment_status,
            'status': self.status
        }

    def __repr__(self):
        return f'<Booking {self.id} on {self.screen_id} ({self.status})>'


# ============================================================================
# ALERTS
# ============================================================================

class AlertSeverity(enum.Enum):
    """Alert severity levels"""
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'
    CRITICAL = 'critical'


class Alert(db.Model):
    """Operational alert addressed to a user (NULL = administrators)"""
    __tablename__ = 'alerts'

    id = db.Column(db.Integer, primary_key=True)
    alert_type = db.Column(db.String(50), nullable=False, index=True)  # device_offline, playback_rebuffer_storm
    severity = db.Column(db.Enum(AlertSeverity), default=AlertSeverity.MEDIUM, nullable=False)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=True)
    details = db.Column('metadata', db.JSON, nullable=True)
    is_resolved = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'alert_type': self.alert_type,
            'severity': self.severity.value,
            'title': self.title,
            'message': self.message,
            'user_id': self.user_id,
            'metadata': self.details,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }

    def __repr__(self):
        return f'<Alert {self.alert_type} ({self.severity.value})>'


# ============================================================================
# PLAYBACK TELEMETRY
# ============================================================================

class TelemetryEvent(db.Model):
    """Playback-quality metric sample reported by a player client (append-only)"""
    __tablename__ = 'telemetry_events'

    id = db.Column(db.Integer, primary_key=True)
    metric_name = db.Column(db.String(100), nullable=False, index=True)
    value = db.Column(db.Float, nullable=False)
    delta = db.Column(db.Float, nullable=True)
    id_value = db.Column(db.String(200), nullable=True, index=True)
    navigation_type = db.Column(db.String(50), nullable=True)
    session_id = db.Column(db.String(200), nullable=True)
    path = db.Column(db.String(500), nullable=True)
    client_ip = db.Column(db.String(45), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f'<TelemetryEvent {self.metric_name}={self.value}>'


class DeviceMetric(db.Model):
    """Adaptive-streaming sample reported by a device player (append-only)"""
    __tablename__ = 'device_metrics'

    id = db.Column(db.Integer, primary_key=True)
    # Not a foreign key: preview players report before they are provisioned
    device_id = db.Column(db.String(100), nullable=False, index=True)
    screen_id = db.Column(db.String(100), nullable=True, index=True)
    bitrate_kbps = db.Column(db.Integer, nullable=True)
    bandwidth_kbps = db.Column(db.Integer, nullable=True)
    buffer_seconds = db.Column(db.Float, nullable=True)
    dropped_frames = db.Column(db.Integer, nullable=True)
    rebuffer_count = db.Column(db.Integer, nullable=True)
    playback_state = db.Column(db.String(50), nullable=True)
    error_code = db.Column(db.String(100), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'device_id': self.device_id,
            'screen_id': self.screen_id,
            'bitrate_kbps': self.bitrate_kbps,
            'bandwidth_kbps': self.bandwidth_kbps,
            'buffer_seconds': self.buffer_seconds,
            'dropped_frames': self.dropped_frames,
            'rebuffer_count': self.rebuffer_count,
            'playback_state': self.playback_state,
            'error_code': self.error_code,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }

    def __repr__(self):
        return f'<DeviceMetric {self.device_id} {self.playback_state}>'
