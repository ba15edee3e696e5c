"""
Heartbeat & Health Monitor
Tracks screen liveness, sweeps for stale heartbeats and raises offline alerts
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError

from models import db, Alert, Device, DeviceState, DeviceStatus
from utils.errors import InvalidArgument, commit_session
from utils.notifications import AlertService
from utils.registry import DeviceRegistry

logger = logging.getLogger(__name__)

OFFLINE = 'offline'
REPORTABLE_STATUSES = {'online', 'idle', 'playing', 'broadcasting', 'error'}


class HealthMonitor:
    """Monitors heartbeat recency and creates alerts"""

    # Rebuffer alerts for the same player are not repeated within this window
    PLAYBACK_ALERT_COOLDOWN = timedelta(minutes=10)

    def __init__(
        self,
        registry: DeviceRegistry,
        alert_sink: AlertService,
        timeout_minutes: int = 5,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.registry = registry
        self.alert_sink = alert_sink
        self.timeout = timedelta(minutes=timeout_minutes)
        self.clock = clock

    @property
    def timeout_minutes(self) -> int:
        return int(self.timeout.total_seconds() // 60)

    # ------------------------------------------------------------------
    # Heartbeats
    # ------------------------------------------------------------------

    def record_heartbeat(
        self,
        screen_id: str,
        status: Optional[str] = None,
        current_content: Optional[str] = None,
        signal_strength: Optional[int] = None,
        diagnostics: Optional[Dict[str, Any]] = None
    ) -> DeviceStatus:
        """Upsert the heartbeat record for a screen, always refreshing last_heartbeat"""
        if not screen_id:
            raise InvalidArgument('screen_id is required')

        record = DeviceStatus.query.filter_by(screen_id=screen_id).first()
        if record is None:
            record = DeviceStatus(screen_id=screen_id, broadcast_state='idle')
            db.session.add(record)

        was_offline = record.status == OFFLINE
        record.status = status if status in REPORTABLE_STATUSES else 'online'
        record.last_heartbeat = self.clock()
        if current_content is not None:
            record.current_content = current_content
        if signal_strength is not None:
            record.signal_strength = signal_strength
        if diagnostics is not None:
            record.diagnostics = diagnostics

        commit_session(db.session, 'record heartbeat', logger)

        if was_offline:
            logger.info(f'Screen {screen_id} is back online')
        else:
            logger.debug(f'Heartbeat recorded for screen {screen_id}')
        return record

    def is_live(self, screen_id: str, now: Optional[datetime] = None) -> bool:
        """True if the screen's last heartbeat is within the staleness threshold"""
        now = now or self.clock()
        try:
            record = DeviceStatus.query.filter_by(screen_id=screen_id).first()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f'Liveness lookup failed for screen {screen_id}: {e}')
            return False

        if record is None or record.last_heartbeat is None or record.status == OFFLINE:
            return False
        return now - record.last_heartbeat <= self.timeout

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def sweep(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Mark stale heartbeat records offline and alert each screen owner once.

        Alerting is edge-triggered: only records that actually transition
        into ``offline`` raise an alert. A failure on one record is logged
        and the sweep moves on to the next.
        """
        now = now or self.clock()
        threshold = now - self.timeout

        try:
            stale_ids = [row.id for row in DeviceStatus.query.with_entities(DeviceStatus.id).filter(
                DeviceStatus.status != OFFLINE,
                or_(DeviceStatus.last_heartbeat.is_(None), DeviceStatus.last_heartbeat < threshold)
            ).all()]
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f'Health sweep query failed: {e}')
            return {'checked_at': now.isoformat(), 'marked_offline': [], 'alerts': 0, 'errors': 1,
                    'devices_marked_offline': 0}

        marked_offline: List[str] = []
        alerts = 0
        errors = 0

        for record_id in stale_ids:
            try:
                screen_id = self._mark_offline(record_id, threshold)
                if screen_id is None:
                    # A heartbeat arrived since the scan
                    continue
                marked_offline.append(screen_id)
                alerts += 1
            except Exception as e:
                db.session.rollback()
                errors += 1
                logger.error(f'Health sweep failed for status record {record_id}: {e}')

        devices_marked = self._sweep_devices(threshold)

        if marked_offline:
            logger.info(f'Health sweep marked {len(marked_offline)} screen(s) offline: {", ".join(marked_offline)}')

        return {
            'checked_at': now.isoformat(),
            'marked_offline': marked_offline,
            'alerts': alerts,
            'errors': errors,
            'devices_marked_offline': devices_marked
        }

    def _mark_offline(self, record_id: int, threshold: datetime) -> Optional[str]:
        """
        Flip one stale record to offline and record its alert in the same
        transaction, so a failed alert leaves the record for the next sweep.
        """
        # Conditional update so concurrent sweeps cannot both win the transition
        updated = DeviceStatus.query.filter(
            DeviceStatus.id == record_id,
            DeviceStatus.status != OFFLINE,
            or_(DeviceStatus.last_heartbeat.is_(None), DeviceStatus.last_heartbeat < threshold)
        ).update({'status': OFFLINE}, synchronize_session=False)
        if updated != 1:
            db.session.rollback()
            return None

        screen_id = db.session.get(DeviceStatus, record_id).screen_id
        alert = self._alert_offline(screen_id)
        commit_session(db.session, 'mark screen offline', logger)
        self.alert_sink.publish(alert)
        return screen_id

    def _alert_offline(self, screen_id: str) -> Alert:
        screen = self.registry.get_screen(screen_id)
        screen_name = screen.display_name if screen else screen_id
        owner_id = screen.owner_id if screen else None
        return self.alert_sink.device_offline(screen_id, screen_name, owner_id, self.timeout_minutes, commit=False)

    def _sweep_devices(self, threshold: datetime) -> int:
        try:
            count = Device.query.filter(
                Device.status != DeviceState.OFFLINE.value,
                or_(Device.last_seen.is_(None), Device.last_seen < threshold)
            ).update({'status': DeviceState.OFFLINE.value}, synchronize_session=False)
            db.session.commit()
            return count
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f'Device staleness sweep failed: {e}')
            return 0

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def check_device_health(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Summarize screen liveness

        Returns:
            Dict with online/offline screens
        """
        now = now or self.clock()
        records = DeviceStatus.query.order_by(DeviceStatus.screen_id).all()

        online = []
        offline = []
        for record in records:
            entry = record.to_dict()
            if record.status != OFFLINE and record.last_heartbeat and now - record.last_heartbeat <= self.timeout:
                online.append(entry)
            else:
                if record.last_heartbeat:
                    entry['offline_minutes'] = int((now - record.last_heartbeat).total_seconds() / 60)
                else:
                    entry['offline_minutes'] = None  # Never seen
                offline.append(entry)

        return {
            'checked_at': now.isoformat(),
            'total_screens': len(records),
            'online': len(online),
            'offline': len(offline),
            'online_screens': online,
            'offline_screens': offline
        }

    def report_playback_issue(self, id_value: str, rebuffer_count: int) -> Optional[Alert]:
        """Raise a rebuffer-storm alert for a player unless one was raised recently"""
        device = self.registry.get_device(id_value)
        screen_id = device.screen_id if device else None
        owner_id = self.registry.owner_of_screen(screen_id) if screen_id else None
        if owner_id is None and device is not None:
            owner_id = device.owner_id

        since = self.clock() - self.PLAYBACK_ALERT_COOLDOWN
        recent = Alert.query.filter(
            Alert.alert_type == 'playback_rebuffer_storm',
            Alert.created_at > since
        ).all()
        if any((alert.details or {}).get('id_value') == id_value for alert in recent):
            logger.debug(f'Rebuffer alert for {id_value} suppressed (cooldown)')
            return None

        return self.alert_sink.rebuffer_storm(id_value, rebuffer_count, owner_id, screen_id)
