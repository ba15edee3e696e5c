"""
Broadcast Session Coordinator
Per-screen idle/broadcasting state machine driven by operator requests and
the booking schedule. State changes for one screen are serialized; different
screens never wait on each other.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from models import db, Booking, DeviceStatus, Screen
from utils.command_queue import CommandQueue
from utils.errors import InvalidArgument, NotFound, commit_session
from utils.health_monitor import HealthMonitor
from utils.targets import ScreenTarget

logger = logging.getLogger(__name__)

IDLE = 'idle'
BROADCASTING = 'broadcasting'
OFFLINE = 'offline'


class ScreenLocks:
    """Registry of one lock per screen_id"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def get(self, screen_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(screen_id)
            if lock is None:
                lock = self._locks[screen_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, screen_id: str):
        lock = self.get(screen_id)
        with lock:
            yield


class BroadcastCoordinator:

    def __init__(
        self,
        commands: CommandQueue,
        health: HealthMonitor,
        locks: Optional[ScreenLocks] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        on_change: Optional[Callable[[str, Dict[str, Any]], None]] = None
    ):
        self.commands = commands
        self.health = health
        self.locks = locks or ScreenLocks()
        self.clock = clock
        self.on_change = on_change

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def start(self, screen_id: str, booking_id: str, content_url: str) -> Dict[str, Any]:
        if not screen_id or not booking_id or not content_url:
            raise InvalidArgument('screenId, bookingId and contentUrl are required')
        with self.locks.hold(screen_id):
            return self._start(screen_id, booking_id, content_url)

    def stop(self, screen_id: str) -> Dict[str, Any]:
        if not screen_id:
            raise InvalidArgument('screenId is required')
        with self.locks.hold(screen_id):
            return self._stop(screen_id)

    def status(self, screen_id: str) -> Optional[Dict[str, Any]]:
        """Current heartbeat record for the screen, or None"""
        if not screen_id:
            raise InvalidArgument('screenId is required')
        try:
            record = DeviceStatus.query.filter_by(screen_id=screen_id).first()
            devices = [d.device_id for d in self.commands.registry.devices_for_screen(screen_id)]
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f'Status lookup failed for screen {screen_id}: {e}')
            return None
        if record is None:
            return None
        data = record.to_dict()
        data['live'] = self.health.is_live(screen_id)
        data['devices'] = devices
        return data

    def active_bookings(self, screen_id: str, now: Optional[datetime] = None) -> List[Booking]:
        """Paid bookings whose window contains ``now``"""
        now = now or self.clock()
        return Booking.query.filter(
            Booking.screen_id == screen_id,
            Booking.payment_status == 'completed',
            Booking.scheduled_start <= now,
            Booking.scheduled_end >= now
        ).order_by(Booking.scheduled_start).all()

    # ------------------------------------------------------------------
    # Schedule-driven reconciliation
    # ------------------------------------------------------------------

    def reconcile(self, screen_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Bring the screen's broadcast state in line with the booking schedule.

        Level-triggered: calling it repeatedly with the same schedule makes
        no further changes.
        """
        now = now or self.clock()
        with self.locks.hold(screen_id):
            bookings = self.active_bookings(screen_id, now)
            record = DeviceStatus.query.filter_by(screen_id=screen_id).first()
            state = record.broadcast_state if record else IDLE
            current_booking = record.booking_id if record else None

            if len(bookings) > 1:
                logger.warning(
                    f'Screen {screen_id} has {len(bookings)} overlapping bookings at {now.isoformat()}, '
                    f'leaving state unchanged'
                )
                return {'screen_id': screen_id, 'action': 'none', 'state': state, 'reason': 'overlapping_bookings'}

            if len(bookings) == 1:
                booking = bookings[0]
                if state == BROADCASTING and current_booking == booking.id:
                    return {'screen_id': screen_id, 'action': 'none', 'state': state}
                if not booking.content_url:
                    logger.warning(f'Booking {booking.id} on screen {screen_id} has no content, not starting')
                    return {'screen_id': screen_id, 'action': 'none', 'state': state, 'reason': 'no_content'}
                result = self._start(screen_id, booking.id, booking.content_url)
                result['action'] = 'start'
                return result

            if state == BROADCASTING:
                result = self._stop(screen_id)
                result['action'] = 'stop'
                return result

            return {'screen_id': screen_id, 'action': 'none', 'state': state}

    def reconcile_all(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Reconcile every active screen; one failing screen does not stop the others"""
        now = now or self.clock()
        screen_ids = [row.screen_id for row in Screen.query.with_entities(Screen.screen_id).filter_by(active=True).all()]

        changed = []
        errors = 0
        for screen_id in screen_ids:
            try:
                result = self.reconcile(screen_id, now)
                if result.get('action') != 'none':
                    changed.append({'screen_id': screen_id, 'action': result['action']})
            except Exception as e:
                db.session.rollback()
                errors += 1
                logger.error(f'Reconcile failed for screen {screen_id}: {e}')

        return {'checked_at': now.isoformat(), 'screens': len(screen_ids), 'changed': changed, 'errors': errors}

    # ------------------------------------------------------------------
    # Transitions (caller holds the screen lock)
    # ------------------------------------------------------------------

    def _start(self, screen_id: str, booking_id: str, content_url: str) -> Dict[str, Any]:
        if db.session.get(Screen, screen_id) is None:
            raise NotFound('Screen not found')

        record = self._get_or_create(screen_id)
        live = self.health.is_live(screen_id)

        already = (
            record.broadcast_state == BROADCASTING
            and record.booking_id == booking_id
            and record.current_content == content_url
        )
        if not already:
            try:
                # An offline screen stays offline until its next heartbeat
                if record.status != OFFLINE:
                    record.status = BROADCASTING
                record.broadcast_state = BROADCASTING
                record.current_content = content_url
                record.booking_id = booking_id

                booking = db.session.get(Booking, booking_id)
                if booking is not None:
                    booking.status = BROADCASTING
                else:
                    logger.warning(f'Broadcast started for unknown booking {booking_id}')

                self.commands.stage(
                    ScreenTarget(screen_id),
                    'set_content',
                    {'content_url': content_url, 'booking_id': booking_id}
                )
                commit_session(db.session, 'start broadcast', logger)
            except Exception:
                db.session.rollback()
                raise
            logger.info(f'Broadcast started on screen {screen_id} (booking={booking_id})')
            self._notify(screen_id, record)

        result = {
            'success': True,
            'screen_id': screen_id,
            'state': BROADCASTING,
            'booking_id': booking_id,
            'content_url': content_url,
            'changed': not already,
            'live': live
        }
        if not live:
            # Commands stay queued until the device reconnects
            result['warning'] = 'device_offline'
            logger.warning(f'Broadcast on screen {screen_id} requested while device is offline')
        return result

    def _stop(self, screen_id: str) -> Dict[str, Any]:
        record = DeviceStatus.query.filter_by(screen_id=screen_id).first()
        if record is None:
            screen = db.session.get(Screen, screen_id)
            if screen is None:
                raise NotFound('Screen not found')
            return {'success': True, 'screen_id': screen_id, 'state': IDLE, 'changed': False}

        changed = record.broadcast_state != IDLE or record.current_content is not None
        if changed:
            try:
                record.broadcast_state = IDLE
                if record.status != OFFLINE:
                    record.status = IDLE
                record.current_content = None
                record.booking_id = None
                self.commands.stage(ScreenTarget(screen_id), 'stop_content', {})
                commit_session(db.session, 'stop broadcast', logger)
            except Exception:
                db.session.rollback()
                raise
            logger.info(f'Broadcast stopped on screen {screen_id}')
            self._notify(screen_id, record)

        return {'success': True, 'screen_id': screen_id, 'state': IDLE, 'changed': changed}

    @staticmethod
    def _get_or_create(screen_id: str) -> DeviceStatus:
        record = DeviceStatus.query.filter_by(screen_id=screen_id).first()
        if record is None:
            record = DeviceStatus(screen_id=screen_id, status=IDLE, broadcast_state=IDLE)
            db.session.add(record)
        return record

    def _notify(self, screen_id: str, record: DeviceStatus):
        if self.on_change is None:
            return
        try:
            self.on_change(screen_id, record.to_dict())
        except Exception as e:
            logger.error(f'Failed to publish broadcast change for screen {screen_id}: {e}')


BROADCAST_ACTIONS = ('start', 'stop', 'status', 'schedule')


def handle_action(coordinator: BroadcastCoordinator, caller, data) -> Dict[str, Any]:
    """
    Run one ``{action, screenId, bookingId?, contentUrl?}`` request on behalf
    of an operator. Shared by the HTTP endpoint and the Socket.IO event.

    Returns:
        Response payload; ``action`` names the reply event
    """
    if not isinstance(data, dict):
        raise InvalidArgument('Request body must be an object')

    action = data.get('action')
    screen_id = data.get('screenId')
    if action not in BROADCAST_ACTIONS:
        raise InvalidArgument(f'Unknown action: {action}', code='unknown_action')
    if not screen_id or not isinstance(screen_id, str):
        raise InvalidArgument('screenId is required')

    coordinator.commands.registry.require_authorized(caller, ScreenTarget(screen_id))
    timestamp = datetime.utcnow().isoformat()

    if action == 'start':
        result = coordinator.start(screen_id, data.get('bookingId'), data.get('contentUrl'))
        response = {
            'action': 'broadcast_started',
            'success': True,
            'screenId': screen_id,
            'bookingId': result['booking_id'],
            'contentUrl': result['content_url'],
            'live': result['live']
        }
        if 'warning' in result:
            response['warning'] = result['warning']
    elif action == 'stop':
        coordinator.stop(screen_id)
        response = {'action': 'broadcast_stopped', 'success': True, 'screenId': screen_id}
    elif action == 'status':
        response = {'action': 'status_response', 'screenId': screen_id, 'status': coordinator.status(screen_id)}
    else:
        try:
            bookings = [booking.to_dict() for booking in coordinator.active_bookings(screen_id)]
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f'Schedule lookup failed for screen {screen_id}: {e}')
            bookings = []
        response = {'action': 'schedule_response', 'screenId': screen_id, 'activeBookings': bookings}

    response['timestamp'] = timestamp
    return response
