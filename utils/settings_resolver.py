"""
Settings Resolver
Cascading lookup: device-scoped settings shadow screen-scoped settings as a
whole map (no key-level merge), falling back to an empty map.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import db, DeviceSettings, User
from utils.errors import InvalidArgument, Transient
from utils.registry import DeviceRegistry
from utils.targets import DeviceTarget, ScreenTarget

logger = logging.getLogger(__name__)


class SettingsResolver:

    def __init__(self, registry: DeviceRegistry):
        self.registry = registry

    def get(self, device_id: Optional[str] = None, screen_id: Optional[str] = None) -> Dict[str, Any]:
        """Effective settings for a device and/or screen; never raises on missing rows"""
        if not device_id and not screen_id:
            raise InvalidArgument('device_id or screen_id is required', code='target_required')

        try:
            if device_id:
                row = self._device_row(device_id, screen_id)
                if row is not None:
                    return dict(row.settings or {})

            if screen_id:
                row = DeviceSettings.query.filter_by(device_id=None, screen_id=screen_id).first()
                if row is not None:
                    return dict(row.settings or {})

        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f'Settings lookup failed (device={device_id}, screen={screen_id}): {e}')

        return {}

    def set(self, caller: User, device_id: Optional[str], screen_id: Optional[str],
            settings: Dict[str, Any]) -> DeviceSettings:
        """Upsert the settings row keyed by the (device_id, screen_id) pair as supplied"""
        if not device_id and not screen_id:
            raise InvalidArgument('device_id or screen_id is required', code='target_required')
        if settings is None:
            settings = {}
        if not isinstance(settings, dict):
            raise InvalidArgument('settings must be an object')

        if device_id:
            self.registry.require_authorized(caller, DeviceTarget(device_id))
        if screen_id:
            self.registry.require_authorized(caller, ScreenTarget(screen_id))

        for attempt in (1, 2):
            try:
                row = self._upsert(device_id, screen_id, settings)
                break
            except IntegrityError as e:
                # Concurrent first write for the same pair; retry as an update
                db.session.rollback()
                if attempt == 2:
                    logger.error(f'Settings upsert kept conflicting: {e}')
                    raise Transient('Could not save settings, please retry') from e
            except SQLAlchemyError as e:
                db.session.rollback()
                logger.error(f'Failed to save settings: {e}')
                raise Transient('Could not save settings, please retry') from e

        logger.info(f'User {caller.id} updated settings (device={device_id}, screen={screen_id})')
        return row

    @staticmethod
    def _upsert(device_id, screen_id, settings):
        row = DeviceSettings.query.filter_by(device_id=device_id, screen_id=screen_id).first()
        if row is None:
            row = DeviceSettings(device_id=device_id, screen_id=screen_id)
            db.session.add(row)
        row.settings = dict(settings)
        row.updated_at = datetime.utcnow()
        db.session.commit()
        return row

    @staticmethod
    def _device_row(device_id, screen_id):
        # The override written for this exact screen, then the screen-agnostic one
        if screen_id:
            row = DeviceSettings.query.filter_by(device_id=device_id, screen_id=screen_id).first()
            if row is not None:
                return row
        return DeviceSettings.query.filter_by(device_id=device_id, screen_id=None).first()
