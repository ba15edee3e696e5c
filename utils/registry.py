"""
Device Registry & Binding
Owns device provisioning, ownership and the device <-> screen binding.
Every other component reads ownership facts from here for authorization.
"""
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from models import db, Device, DeviceState, Screen, User
from utils.errors import Forbidden, InvalidArgument, NotFound, Unauthorized, commit_session
from utils.targets import DeviceTarget, ScreenTarget

logger = logging.getLogger(__name__)

DEVICE_REPORTABLE_STATES = {
    DeviceState.IDLE.value,
    DeviceState.PLAYING.value,
    DeviceState.ERROR.value,
}


def default_role_lookup(user: User) -> bool:
    """Administrative capability check against the user's role"""
    return user.is_admin


class DeviceRegistry:
    """Sole writer of device ownership and bindings"""

    def __init__(self, role_lookup: Callable[[User], bool] = default_role_lookup):
        self.role_lookup = role_lookup

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_device(self, device_id: str) -> Optional[Device]:
        return db.session.get(Device, device_id)

    def get_screen(self, screen_id: str) -> Optional[Screen]:
        return db.session.get(Screen, screen_id)

    def devices_for_screen(self, screen_id: str) -> List[Device]:
        return Device.query.filter_by(screen_id=screen_id).order_by(Device.created_at).all()

    def owner_of_screen(self, screen_id: str) -> Optional[int]:
        screen = self.get_screen(screen_id)
        return screen.owner_id if screen else None

    def is_admin(self, caller: User) -> bool:
        try:
            return bool(self.role_lookup(caller))
        except Exception as e:
            logger.error(f'Role lookup failed for user {caller.id}: {e}')
            return False

    def is_authorized(self, caller: Optional[User], target) -> bool:
        """
        True if the caller owns the device, owns the screen the target
        resolves to, or holds the administrative role.
        """
        if caller is None:
            return False

        if isinstance(target, DeviceTarget):
            device = self.get_device(target.device_id)
            if device is not None:
                if device.owner_id == caller.id:
                    return True
                if device.screen_id and self.owner_of_screen(device.screen_id) == caller.id:
                    return True
        elif isinstance(target, ScreenTarget):
            if self.owner_of_screen(target.screen_id) == caller.id:
                return True
        else:
            raise InvalidArgument('Unsupported target type')

        return self.is_admin(caller)

    def require_authorized(self, caller: Optional[User], target):
        if not self.is_authorized(caller, target):
            logger.warning(f'User {getattr(caller, "id", None)} denied access to {target}')
            raise Forbidden('You do not own this device or screen')

    # ------------------------------------------------------------------
    # Provisioning & pairing
    # ------------------------------------------------------------------

    def provision(self, device_id: str, provisioning_token: str, status: Optional[str] = None) -> Dict:
        """
        Register a device on first contact or refresh an existing one.

        The provisioning token presented the first time becomes the device's
        credential; later calls must present the same token.
        """
        if not device_id or not provisioning_token:
            raise InvalidArgument('device_id and provisioning_token are required')

        device = self.get_device(device_id)
        now = datetime.utcnow()

        if device is not None:
            if not device.verify_provisioning_token(provisioning_token):
                logger.warning(f'Invalid provisioning token for device {device_id}')
                raise Unauthorized('Invalid provisioning token')

            device.last_seen = now
            if status in DEVICE_REPORTABLE_STATES:
                device.status = status
            elif device.status == DeviceState.OFFLINE.value:
                device.status = DeviceState.IDLE.value if device.owner_id else DeviceState.UNPAIRED.value
            commit_session(db.session, 'update device', logger)
            return {'device': device, 'created': False}

        device = Device(
            device_id=device_id,
            provisioning_token_hash=Device.hash_provisioning_token(provisioning_token),
            status=DeviceState.UNPAIRED.value,
            last_seen=now
        )
        db.session.add(device)
        commit_session(db.session, 'provision device', logger)
        logger.info(f'New device provisioned: {device_id}')
        return {'device': device, 'created': True}

    def pair(self, caller: User, device_id: str) -> Device:
        """Claim ownership of a provisioned device"""
        device = self.get_device(device_id)
        if device is None:
            raise NotFound('Device not found')

        if device.owner_id and device.owner_id != caller.id:
            raise Forbidden('Device already paired by another user')

        if device.owner_id != caller.id:
            device.owner_id = caller.id
            if device.status == DeviceState.UNPAIRED.value:
                device.status = DeviceState.IDLE.value
            commit_session(db.session, 'pair device', logger)
            logger.info(f'Device {device_id} paired to user {caller.id}')

        return device

    # ------------------------------------------------------------------
    # Binding
    # ------------------------------------------------------------------

    def bind(self, caller: User, device_id: str, screen_id: str, screen_name: Optional[str] = None) -> Dict:
        """
        Bind a device to a screen, creating the screen when it does not exist.

        Re-binding to the same screen only applies the rename.
        """
        if not device_id or not screen_id:
            raise InvalidArgument('device_id and screen_id are required')

        device = self.get_device(device_id)
        if device is None:
            raise NotFound('Device not found')
        if device.owner_id != caller.id:
            raise Forbidden('Device not owned by user')

        screen = self.get_screen(screen_id)
        if screen is None:
            screen = Screen(
                screen_id=screen_id,
                owner_id=caller.id,
                display_name=screen_name or screen_id,
                active=True
            )
            db.session.add(screen)
            logger.info(f'Created screen {screen_id} for user {caller.id}')
        else:
            # Device and screen must share an owner at bind time
            if screen.owner_id != device.owner_id:
                raise Forbidden('Screen is owned by another user')
            if screen_name:
                screen.display_name = screen_name

        device.screen_id = screen_id
        commit_session(db.session, 'bind device', logger)

        return {
            'device_id': device.device_id,
            'screen_id': screen.screen_id,
            'screen_name': screen.display_name
        }

    def retire(self, caller: User, device_id: str) -> Device:
        """Soft-retire a device: unbind it and mark it offline for good"""
        device = self.get_device(device_id)
        if device is None:
            raise NotFound('Device not found')
        self.require_authorized(caller, DeviceTarget(device_id))

        device.screen_id = None
        device.status = DeviceState.OFFLINE.value
        commit_session(db.session, 'retire device', logger)
        logger.info(f'Device {device_id} retired')
        return device
