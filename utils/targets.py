"""
Command and settings addressing
A target is either one device or every device bound to a screen
"""
from typing import NamedTuple, Optional, Union

from utils.errors import InvalidArgument


class DeviceTarget(NamedTuple):
    device_id: str

    @property
    def screen_id(self):
        return None


class ScreenTarget(NamedTuple):
    screen_id: str

    @property
    def device_id(self):
        return None


Target = Union[DeviceTarget, ScreenTarget]


def _clean_id(value) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, (str, int)):
        raise InvalidArgument('Identifiers must be strings', code='invalid_target')
    value = str(value).strip()
    return value or None


def parse_target(data) -> Target:
    """
    Build a target from a request body holding ``device_id`` or ``screen_id``.

    Exactly one of the two must be present.
    """
    device_id = _clean_id(data.get('device_id'))
    screen_id = _clean_id(data.get('screen_id'))

    if device_id and screen_id:
        raise InvalidArgument('Supply either device_id or screen_id, not both', code='ambiguous_target')
    if device_id:
        return DeviceTarget(device_id)
    if screen_id:
        return ScreenTarget(screen_id)
    raise InvalidArgument('device_id or screen_id is required', code='target_required')


def parse_settings_scope(data):
    """
    Settings may be addressed to a device, a screen, or a device on a screen.

    Returns a ``(device_id, screen_id)`` pair with at least one member set.
    """
    device_id = _clean_id(data.get('device_id'))
    screen_id = _clean_id(data.get('screen_id'))
    if not device_id and not screen_id:
        raise InvalidArgument('device_id or screen_id is required', code='target_required')
    return device_id, screen_id
