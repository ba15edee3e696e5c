"""
Command Queue
Durable append/ack queue of device commands with at-least-once delivery.

Polling never marks commands delivered: a command stays in every poll result
for its target until the device acknowledges it.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError

from models import db, DeviceCommand, User
from utils.errors import InvalidArgument, Transient, commit_session
from utils.registry import DeviceRegistry

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10


class CommandQueue:
    """Enqueue, poll and acknowledge device commands"""

    def __init__(self, registry: DeviceRegistry, page_size: int = DEFAULT_PAGE_SIZE):
        self.registry = registry
        self.page_size = page_size

    def enqueue(self, caller: User, target, command: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """
        Queue a command on behalf of an operator.

        Requires the caller to own the target (or be an administrator).
        Identical commands are never coalesced.
        """
        self.registry.require_authorized(caller, target)
        command_id = self.push(target, command, payload)
        logger.info(f'User {caller.id} queued {command} for {target} (id={command_id})')
        return command_id

    def push(self, target, command: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """Queue a command without caller authorization (system callers only)"""
        row = self.stage(target, command, payload)
        commit_session(db.session, 'enqueue command', logger)
        return row.id

    def stage(self, target, command: str, payload: Optional[Dict[str, Any]] = None) -> DeviceCommand:
        """
        Add a command to the current unit of work without committing.

        The caller commits it together with its own state change.
        """
        if not command or not isinstance(command, str):
            raise InvalidArgument('command is required', code='command_required')
        if payload is not None and not isinstance(payload, dict):
            raise InvalidArgument('payload must be an object')

        row = DeviceCommand(
            device_id=target.device_id,
            screen_id=target.screen_id,
            command=command,
            payload=payload or {},
            status='pending'
        )
        db.session.add(row)
        return row

    def poll(self, device_id: str, screen_id: Optional[str]) -> List[DeviceCommand]:
        """
        Oldest-first page of pending commands for a device.

        Screen-wide commands are included only when the registry confirms
        the device is bound to ``screen_id``. Persistence failures yield an
        empty page; the device retries on its next interval.
        """
        try:
            clauses = [DeviceCommand.device_id == device_id]
            if screen_id and self._is_bound(device_id, screen_id):
                clauses.append(and_(
                    DeviceCommand.device_id.is_(None),
                    DeviceCommand.screen_id == screen_id
                ))

            return DeviceCommand.query.filter(
                DeviceCommand.status == 'pending',
                or_(*clauses)
            ).order_by(
                DeviceCommand.created_at.asc(),
                DeviceCommand.id.asc()
            ).limit(self.page_size).all()

        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f'Command poll failed for device {device_id}: {e}')
            return []

    def ack(self, device_id: str, ack_ids: Iterable) -> int:
        """
        Mark commands acknowledged. Acking twice is a no-op.

        Only commands addressed to the device itself or broadcast to the
        screen it is bound to are flipped; other ids are ignored.
        """
        ids = self._normalize_ids(ack_ids)
        try:
            device = self.registry.get_device(device_id)
            commands = DeviceCommand.query.filter(DeviceCommand.id.in_(ids)).all()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f'Command ack lookup failed for device {device_id}: {e}')
            raise Transient('Could not acknowledge commands, please retry') from e

        bound_screen = device.screen_id if device else None
        now = datetime.utcnow()
        acknowledged = 0

        for command in commands:
            if not self._addressed_to(command, device_id, bound_screen):
                logger.warning(f'Device {device_id} tried to ack command {command.id} addressed elsewhere')
                continue
            if command.is_pending:
                command.status = 'acknowledged'
                command.acknowledged_at = now
            acknowledged += 1

        commit_session(db.session, 'acknowledge commands', logger)
        return acknowledged

    def _is_bound(self, device_id: str, screen_id: str) -> bool:
        device = self.registry.get_device(device_id)
        return device is not None and device.screen_id == screen_id

    @staticmethod
    def _addressed_to(command: DeviceCommand, device_id: str, screen_id: Optional[str]) -> bool:
        if command.device_id is not None:
            return command.device_id == device_id
        return screen_id is not None and command.screen_id == screen_id

    @staticmethod
    def _normalize_ids(ack_ids) -> List[int]:
        if not isinstance(ack_ids, (list, tuple)) or not ack_ids:
            raise InvalidArgument('ack_ids must be a non-empty list', code='invalid_ack')
        try:
            return [int(i) for i in ack_ids]
        except (TypeError, ValueError):
            raise InvalidArgument('ack_ids must be command ids', code='invalid_ack')
