"""
Alert Service
Persists operational alerts and pushes them to connected operators
"""
import logging
from typing import Any, Dict, Optional

from models import db, Alert, AlertSeverity
from utils.errors import commit_session

logger = logging.getLogger(__name__)


class AlertService:
    """Alert sink used by the health monitor and telemetry aggregator"""

    def __init__(self, broadcaster=None):
        # broadcaster(alert_dict, user_id) pushes to live clients; optional
        self.broadcaster = broadcaster

    def raise_alert(
        self,
        alert_type: str,
        severity: AlertSeverity,
        title: str,
        message: str,
        user_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        commit: bool = True
    ) -> Alert:
        """
        Create a new alert

        Args:
            alert_type: Alert category (device_offline, playback_rebuffer_storm)
            severity: Severity level
            title: Short title
            message: Human readable message
            user_id: Owning user to notify (None = administrators)
            metadata: Related entity ids
            commit: False leaves the alert in the current unit of work; the
                caller commits it and then calls publish()

        Returns:
            Created Alert object
        """
        alert = Alert(
            alert_type=alert_type,
            severity=severity,
            title=title,
            message=message,
            user_id=user_id,
            details=metadata or {}
        )
        db.session.add(alert)
        if not commit:
            return alert

        commit_session(db.session, 'create alert', logger)
        self.publish(alert)
        return alert

    def publish(self, alert: Alert):
        """Log a committed alert and push it to live clients"""
        logger.info(
            f'Created alert: {alert.title} (type={alert.alert_type}, severity={alert.severity.value}, '
            f'user={alert.user_id})'
        )
        if self.broadcaster is None:
            return
        try:
            self.broadcaster(alert.to_dict(), alert.user_id)
        except Exception as e:
            logger.error(f'Failed to broadcast alert {alert.id}: {e}')

    def device_offline(self, screen_id: str, screen_name: str, owner_id: Optional[int],
                       timeout_minutes: int, commit: bool = True) -> Alert:
        return self.raise_alert(
            alert_type='device_offline',
            severity=AlertSeverity.MEDIUM,
            title='Device Offline',
            message=f'Screen "{screen_name}" has been offline for more than {timeout_minutes} minutes',
            user_id=owner_id,
            metadata={'screen_id': screen_id},
            commit=commit
        )

    def rebuffer_storm(self, id_value: str, count: int, owner_id: Optional[int],
                       screen_id: Optional[str] = None) -> Alert:
        return self.raise_alert(
            alert_type='playback_rebuffer_storm',
            severity=AlertSeverity.LOW,
            title='Playback Rebuffering',
            message=f'Player {id_value} reported {count} rebuffer events in one batch',
            user_id=owner_id,
            metadata={'id_value': id_value, 'screen_id': screen_id, 'rebuffer_count': count}
        )

    @staticmethod
    def open_alerts(user_id: Optional[int] = None, alert_type: Optional[str] = None, limit: int = 50):
        """Unresolved alerts, newest first"""
        query = Alert.query.filter_by(is_resolved=False)
        if user_id is not None:
            query = query.filter_by(user_id=user_id)
        if alert_type:
            query = query.filter_by(alert_type=alert_type)
        return query.order_by(Alert.created_at.desc()).limit(limit).all()
