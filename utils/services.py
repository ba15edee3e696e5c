"""
Control plane service container
Builds the components once per application and wires their collaborators
"""
import logging

from utils.broadcast import BroadcastCoordinator, ScreenLocks
from utils.command_queue import CommandQueue
from utils.health_monitor import HealthMonitor
from utils.notifications import AlertService
from utils.registry import DeviceRegistry
from utils.settings_resolver import SettingsResolver
from utils.telemetry import TelemetryAggregator, log_metric

logger = logging.getLogger(__name__)


class ControlPlane:
    """All control plane components for one Flask application"""

    def __init__(self, app, alert_broadcaster=None, status_broadcaster=None, metrics_sink=None):
        config = app.config

        self.registry = DeviceRegistry()
        self.settings = SettingsResolver(self.registry)
        self.commands = CommandQueue(self.registry, page_size=config['COMMAND_POLL_PAGE_SIZE'])
        self.alerts = AlertService(broadcaster=alert_broadcaster)
        self.health = HealthMonitor(
            self.registry,
            self.alerts,
            timeout_minutes=config['DEVICE_TIMEOUT_MINUTES']
        )
        self.broadcasts = BroadcastCoordinator(
            self.commands,
            self.health,
            locks=ScreenLocks(),
            on_change=status_broadcaster
        )
        self.telemetry = TelemetryAggregator(
            health=self.health,
            metrics_sink=metrics_sink or log_metric,
            max_events=config['TELEMETRY_MAX_EVENTS'],
            storm_threshold=config['REBUFFER_STORM_THRESHOLD']
        )

        logger.debug('Control plane components initialised')
