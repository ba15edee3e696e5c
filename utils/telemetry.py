"""
Telemetry Aggregator
Best-effort ingestion of playback-quality samples from player clients
"""
import logging
import math
import re
from collections import Counter
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from models import db, DeviceMetric, TelemetryEvent
from utils.errors import InvalidArgument, commit_session

logger = logging.getLogger(__name__)
metrics_logger = logging.getLogger('metrics')

REBUFFER_METRIC = 'rebuffer'
DEVICE_METRIC_FIELDS = ('bitrate_kbps', 'bandwidth_kbps', 'buffer_seconds', 'dropped_frames', 'rebuffer_count')

BOT_USER_AGENT = re.compile(
    r'(bot|crawl|spider|slurp|facebookexternalhit|preview|curl|wget|monitor|uptime|headless|puppeteer)',
    re.IGNORECASE
)


def is_bot(user_agent: Optional[str]) -> bool:
    """Check if a user agent belongs to a crawler or synthetic monitor"""
    return bool(user_agent) and BOT_USER_AGENT.search(user_agent) is not None


def _to_float(value) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _to_int(value) -> Optional[int]:
    number = _to_float(value)
    return int(number) if number is not None else None


def _to_text(value) -> Optional[str]:
    if value is None or value == '':
        return None
    return str(value)


def log_metric(name: str, value: float, tags: Dict[str, Any]):
    """Default metrics sink: one log line per sample on the ``metrics`` logger"""
    labels = ' '.join(f'{key}={tag}' for key, tag in sorted(tags.items()) if tag is not None)
    metrics_logger.info(f'{name}={value:g} {labels}'.rstrip())


class TelemetryAggregator:

    def __init__(
        self,
        health=None,
        metrics_sink: Optional[Callable[[str, float, Dict[str, Any]], None]] = None,
        max_events: int = 200,
        storm_threshold: int = 5
    ):
        self.health = health
        self.metrics_sink = metrics_sink
        self.max_events = max_events
        self.storm_threshold = storm_threshold

    def ingest(self, events, path: Optional[str] = None, session_id: Optional[str] = None,
               client_ip: Optional[str] = None) -> int:
        """
        Store a batch of telemetry events

        Args:
            events: A list of events or a single event object
            path: Page or player route the batch was emitted from
            session_id: Player session identifier
            client_ip: Remote address of the reporting client

        Returns:
            Number of events stored (0 on any failure)
        """
        rows = self._normalize(events, path, session_id, client_ip)
        if not rows:
            return 0

        try:
            db.session.add_all(rows)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f'Failed to store {len(rows)} telemetry event(s): {e}')
            return 0

        logger.debug(f'Stored {len(rows)} telemetry event(s) from {path}')
        self._forward((row.metric_name, row.value, {'id_value': row.id_value, 'path': row.path}) for row in rows)
        self._detect_rebuffer_storms(rows)
        return len(rows)

    def record_device_metrics(self, data: Dict[str, Any]) -> DeviceMetric:
        """
        Store one adaptive-streaming sample from a device player.

        Devices that are not registered yet are accepted. A rebuffer count at
        or above the storm threshold is reported to the health monitor.

        Raises:
            InvalidArgument: device_id is missing
            Transient: the sample could not be stored
        """
        device_id = _to_text(data.get('device_id'))
        if not device_id:
            raise InvalidArgument('device_id is required', code='device_id_required')

        metric = DeviceMetric(
            device_id=device_id[:100],
            screen_id=_to_text(data.get('screen_id')),
            bitrate_kbps=_to_int(data.get('bitrate_kbps')),
            bandwidth_kbps=_to_int(data.get('bandwidth_kbps')),
            buffer_seconds=_to_float(data.get('buffer_seconds')),
            dropped_frames=_to_int(data.get('dropped_frames')),
            rebuffer_count=_to_int(data.get('rebuffer_count')),
            playback_state=_to_text(data.get('playback_state')),
            error_code=_to_text(data.get('error_code'))
        )
        db.session.add(metric)
        commit_session(db.session, 'store device metrics', logger)

        tags = {'device_id': metric.device_id, 'screen_id': metric.screen_id}
        self._forward(
            (f'device.{field}', float(getattr(metric, field)), tags)
            for field in DEVICE_METRIC_FIELDS
            if getattr(metric, field) is not None
        )
        if metric.rebuffer_count is not None and metric.rebuffer_count >= self.storm_threshold:
            self._report_storm(metric.device_id, metric.rebuffer_count)
        return metric

    def _normalize(self, events, path, session_id, client_ip) -> List[TelemetryEvent]:
        if events is None:
            return []
        if not isinstance(events, list):
            events = [events]

        rows = []
        for event in events:
            if not isinstance(event, dict) or not isinstance(event.get('metric_name'), str):
                continue
            value = _to_float(event.get('value'))
            if value is None:
                continue

            rows.append(TelemetryEvent(
                metric_name=event['metric_name'][:100],
                value=value,
                delta=_to_float(event.get('delta')),
                id_value=_to_text(event.get('id_value')),
                navigation_type=_to_text(event.get('navigation_type')),
                session_id=_to_text(session_id),
                path=_to_text(path),
                client_ip=client_ip
            ))

            if len(rows) >= self.max_events:
                logger.warning(f'Telemetry batch truncated to {self.max_events} events')
                break

        return rows

    def _forward(self, samples):
        if self.metrics_sink is None:
            return
        for name, value, tags in samples:
            try:
                self.metrics_sink(name, value, tags)
            except Exception as e:
                logger.error(f'Metrics sink rejected {name}: {e}')
                return

    def _detect_rebuffer_storms(self, rows: List[TelemetryEvent]):
        counts = Counter(
            row.id_value for row in rows
            if row.metric_name.lower() == REBUFFER_METRIC and row.id_value
        )
        for id_value, count in counts.items():
            if count >= self.storm_threshold:
                self._report_storm(id_value, count)

    def _report_storm(self, id_value: str, count: int):
        if self.health is None:
            return
        try:
            self.health.report_playback_issue(id_value, count)
        except Exception as e:
            db.session.rollback()
            logger.error(f'Failed to report rebuffer storm for {id_value}: {e}')
