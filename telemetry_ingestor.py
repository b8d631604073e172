"""Canonical telemetry ingestion for webhook pushes and console/config polling.

Every path that produces a reading ends up in :func:`ingest`, which
deduplicates on ``(device_id, event_id)``, extracts the scalar metrics, stores
the row and evaluates temperature alerts before returning.
"""
import enum
import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import DeviceStatus, MilesightDeviceCache, MilesightDeviceTelemetry, SensorChannel
from temperature_alerts import evaluate, resolve_alert_channel
from time_utils import as_utc, from_epoch_ms, to_epoch_ms, utcnow

logger = logging.getLogger(__name__)

# First present field wins
TEMPERATURE_FIELDS = ("temperature", "temperature_left", "temperature_right")
BATTERY_FIELDS = ("battery", "battery_level")

# Reading field -> alert channel key (None = single sensor)
TEMPERATURE_CHANNELS = {
    "temperature": None,
    "temperature_left": SensorChannel.CH1.value,
    "temperature_right": SensorChannel.CH2.value,
}

NESTED_PAYLOAD_KEYS = ("payload", "properties", "data")
METRIC_FIELDS = TEMPERATURE_FIELDS + ("humidity",) + BATTERY_FIELDS


class IngestStatus(str, enum.Enum):
    INSERTED = "inserted"
    SKIPPED = "skipped"


@dataclass
class IngestMeta:
    """Where a reading came from and how it identifies itself."""
    event_type: str
    source: str  # webhook, console, config
    event_id: Optional[str] = None
    timestamp_ms: Optional[int] = None
    data_type: str = "PROPERTY"
    event_version: Optional[str] = None


@dataclass
class IngestResult:
    status: IngestStatus
    event_id: str
    reason: Optional[str] = None  # duplicate, unknown_device
    telemetry_id: Optional[int] = None

    @property
    def inserted(self) -> bool:
        return self.status == IngestStatus.INSERTED


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return value


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def unwrap_payload(payload: Any) -> Dict[str, Any]:
    """Descend through ``payload``/``properties``/``data`` wrappers until metrics show up."""
    current = payload if isinstance(payload, dict) else {}
    for _ in range(3):
        if any(key in current for key in METRIC_FIELDS):
            return current
        nested = next(
            (current[key] for key in NESTED_PAYLOAD_KEYS if isinstance(current.get(key), dict)),
            None,
        )
        if nested is None:
            return current
        current = nested
    return current


def extract_metrics(payload: Any) -> Dict[str, Optional[float]]:
    body = unwrap_payload(payload)

    temperature = next(
        (value for value in (_number(body.get(field)) for field in TEMPERATURE_FIELDS) if value is not None),
        None,
    )
    battery = next(
        (value for value in (_number(body.get(field)) for field in BATTERY_FIELDS) if value is not None),
        None,
    )
    return {
        "temperature": temperature,
        "humidity": _number(body.get("humidity")),
        "battery": _round_half_up(battery) if battery is not None else None,
    }


def temperature_readings(payload: Any) -> List[Tuple[Optional[str], float]]:
    """Every temperature in the payload with the channel it belongs to."""
    body = unwrap_payload(payload)
    readings = []
    for field, channel in TEMPERATURE_CHANNELS.items():
        value = _number(body.get(field))
        if value is not None:
            readings.append((channel, float(value)))
    return readings


def compute_event_id(device_id: str, event_id: Optional[str], timestamp_ms: int) -> str:
    if event_id:
        return str(event_id)
    return f"{device_id}-{timestamp_ms}"


def record_heartbeat(device: MilesightDeviceCache, timestamp_ms: int, source: str,
                     now: Optional[datetime] = None) -> None:
    now = now or utcnow()
    reading_at = from_epoch_ms(timestamp_ms)
    last = as_utc(device.last_heartbeat_at)
    if last is None or reading_at > last:
        device.last_heartbeat_at = reading_at
    if source == "webhook":
        device.last_webhook_at = reading_at
        device.last_status = DeviceStatus.ONLINE.value
    elif source == "console":
        device.last_console_sync_at = now


def ingest(db: Session, device_id: str, payload: Dict[str, Any], meta: IngestMeta,
           now: Optional[datetime] = None) -> IngestResult:
    """Store one reading unless its event was already stored.

    A duplicate is a normal outcome, reported as ``SKIPPED``. After an insert
    the temperature readings go through alert evaluation before returning.
    """
    now = now or utcnow()
    timestamp_ms = int(meta.timestamp_ms) if meta.timestamp_ms is not None else to_epoch_ms(now)
    event_id = compute_event_id(device_id, meta.event_id, timestamp_ms)

    device = db.query(MilesightDeviceCache).filter(MilesightDeviceCache.device_id == device_id).first()
    if device is None:
        logger.warning(f"Telemetry for unknown device {device_id} ignored (event {event_id})")
        return IngestResult(IngestStatus.SKIPPED, event_id, reason="unknown_device")

    duplicate = db.query(MilesightDeviceTelemetry.id).filter(
        MilesightDeviceTelemetry.device_id == device_id,
        MilesightDeviceTelemetry.event_id == event_id,
    ).first()
    if duplicate is not None:
        logger.debug(f"Event {event_id} for {device_id} already stored, skipping")
        return IngestResult(IngestStatus.SKIPPED, event_id, reason="duplicate")

    metrics = extract_metrics(payload)
    row = MilesightDeviceTelemetry(
        device_id=device_id,
        event_id=event_id,
        event_type=meta.event_type,
        event_version=meta.event_version,
        data_type=meta.data_type or "PROPERTY",
        data_timestamp=timestamp_ms,
        source=meta.source,
        payload=payload,
        temperature=metrics["temperature"],
        humidity=metrics["humidity"],
        battery=metrics["battery"],
        device_sn=device.sn,
        device_name=device.name,
        device_model=device.device_type,
        device_dev_eui=device.dev_eui,
    )
    db.add(row)
    record_heartbeat(device, timestamp_ms, meta.source, now)

    try:
        db.commit()
    except IntegrityError:
        # Lost a race with a concurrent delivery of the same event
        db.rollback()
        logger.info(f"Event {event_id} for {device_id} stored concurrently, skipping")
        return IngestResult(IngestStatus.SKIPPED, event_id, reason="duplicate")

    telemetry_id = row.id
    _evaluate_alerts(db, device_id, payload, now)
    return IngestResult(IngestStatus.INSERTED, event_id, telemetry_id=telemetry_id)


def _evaluate_alerts(db: Session, device_id: str, payload: Dict[str, Any], now: datetime) -> None:
    for channel, temperature in temperature_readings(payload):
        try:
            evaluate(db, device_id, resolve_alert_channel(db, device_id, channel), temperature, now=now)
        except Exception as e:
            logger.error(f"Temperature alert evaluation failed for {device_id}: {e}", exc_info=True)
            db.rollback()


def _row_timestamp(row: Dict[str, Any]) -> Optional[int]:
    for key in ("ts", "timestamp"):
        value = _number(row.get(key))
        if value is not None:
            return int(value)
    created_at = row.get("createdAt")
    if isinstance(created_at, str):
        try:
            return to_epoch_ms(datetime.fromisoformat(created_at.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def _row_payload(row: Dict[str, Any]) -> Dict[str, Any]:
    for key in ("data", "payload", "properties", "content"):
        value = row.get(key)
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                continue
        if isinstance(value, dict):
            return value
    return {}


def ingest_console_rows(db: Session, device_id: str, rows: Iterable[Dict[str, Any]],
                        source: str = "console") -> Dict[str, int]:
    """Ingest device log rows fetched from the Milesight console."""
    counts = {"inserted": 0, "skipped": 0, "failed": 0}
    for row in rows:
        try:
            payload = _row_payload(row)
            if not payload:
                counts["skipped"] += 1
                continue
            meta = IngestMeta(
                event_type=row.get("eventType") or row.get("type") or "CONSOLE_BACKFILL",
                source=source,
                event_id=row.get("id") or row.get("eventId"),
                timestamp_ms=_row_timestamp(row),
            )
            result = ingest(db, device_id, payload, meta)
            counts["inserted" if result.inserted else "skipped"] += 1
        except Exception as e:
            logger.error(f"Failed to ingest console row for {device_id}: {e}", exc_info=True)
            db.rollback()
            counts["failed"] += 1
    return counts
