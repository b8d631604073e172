"""Offline monitoring, console backfill and config polling for critical devices.

A watched device is healthy while its newest telemetry is younger than the
offline threshold. Crossing the threshold sends one offline email, marks
``critical_alert_active`` and pulls recent history from the Milesight
console. The flag clears silently once fresh telemetry is seen again.
"""
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from config import settings
from database import SessionLocal
from device_cache import find_cached_device
from milesight_client import MilesightClient
from models import CriticalDeviceWatch, DeviceStatus, MilesightDeviceCache, MilesightDeviceTelemetry
from notification_service import NotificationKind, admin_recipient_emails, notification_service
from telemetry_ingestor import IngestMeta, ingest, ingest_console_rows
from time_utils import from_epoch_ms, to_epoch_ms, utcnow
from token_manager import ensure_fresh_token

logger = logging.getLogger(__name__)

CONFIG_FETCH_EVENT = "CONFIG_FETCH"
CONFIG_SOURCE = "config"


class CheckStatus(str, enum.Enum):
    HEALTHY = "healthy"
    STALE = "stale"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass
class DeviceCheckResult:
    label: str
    status: CheckStatus
    device_id: Optional[str] = None
    minutes_since: Optional[int] = None
    alert_sent: bool = False
    backfill: Dict[str, int] = field(default_factory=dict)
    message: Optional[str] = None


# ============================================
# Watch list
# ============================================

def list_watch_entries(db: Session, include_inactive: bool = False) -> List[CriticalDeviceWatch]:
    query = db.query(CriticalDeviceWatch)
    if not include_inactive:
        query = query.filter(CriticalDeviceWatch.is_active == True)
    return query.order_by(CriticalDeviceWatch.id).all()


def add_watch_entry(db: Session, label: str, serial_number: Optional[str] = None,
                    dev_eui: Optional[str] = None) -> CriticalDeviceWatch:
    serial_number = (serial_number or "").strip() or None
    dev_eui = (dev_eui or "").strip() or None
    if not serial_number and not dev_eui:
        raise ValueError("A serial number or DevEUI is required")
    entry = CriticalDeviceWatch(label=label.strip(), serial_number=serial_number, dev_eui=dev_eui, is_active=True)
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return entry


def deactivate_watch_entry(db: Session, entry_id: int) -> CriticalDeviceWatch:
    entry = db.query(CriticalDeviceWatch).filter(CriticalDeviceWatch.id == entry_id).first()
    if entry is None:
        raise LookupError(f"Watch entry {entry_id} not found")
    entry.is_active = False
    db.commit()
    db.refresh(entry)
    return entry


def resolve_watch_targets(db: Session) -> List[Tuple[str, Optional[MilesightDeviceCache]]]:
    """Pair each watched device with its cache row (None when never synced).

    Resolved rows are flagged critical. Devices flagged critical by hand are
    watched as well.
    """
    targets: List[Tuple[str, Optional[MilesightDeviceCache]]] = []
    seen_ids = set()
    for entry in list_watch_entries(db):
        device = find_cached_device(db, sn=entry.serial_number, dev_eui=entry.dev_eui)
        if device is not None:
            if not device.is_critical:
                device.is_critical = True
            seen_ids.add(device.id)
        targets.append((entry.label, device))
    db.commit()

    extra = db.query(MilesightDeviceCache).filter(MilesightDeviceCache.is_critical == True).all()
    for device in extra:
        if device.id not in seen_ids:
            targets.append((device.name or device.device_id, device))
    return targets


# ============================================
# Monitor cycle
# ============================================

def last_telemetry_ms(db: Session, device_id: str) -> Optional[int]:
    """Newest reading pushed by the device or pulled from the console.

    Config snapshots are stamped at poll time when the API sends no
    timestamp, so they never count as a sign of life.
    """
    return db.query(func.max(MilesightDeviceTelemetry.data_timestamp)).filter(
        MilesightDeviceTelemetry.device_id == device_id,
        MilesightDeviceTelemetry.source != CONFIG_SOURCE,
    ).scalar()


def offline_recipients(db: Session) -> List[str]:
    return settings.offline_alert_recipient_list or admin_recipient_emails(db)


def backfill_device(db: Session, device: MilesightDeviceCache, client: MilesightClient,
                    limit: Optional[int] = None) -> Dict[str, int]:
    """Fetch the newest console log rows for one device and ingest the missing ones."""
    rows = client.search_logs(
        dev_euis=[device.dev_eui] if device.dev_eui else None,
        device_ids=[device.device_id],
        sns=[device.sn] if device.sn else None,
        page_size=limit or settings.console_fetch_limit,
    )
    counts = ingest_console_rows(db, device.device_id, rows, source="console")
    logger.info(f"Backfill for {device.device_id}: {len(rows)} row(s) fetched, {counts}")
    return counts


def check_device(db: Session, label: str, device: MilesightDeviceCache, client: Optional[MilesightClient],
                 now: datetime) -> DeviceCheckResult:
    threshold_ms = settings.device_offline_threshold_minutes * 60 * 1000
    last_ms = last_telemetry_ms(db, device.device_id)
    age_ms = to_epoch_ms(now) - last_ms if last_ms is not None else None
    minutes_since = age_ms // 60000 if age_ms is not None else None
    result = DeviceCheckResult(label=label, status=CheckStatus.HEALTHY, device_id=device.device_id,
                               minutes_since=minutes_since)

    if age_ms is not None and age_ms < threshold_ms:
        if device.critical_alert_active:
            device.critical_alert_active = False
            db.commit()
            logger.info(f"{label} ({device.device_id}) telemetry resumed")
        return result

    result.status = CheckStatus.STALE
    if device.critical_alert_active:
        logger.info(f"{label} ({device.device_id}) still silent, offline alert already sent")
        return result

    logger.warning(
        f"{label} ({device.device_id}) has no telemetry for "
        f"{minutes_since if minutes_since is not None else 'ever'} minute(s)"
    )
    notification_service.send(
        NotificationKind.DEVICE_OFFLINE,
        offline_recipients(db),
        {
            "device_name": device.name or label,
            "device_id": device.device_id,
            "sn": device.sn,
            "dev_eui": device.dev_eui,
            "minutes_since": minutes_since,
            "last_seen": from_epoch_ms(last_ms) if last_ms is not None else None,
            "threshold_minutes": settings.device_offline_threshold_minutes,
        },
        db=db,
        device_id=device.device_id,
    )
    device.critical_alert_active = True
    device.last_critical_alert_at = now
    device.last_status = DeviceStatus.OFFLINE.value
    db.commit()
    result.alert_sent = True

    if client is None:
        result.message = "Backfill skipped, no Milesight token available"
        return result
    try:
        result.backfill = backfill_device(db, device, client)
    except Exception as e:
        logger.error(f"Backfill failed for {device.device_id}: {e}", exc_info=True)
        db.rollback()
        result.message = f"Backfill failed: {e}"
    return result


def run_monitor_cycle(db: Session, client: Optional[MilesightClient] = None,
                      now: Optional[datetime] = None) -> List[DeviceCheckResult]:
    """Evaluate every watched device; one failing device does not stop the rest."""
    now = now or utcnow()
    results = []
    for label, device in resolve_watch_targets(db):
        if device is None:
            logger.error(f"Critical device '{label}' is not in the device cache, check the watch list or sync devices")
            results.append(DeviceCheckResult(label=label, status=CheckStatus.NOT_FOUND,
                                             message="Device not found in cache"))
            continue
        try:
            results.append(check_device(db, label, device, client, now))
        except Exception as e:
            logger.error(f"Error checking critical device {label}: {e}", exc_info=True)
            db.rollback()
            results.append(DeviceCheckResult(label=label, status=CheckStatus.ERROR,
                                             device_id=device.device_id, message=str(e)))
    return results


def _background_client(db: Session) -> Optional[MilesightClient]:
    try:
        return ensure_fresh_token(db).client()
    except Exception as e:
        logger.warning(f"Milesight API unavailable for background job: {e}")
        db.rollback()
        return None


def monitor_critical_devices() -> None:
    """Scheduled entry point for the monitor cycle."""
    db = SessionLocal()
    try:
        results = run_monitor_cycle(db, _background_client(db))
        summary: Dict[str, int] = {}
        for result in results:
            summary[result.status.value] = summary.get(result.status.value, 0) + 1
        logger.info(f"Critical device check finished: {summary or 'no devices watched'}")
    except Exception as e:
        logger.error(f"Critical device monitor failed: {e}", exc_info=True)
    finally:
        db.close()


# ============================================
# Backfill and config poll
# ============================================

def run_backfill_cycle(db: Session, client: MilesightClient) -> Dict[str, Dict[str, int]]:
    """Backfill every critical device that is currently alerting."""
    devices = db.query(MilesightDeviceCache).filter(
        MilesightDeviceCache.is_critical == True,
        MilesightDeviceCache.critical_alert_active == True,
    ).all()
    results = {}
    for device in devices:
        try:
            results[device.device_id] = backfill_device(db, device, client)
        except Exception as e:
            logger.error(f"Backfill failed for {device.device_id}: {e}", exc_info=True)
            db.rollback()
    return results


def backfill_critical_devices() -> None:
    """Scheduled entry point for the console backfill."""
    db = SessionLocal()
    try:
        client = _background_client(db)
        if client is None:
            return
        results = run_backfill_cycle(db, client)
        logger.info(f"Console backfill finished for {len(results)} device(s)")
    except Exception as e:
        logger.error(f"Console backfill failed: {e}", exc_info=True)
    finally:
        db.close()


def _config_timestamp_ms(config: Dict[str, Any], now: datetime) -> int:
    ts = config.get("timestamp")
    if isinstance(ts, (int, float)) and not isinstance(ts, bool):
        return int(ts)
    return to_epoch_ms(now)


def run_config_poll(db: Session, client: MilesightClient, now: Optional[datetime] = None) -> Dict[str, str]:
    """Ingest the current device properties of every critical device."""
    now = now or utcnow()
    devices = db.query(MilesightDeviceCache).filter(MilesightDeviceCache.is_critical == True).all()
    outcomes = {}
    for device in devices:
        try:
            config = client.get_device_config(device.device_id)
            properties = (config or {}).get("properties") if isinstance(config, dict) else None
            if not properties:
                logger.info(f"No config properties returned for {device.device_id}")
                outcomes[device.device_id] = "empty"
                continue
            result = ingest(
                db,
                device.device_id,
                properties,
                IngestMeta(
                    event_type=CONFIG_FETCH_EVENT,
                    source=CONFIG_SOURCE,
                    timestamp_ms=_config_timestamp_ms(config, now),
                ),
                now=now,
            )
            outcomes[device.device_id] = result.status.value
        except Exception as e:
            logger.error(f"Config poll failed for {device.device_id}: {e}", exc_info=True)
            db.rollback()
            outcomes[device.device_id] = "failed"
    return outcomes


def poll_critical_device_configs() -> None:
    """Scheduled entry point for the config poll."""
    db = SessionLocal()
    try:
        client = _background_client(db)
        if client is None:
            return
        outcomes = run_config_poll(db, client)
        logger.info(f"Config poll finished: {outcomes or 'no critical devices'}")
    except Exception as e:
        logger.error(f"Config poll failed: {e}", exc_info=True)
    finally:
        db.close()


# ============================================
# Offline summary
# ============================================

def notify_offline_devices(db: Session) -> Dict[str, Any]:
    """Email administrators the devices Milesight last reported offline."""
    devices = db.query(MilesightDeviceCache).filter(
        MilesightDeviceCache.last_status == DeviceStatus.OFFLINE.value
    ).order_by(MilesightDeviceCache.name).all()
    if not devices:
        return {"success": True, "message": "All devices are online", "offline_count": 0}

    recipients = admin_recipient_emails(db)
    if not recipients:
        return {"success": False, "message": "No active administrators to notify", "offline_count": len(devices)}

    sent = notification_service.send(
        NotificationKind.OFFLINE_DEVICES_SUMMARY,
        recipients,
        {
            "devices": [
                {"name": d.name, "device_id": d.device_id, "sn": d.sn, "last_sync_at": d.last_sync_at}
                for d in devices
            ]
        },
        db=db,
    )
    db.commit()
    message = f"Notified {len(recipients)} administrator(s) about {len(devices)} offline device(s)"
    if not sent:
        message = "Some offline notifications could not be delivered"
    return {"success": sent, "message": message, "offline_count": len(devices)}
