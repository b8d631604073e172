"""Local cache of Milesight devices and identity reconciliation.

The platform assigns ``deviceId`` and may re-issue it when a device is
re-registered, while the serial number and DevEUI stay with the hardware.
:func:`upsert_device` keeps exactly one cache row per physical device and
moves telemetry and alert configurations along with it.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from milesight_client import MilesightClient
from models import (
    DeviceStatus, MilesightDeviceCache, MilesightDeviceTelemetry, TemperatureAlertConfig,
)
from time_utils import utcnow

logger = logging.getLogger(__name__)

SYNC_PAGE_SIZE = 100


class DeviceIdentityConflictError(Exception):
    """Hardware identifiers of one external record are claimed by different cache rows."""


class DeviceNotCachedError(LookupError):
    def __init__(self, device_id: str):
        super().__init__(f"Device {device_id} is not in the local cache")
        self.device_id = device_id


class DeviceHasDependentsError(Exception):
    """Raised when deleting a cache row that telemetry or alert configs still reference."""


def _normalize_status(raw: Any) -> str:
    if isinstance(raw, str):
        value = raw.strip().upper()
        if value in ("ONLINE", "CONNECTED"):
            return DeviceStatus.ONLINE.value
        if value in ("OFFLINE", "DISCONNECTED"):
            return DeviceStatus.OFFLINE.value
    return DeviceStatus.UNKNOWN.value


def _normalize_tag(raw: Any) -> Optional[str]:
    if isinstance(raw, list):
        return ", ".join(str(item) for item in raw) or None
    if isinstance(raw, str):
        return raw
    return None


def map_device_to_cache(device: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Map an external device record to cache column values."""
    device_id = device.get("deviceId") or device.get("id")
    return {
        "device_id": str(device_id) if device_id is not None else None,
        "sn": device.get("sn"),
        "dev_eui": device.get("devEUI") or device.get("devEui"),
        "imei": device.get("imei"),
        "name": device.get("name"),
        "description": device.get("description"),
        "tag": _normalize_tag(device.get("tag")),
        "device_type": device.get("model") or device.get("deviceType") or device.get("type"),
        "last_status": _normalize_status(
            device.get("connectStatus") or device.get("status") or device.get("onlineStatus")
        ),
        "last_sync_at": now or utcnow(),
    }


def _find_by_hardware_identity(db: Session, sn: Optional[str], dev_eui: Optional[str]) -> List[MilesightDeviceCache]:
    conditions = []
    if sn:
        conditions.append(MilesightDeviceCache.sn == sn)
    if dev_eui:
        conditions.append(MilesightDeviceCache.dev_eui == dev_eui)
    if not conditions:
        return []
    return db.query(MilesightDeviceCache).filter(or_(*conditions)).all()


def _apply(row: MilesightDeviceCache, data: Dict[str, Any], partial: bool) -> None:
    for key, value in data.items():
        if partial and value is None:
            continue
        setattr(row, key, value)


def _repoint_dependents(db: Session, old_device_id: str, new_device_id: str) -> Tuple[int, int]:
    telemetry = db.query(MilesightDeviceTelemetry).filter(
        MilesightDeviceTelemetry.device_id == old_device_id
    ).update({MilesightDeviceTelemetry.device_id: new_device_id}, synchronize_session=False)
    alerts = db.query(TemperatureAlertConfig).filter(
        TemperatureAlertConfig.device_id == old_device_id
    ).update({TemperatureAlertConfig.device_id: new_device_id}, synchronize_session=False)
    return telemetry, alerts


def _reconcile(db: Session, data: Dict[str, Any], partial: bool) -> MilesightDeviceCache:
    device_id = data["device_id"]
    existing = db.query(MilesightDeviceCache).filter(
        MilesightDeviceCache.device_id == device_id
    ).first()
    claimants = _find_by_hardware_identity(db, data["sn"], data["dev_eui"])

    if existing is not None:
        others = [row for row in claimants if row.id != existing.id]
        if others:
            raise DeviceIdentityConflictError(
                f"Device {device_id}: hardware identity (sn={data['sn']}, devEUI={data['dev_eui']}) "
                f"is already claimed by {', '.join(row.device_id for row in others)}"
            )
        _apply(existing, data, partial)
        return existing

    if len(claimants) > 1:
        raise DeviceIdentityConflictError(
            f"Device {device_id}: sn={data['sn']} and devEUI={data['dev_eui']} match different cached devices "
            f"({', '.join(row.device_id for row in claimants)}), manual review required"
        )

    if claimants:
        row = claimants[0]
        old_device_id = row.device_id
        telemetry, alerts = _repoint_dependents(db, old_device_id, device_id)
        _apply(row, data, partial)
        logger.info(
            f"Device identity migrated {old_device_id} -> {device_id} "
            f"({telemetry} telemetry row(s), {alerts} alert config(s) re-pointed)"
        )
        return row

    row = MilesightDeviceCache()
    _apply(row, data, partial=True)
    db.add(row)
    logger.info(f"Device {device_id} added to cache")
    return row


def upsert_device(db: Session, device: Dict[str, Any], partial: bool = False,
                  now: Optional[datetime] = None) -> MilesightDeviceCache:
    """Merge one external device record into the cache in a single transaction.

    ``partial`` leaves columns alone when the record has no value for them,
    which is what webhook device profiles need.
    """
    data = map_device_to_cache(device, now)
    if not data["device_id"]:
        raise ValueError("External device record has no deviceId")
    if partial and not any(device.get(key) for key in ("connectStatus", "status", "onlineStatus")):
        data["last_status"] = None

    try:
        row = _reconcile(db, data, partial)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(row)
    return row


def sync_devices(db: Session, devices: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Upsert each record independently; one bad record does not stop the rest."""
    synced = 0
    errors: List[str] = []
    for device in devices:
        try:
            upsert_device(db, device)
            synced += 1
        except Exception as e:
            device_id = device.get("deviceId") or device.get("id")
            logger.error(f"Failed to sync device {device_id}: {e}", exc_info=True)
            errors.append(f"{device_id}: {e}")
    return {"synced": synced, "failed": len(errors), "errors": errors}


def search_and_sync(db: Session, client: MilesightClient, page_number: int = 1, page_size: int = 20,
                    **filters) -> Tuple[List[Dict[str, Any]], Optional[int]]:
    """Search the platform and refresh the cache with every device returned."""
    items, total = client.search_devices(page_number=page_number, page_size=page_size, **filters)
    sync_devices(db, items)
    return items, total


def sync_all_devices(db: Session, client: MilesightClient, page_size: int = SYNC_PAGE_SIZE) -> Dict[str, Any]:
    """Page through every platform device and reconcile it into the cache."""
    page = 1
    fetched = 0
    synced = 0
    errors: List[str] = []
    while True:
        items, total = client.search_devices(page_number=page, page_size=page_size)
        fetched += len(items)
        result = sync_devices(db, items)
        synced += result["synced"]
        errors.extend(result["errors"])
        if len(items) < page_size or (total is not None and fetched >= total):
            break
        page += 1

    logger.info(f"Device sync finished: {synced} synced, {len(errors)} failed, {fetched} fetched")
    return {"synced": synced, "failed": len(errors), "fetched": fetched, "errors": errors}


def get_and_sync_device(db: Session, client: MilesightClient, device_id: str) -> Dict[str, Any]:
    device = client.get_device(device_id) or {}
    if device:
        try:
            upsert_device(db, device)
        except Exception as e:
            logger.error(f"Failed to sync device detail {device_id}: {e}", exc_info=True)
    return device


def find_cached_device(db: Session, sn: Optional[str] = None, dev_eui: Optional[str] = None,
                       device_id: Optional[str] = None) -> Optional[MilesightDeviceCache]:
    """Look a device up by serial number, then DevEUI, then platform id."""
    if sn:
        row = db.query(MilesightDeviceCache).filter(MilesightDeviceCache.sn == sn).first()
        if row:
            return row
    if dev_eui:
        row = db.query(MilesightDeviceCache).filter(MilesightDeviceCache.dev_eui == dev_eui).first()
        if row:
            return row
    if device_id:
        return db.query(MilesightDeviceCache).filter(MilesightDeviceCache.device_id == device_id).first()
    return None


def get_cached_device(db: Session, device_id: str) -> MilesightDeviceCache:
    row = db.query(MilesightDeviceCache).filter(MilesightDeviceCache.device_id == device_id).first()
    if row is None:
        raise DeviceNotCachedError(device_id)
    return row


def set_device_critical(db: Session, device_id: str, is_critical: bool) -> MilesightDeviceCache:
    row = get_cached_device(db, device_id)
    row.is_critical = is_critical
    if not is_critical:
        row.critical_alert_active = False
    db.commit()
    db.refresh(row)
    return row


def update_sensor_names(db: Session, device_id: str, left: Optional[str],
                        right: Optional[str]) -> MilesightDeviceCache:
    row = get_cached_device(db, device_id)
    row.sensor_name_left = (left or "").strip() or None
    row.sensor_name_right = (right or "").strip() or None
    db.commit()
    db.refresh(row)
    return row


def update_sensor_display_order(db: Session, device_id: str, order: List[str]) -> MilesightDeviceCache:
    row = get_cached_device(db, device_id)
    seen = set()
    row.sensor_display_order = [key for key in order if not (key in seen or seen.add(key))]
    db.commit()
    db.refresh(row)
    return row


def update_display_order(db: Session, device_id: str, display_order: Optional[int]) -> MilesightDeviceCache:
    row = get_cached_device(db, device_id)
    row.display_order = display_order
    db.commit()
    db.refresh(row)
    return row


def count_dependents(db: Session, device_id: str) -> Tuple[int, int]:
    """Telemetry rows and alert configs that reference ``device_id``."""
    telemetry = db.query(MilesightDeviceTelemetry).filter(MilesightDeviceTelemetry.device_id == device_id).count()
    alerts = db.query(TemperatureAlertConfig).filter(TemperatureAlertConfig.device_id == device_id).count()
    return telemetry, alerts


def delete_cached_device(db: Session, device_id: str, purge: bool = False) -> None:
    """Remove a cache row.

    Telemetry and alert configs are never orphaned: without ``purge`` the
    delete is refused while they exist, with ``purge`` they are deleted in the
    same transaction.
    """
    row = get_cached_device(db, device_id)
    telemetry_count, alert_count = count_dependents(db, device_id)

    if (telemetry_count or alert_count) and not purge:
        raise DeviceHasDependentsError(
            f"Device {device_id} still has {telemetry_count} telemetry row(s) and "
            f"{alert_count} alert config(s)"
        )

    try:
        db.query(MilesightDeviceTelemetry).filter(
            MilesightDeviceTelemetry.device_id == device_id
        ).delete(synchronize_session=False)
        db.query(TemperatureAlertConfig).filter(
            TemperatureAlertConfig.device_id == device_id
        ).delete(synchronize_session=False)
        db.delete(row)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info(f"Device {device_id} removed from cache ({telemetry_count} telemetry, {alert_count} alerts purged)")
