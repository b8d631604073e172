"""Milesight device management: platform operations mirrored into the local cache."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from activity_log import log_activity
from admin_auth import get_current_user, require_admin, require_manager
from critical_monitor import notify_offline_devices
from database import get_db
from device_cache import (
    DeviceHasDependentsError,
    DeviceIdentityConflictError,
    DeviceNotCachedError,
    count_dependents,
    delete_cached_device,
    get_and_sync_device,
    get_cached_device,
    search_and_sync,
    set_device_critical,
    sync_all_devices,
    update_display_order,
    update_sensor_display_order,
    update_sensor_names,
    upsert_device,
)
from milesight_client import MilesightAPIError, MilesightClient
from models import MilesightDeviceCache, User
from routers.milesight import api_error_to_http, get_milesight_client

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/devices", tags=["devices"])


# ============================================
# Pydantic Models
# ============================================

class DeviceSearchRequest(BaseModel):
    page_number: int = Field(1, ge=1)
    page_size: int = Field(20, ge=1, le=100)
    sn: Optional[str] = None
    dev_eui: Optional[str] = None
    imei: Optional[str] = None
    name: Optional[str] = None


class DeviceCreate(BaseModel):
    sn: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    dev_eui: Optional[str] = None
    imei: Optional[str] = None
    tag: Optional[List[str]] = None


class DeviceUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    tag: Optional[List[str]] = None


class DeviceConfigUpdate(BaseModel):
    properties: Dict[str, Any]


class FirmwareUpgradeRequest(BaseModel):
    firmware_version: str = Field(..., min_length=1)
    firmware_file_id: Optional[str] = None
    release_notes: Optional[str] = None


class CriticalToggle(BaseModel):
    is_critical: bool


class SensorNamesUpdate(BaseModel):
    sensor_name_left: Optional[str] = Field(None, max_length=100)
    sensor_name_right: Optional[str] = Field(None, max_length=100)


class SensorOrderUpdate(BaseModel):
    sensor_display_order: List[str]


class DisplayOrderUpdate(BaseModel):
    display_order: Optional[int] = None


class CachedDeviceResponse(BaseModel):
    id: int
    device_id: str
    sn: Optional[str] = None
    dev_eui: Optional[str] = None
    imei: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    tag: Optional[str] = None
    device_type: Optional[str] = None
    last_status: str
    last_sync_at: Optional[datetime] = None
    is_critical: bool = False
    critical_alert_active: bool = False
    last_critical_alert_at: Optional[datetime] = None
    last_webhook_at: Optional[datetime] = None
    last_heartbeat_at: Optional[datetime] = None
    sensor_name_left: Optional[str] = None
    sensor_name_right: Optional[str] = None
    sensor_display_order: Optional[List[str]] = None
    display_order: Optional[int] = None

    class Config:
        from_attributes = True


def _cached_or_404(db: Session, device_id: str) -> MilesightDeviceCache:
    try:
        return get_cached_device(db, device_id)
    except DeviceNotCachedError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def _sync_quietly(db: Session, device: Dict[str, Any]) -> None:
    try:
        upsert_device(db, device)
    except (DeviceIdentityConflictError, ValueError) as e:
        logger.error(f"Device returned by Milesight not cached: {e}")


# ============================================
# Cached devices
# ============================================

@router.get("/cached", response_model=List[CachedDeviceResponse])
def list_cached_devices(
    critical_only: bool = Query(False),
    _: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Devices in the local cache, in display order."""
    query = db.query(MilesightDeviceCache)
    if critical_only:
        query = query.filter(MilesightDeviceCache.is_critical == True)
    rows = query.order_by(MilesightDeviceCache.name, MilesightDeviceCache.id).all()
    # Explicit display order first, the rest by name
    return sorted(rows, key=lambda row: (row.display_order is None, row.display_order or 0))


@router.get("/cached/{device_id}", response_model=CachedDeviceResponse)
def get_cached(
    device_id: str,
    _: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return _cached_or_404(db, device_id)


# ============================================
# Platform operations
# ============================================

@router.post("/search")
def search_devices(
    payload: DeviceSearchRequest,
    _: User = Depends(require_manager),
    client: MilesightClient = Depends(get_milesight_client),
    db: Session = Depends(get_db),
):
    """Search Milesight and refresh the cache with the results."""
    try:
        items, total = search_and_sync(
            db, client,
            page_number=payload.page_number,
            page_size=payload.page_size,
            sn=payload.sn,
            dev_eui=payload.dev_eui,
            imei=payload.imei,
            name=payload.name,
        )
    except MilesightAPIError as e:
        raise api_error_to_http(e)
    return {
        "items": items,
        "total": total,
        "page_number": payload.page_number,
        "page_size": payload.page_size,
    }


@router.post("/sync-all")
def sync_all(
    current_user: User = Depends(require_admin),
    client: MilesightClient = Depends(get_milesight_client),
    db: Session = Depends(get_db),
):
    """Page through every Milesight device and reconcile the cache."""
    try:
        result = sync_all_devices(db, client)
    except MilesightAPIError as e:
        logger.error(f"Device sync failed: {e}")
        return {"success": False, "message": f"Device sync failed: {e}"}

    log_activity(db, current_user, "devices_synced", f"Synced {result['synced']} device(s) from Milesight")
    return {
        "success": result["failed"] == 0,
        "message": f"Synced {result['synced']} device(s), {result['failed']} failed",
        **result,
    }


@router.post("", status_code=status.HTTP_201_CREATED)
def add_device(
    payload: DeviceCreate,
    current_user: User = Depends(require_admin),
    client: MilesightClient = Depends(get_milesight_client),
    db: Session = Depends(get_db),
):
    """Register a device on Milesight and cache it."""
    body: Dict[str, Any] = {"sn": payload.sn, "name": payload.name}
    if payload.description:
        body["description"] = payload.description
    if payload.dev_eui:
        body["devEUI"] = payload.dev_eui
    if payload.imei:
        body["imei"] = payload.imei
    if payload.tag:
        body["tag"] = payload.tag

    try:
        created = client.add_device(body) or {}
    except MilesightAPIError as e:
        raise api_error_to_http(e)

    if isinstance(created, dict) and (created.get("deviceId") or created.get("id")):
        _sync_quietly(db, {**body, **created})

    log_activity(db, current_user, "device_added", f"Added device {payload.name} (SN {payload.sn})")
    return created


@router.get("/{device_id}")
def get_device(
    device_id: str,
    _: User = Depends(require_manager),
    client: MilesightClient = Depends(get_milesight_client),
    db: Session = Depends(get_db),
):
    """Device detail from Milesight; the cache row is refreshed on the way."""
    try:
        return get_and_sync_device(db, client, device_id)
    except MilesightAPIError as e:
        raise api_error_to_http(e)


@router.put("/{device_id}")
def update_device(
    device_id: str,
    payload: DeviceUpdate,
    current_user: User = Depends(require_admin),
    client: MilesightClient = Depends(get_milesight_client),
    db: Session = Depends(get_db),
):
    changes = payload.dict(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No changes supplied")

    try:
        client.update_device(device_id, changes)
        device = get_and_sync_device(db, client, device_id)
    except MilesightAPIError as e:
        raise api_error_to_http(e)

    log_activity(db, current_user, "device_updated", f"Updated device {device_id}: {', '.join(changes)}")
    return device


@router.delete("/{device_id}")
def delete_device(
    device_id: str,
    purge: bool = Query(False, description="Also delete stored telemetry and alert configs"),
    current_user: User = Depends(require_admin),
    client: MilesightClient = Depends(get_milesight_client),
    db: Session = Depends(get_db),
):
    """Delete on Milesight, then remove the cache row."""
    cached = db.query(MilesightDeviceCache).filter(MilesightDeviceCache.device_id == device_id).first()
    if cached is not None and not purge:
        telemetry, alerts = count_dependents(db, device_id)
        if telemetry or alerts:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=(
                    f"Device {device_id} has {telemetry} telemetry row(s) and {alerts} alert config(s). "
                    "Retry with purge=true to delete them."
                ),
            )

    try:
        client.delete_device(device_id)
    except MilesightAPIError as e:
        raise api_error_to_http(e)

    if cached is not None:
        try:
            delete_cached_device(db, device_id, purge=purge)
        except DeviceHasDependentsError as e:
            # Telemetry arrived between the check and the delete
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    log_activity(db, current_user, "device_deleted", f"Deleted device {device_id}{' (purged)' if purge else ''}")
    return {"success": True, "message": f"Device {device_id} deleted"}


@router.get("/{device_id}/config")
def get_device_config(
    device_id: str,
    _: User = Depends(require_manager),
    client: MilesightClient = Depends(get_milesight_client),
):
    try:
        return client.get_device_config(device_id) or {}
    except MilesightAPIError as e:
        raise api_error_to_http(e)


@router.put("/{device_id}/config")
def update_device_config(
    device_id: str,
    payload: DeviceConfigUpdate,
    current_user: User = Depends(require_admin),
    client: MilesightClient = Depends(get_milesight_client),
    db: Session = Depends(get_db),
):
    try:
        result = client.update_device_config(device_id, payload.properties)
    except MilesightAPIError as e:
        raise api_error_to_http(e)

    log_activity(
        db, current_user, "device_config_updated",
        f"Updated config of {device_id}: {', '.join(payload.properties)}",
    )
    return {"success": True, "result": result}


@router.post("/{device_id}/firmware")
def trigger_firmware_upgrade(
    device_id: str,
    payload: FirmwareUpgradeRequest,
    current_user: User = Depends(require_admin),
    client: MilesightClient = Depends(get_milesight_client),
    db: Session = Depends(get_db),
):
    try:
        result = client.trigger_firmware_upgrade(
            device_id,
            payload.firmware_version,
            firmware_file_id=payload.firmware_file_id,
            release_notes=payload.release_notes,
        )
    except MilesightAPIError as e:
        logger.error(f"Firmware upgrade for {device_id} failed: {e}")
        return {"success": False, "message": f"Firmware upgrade failed: {e}"}

    log_activity(
        db, current_user, "firmware_upgrade",
        f"Triggered firmware {payload.firmware_version} on {device_id}",
    )
    return {"success": True, "message": f"Firmware upgrade to {payload.firmware_version} triggered", "result": result}


# ============================================
# Local cache settings
# ============================================

@router.put("/{device_id}/critical", response_model=CachedDeviceResponse)
def toggle_critical(
    device_id: str,
    payload: CriticalToggle,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        row = set_device_critical(db, device_id, payload.is_critical)
    except DeviceNotCachedError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    log_activity(
        db, current_user, "device_critical_toggled",
        f"Device {device_id} {'marked' if payload.is_critical else 'unmarked'} as critical",
    )
    return row


@router.put("/{device_id}/sensor-names", response_model=CachedDeviceResponse)
def set_sensor_names(
    device_id: str,
    payload: SensorNamesUpdate,
    _: User = Depends(require_manager),
    db: Session = Depends(get_db),
):
    try:
        return update_sensor_names(db, device_id, payload.sensor_name_left, payload.sensor_name_right)
    except DeviceNotCachedError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.put("/{device_id}/sensor-order", response_model=CachedDeviceResponse)
def set_sensor_order(
    device_id: str,
    payload: SensorOrderUpdate,
    _: User = Depends(require_manager),
    db: Session = Depends(get_db),
):
    try:
        return update_sensor_display_order(db, device_id, payload.sensor_display_order)
    except DeviceNotCachedError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.put("/{device_id}/display-order", response_model=CachedDeviceResponse)
def set_display_order(
    device_id: str,
    payload: DisplayOrderUpdate,
    _: User = Depends(require_manager),
    db: Session = Depends(get_db),
):
    try:
        return update_display_order(db, device_id, payload.display_order)
    except DeviceNotCachedError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/notify-offline")
def notify_offline(
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Email administrators the devices currently reported offline."""
    result = notify_offline_devices(db)
    if result["offline_count"]:
        log_activity(db, current_user, "offline_devices_notified", result["message"])
    return result
