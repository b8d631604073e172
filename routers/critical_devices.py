"""Critical device watch list and on-demand monitor runs."""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from activity_log import log_activity
from admin_auth import require_admin
from config import settings
from critical_monitor import (
    add_watch_entry,
    deactivate_watch_entry,
    last_telemetry_ms,
    list_watch_entries,
    resolve_watch_targets,
)
from database import get_db
from models import User
from scheduler import job_scheduler
from time_utils import from_epoch_ms, to_epoch_ms, utcnow

router = APIRouter(prefix="/critical-devices", tags=["critical-devices"])


class WatchEntryCreate(BaseModel):
    label: str = Field(..., min_length=1, max_length=200)
    serial_number: Optional[str] = Field(None, max_length=100)
    dev_eui: Optional[str] = Field(None, max_length=100)


class WatchEntryResponse(BaseModel):
    id: int
    label: str
    serial_number: Optional[str] = None
    dev_eui: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WatchStatus(BaseModel):
    label: str
    device_id: Optional[str] = None
    found: bool
    last_telemetry_at: Optional[datetime] = None
    minutes_since: Optional[int] = None
    critical_alert_active: bool = False


@router.get("/watch-list", response_model=List[WatchEntryResponse])
def get_watch_list(
    include_inactive: bool = Query(False),
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return list_watch_entries(db, include_inactive=include_inactive)


@router.post("/watch-list", response_model=WatchEntryResponse, status_code=status.HTTP_201_CREATED)
def create_watch_entry(
    payload: WatchEntryCreate,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        entry = add_watch_entry(db, payload.label, payload.serial_number, payload.dev_eui)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    log_activity(
        db, current_user, "critical_watch_added",
        f"Watching {entry.label} (SN {entry.serial_number or '-'}, DevEUI {entry.dev_eui or '-'})",
    )
    return entry


@router.delete("/watch-list/{entry_id}", response_model=WatchEntryResponse)
def remove_watch_entry(
    entry_id: int,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Stop watching a device. Entries are deactivated, not deleted."""
    try:
        entry = deactivate_watch_entry(db, entry_id)
    except LookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    log_activity(db, current_user, "critical_watch_removed", f"Stopped watching {entry.label}")
    return entry


@router.get("/status", response_model=List[WatchStatus])
def watch_status(
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Telemetry age of every watched device, without sending anything."""
    now_ms = to_epoch_ms(utcnow())
    result = []
    for label, device in resolve_watch_targets(db):
        if device is None:
            result.append(WatchStatus(label=label, found=False))
            continue
        last_ms = last_telemetry_ms(db, device.device_id)
        result.append(WatchStatus(
            label=label,
            device_id=device.device_id,
            found=True,
            last_telemetry_at=from_epoch_ms(last_ms) if last_ms is not None else None,
            minutes_since=(now_ms - last_ms) // 60000 if last_ms is not None else None,
            critical_alert_active=bool(device.critical_alert_active),
        ))
    return result


@router.post("/run")
def run_monitor_now(
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Run the monitor cycle now, unless the scheduled run is already in progress."""
    ran = job_scheduler.run_job("critical_device_monitor")
    if not ran:
        return {"success": False, "message": "A monitor run is already in progress"}

    log_activity(db, current_user, "critical_monitor_run", "Ran critical device monitor on demand")
    return {
        "success": True,
        "message": "Critical device check completed",
        "threshold_minutes": settings.device_offline_threshold_minutes,
    }
