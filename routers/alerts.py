"""Temperature alert configuration endpoints."""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from activity_log import log_activity
from admin_auth import require_manager
from database import get_db
from device_cache import DeviceNotCachedError
from models import TemperatureAlertConfig, User
from notification_service import NotificationKind, notification_service
from temperature_alerts import (
    AlertConfigNotFoundError,
    AlertConfigValidationError,
    delete_alert_config,
    get_alert_config,
    list_alert_configs,
    normalize_channel,
    save_alert_config,
)

router = APIRouter(prefix="/temperature-alerts", tags=["temperature-alerts"])


# ============================================
# Pydantic Models
# ============================================

class EmailRecipient(BaseModel):
    email: EmailStr
    enabled: bool = True


class AlertConfigRequest(BaseModel):
    sensor_channel: Optional[str] = Field(None, description="CH1, CH2 or empty for a single-sensor device")
    min_temperature: float
    max_temperature: float
    email_recipients: List[EmailRecipient]
    enabled: bool = True
    alert_cooldown_seconds: Optional[int] = Field(None, ge=0)


class AlertConfigResponse(BaseModel):
    id: int
    device_id: str
    sensor_channel: Optional[str] = None
    min_temperature: float
    max_temperature: float
    email_recipients: List[EmailRecipient]
    enabled: bool
    alert_cooldown_seconds: int
    last_alert_sent_at: Optional[datetime] = None
    total_alerts_sent: int = 0
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TestEmailRequest(BaseModel):
    email: EmailStr


def _channel_or_400(channel: Optional[str]) -> Optional[str]:
    try:
        return normalize_channel(channel)
    except AlertConfigValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


# ============================================
# Endpoints
# ============================================

@router.get("/{device_id}", response_model=List[AlertConfigResponse])
def list_device_alerts(
    device_id: str,
    _: User = Depends(require_manager),
    db: Session = Depends(get_db),
):
    """All alert configurations of a device, one per channel."""
    return list_alert_configs(db, device_id)


@router.get("/{device_id}/config", response_model=Optional[AlertConfigResponse])
def get_device_alert(
    device_id: str,
    channel: Optional[str] = Query(None, description="CH1, CH2 or empty for the single sensor"),
    _: User = Depends(require_manager),
    db: Session = Depends(get_db),
):
    return get_alert_config(db, device_id, _channel_or_400(channel))


@router.put("/{device_id}", response_model=AlertConfigResponse)
def save_device_alert(
    device_id: str,
    payload: AlertConfigRequest,
    current_user: User = Depends(require_manager),
    db: Session = Depends(get_db),
):
    """Create or update the configuration of one channel."""
    try:
        config: TemperatureAlertConfig = save_alert_config(
            db,
            device_id,
            payload.sensor_channel,
            min_temperature=payload.min_temperature,
            max_temperature=payload.max_temperature,
            email_recipients=[recipient.dict() for recipient in payload.email_recipients],
            enabled=payload.enabled,
            alert_cooldown_seconds=payload.alert_cooldown_seconds,
        )
    except DeviceNotCachedError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except AlertConfigValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    log_activity(
        db, current_user, "temperature_alert_saved",
        f"Alert for {device_id}/{config.sensor_channel or 'single'}: "
        f"{config.min_temperature} to {config.max_temperature} °C",
    )
    return config


@router.delete("/{device_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_device_alert(
    device_id: str,
    channel: Optional[str] = Query(None),
    current_user: User = Depends(require_manager),
    db: Session = Depends(get_db),
):
    channel = _channel_or_400(channel)
    try:
        delete_alert_config(db, device_id, channel)
    except AlertConfigNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    log_activity(db, current_user, "temperature_alert_deleted", f"Deleted alert for {device_id}/{channel or 'single'}")


@router.post("/test-email")
def send_test_email(
    payload: TestEmailRequest,
    _: User = Depends(require_manager),
    db: Session = Depends(get_db),
):
    """Send a test message to check the SMTP configuration."""
    sent = notification_service.send(
        NotificationKind.TEST_EMAIL,
        [payload.email],
        {"message": "Email notifications are configured correctly."},
        db=db,
    )
    db.commit()
    if not sent:
        return {"success": False, "message": f"Test email to {payload.email} could not be delivered"}
    return {"success": True, "message": f"Test email sent to {payload.email}"}
