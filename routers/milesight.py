"""Milesight integration settings: OAuth credentials, token and webhook verification."""
import logging
import secrets
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from activity_log import log_activity
from admin_auth import require_admin
from database import get_db
from milesight_client import MilesightAPIError, MilesightClient
from models import MilesightSettings, MilesightWebhookSettings, User
from token_manager import (
    MASKED_SECRET,
    MilesightAuthError,
    NotConfiguredError,
    check_connection,
    disconnect,
    get_latest_settings,
    get_valid_token,
    refresh_access_token,
    save_settings,
)
from webhook_handler import get_webhook_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/milesight", tags=["milesight"])


def auth_error_to_http(exc: MilesightAuthError) -> HTTPException:
    code = status.HTTP_400_BAD_REQUEST if isinstance(exc, NotConfiguredError) else status.HTTP_409_CONFLICT
    return HTTPException(status_code=code, detail=str(exc))


def api_error_to_http(exc: MilesightAPIError) -> HTTPException:
    detail = f"{exc}: {exc.body}" if exc.body else str(exc)
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)


def get_milesight_client(db: Session = Depends(get_db)) -> MilesightClient:
    """FastAPI dependency: API client with the current token. Never refreshes."""
    try:
        return get_valid_token(db).client()
    except MilesightAuthError as e:
        raise auth_error_to_http(e)


# ============================================
# Pydantic Models
# ============================================

class MilesightSettingsRequest(BaseModel):
    name: str = Field("Milesight", min_length=1, max_length=200)
    enabled: bool = True
    base_url: str = Field(..., min_length=1)
    client_id: str = Field(..., min_length=1)
    client_secret: str = Field(..., min_length=1)
    skip_token_request: bool = False


class MilesightSettingsResponse(BaseModel):
    id: int
    name: str
    enabled: bool
    base_url: str
    client_id: str
    client_secret: str
    has_access_token: bool
    access_token_expires_at: Optional[datetime] = None
    refresh_token_expires_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class WebhookSettingsRequest(BaseModel):
    enabled: bool = False
    webhook_uuid: Optional[str] = None
    webhook_secret: Optional[str] = None
    verification_token: Optional[str] = None
    generate_verification_token: bool = False


class WebhookSettingsResponse(BaseModel):
    id: int
    enabled: bool
    webhook_uuid: Optional[str] = None
    webhook_secret: Optional[str] = None
    verification_token: Optional[str] = None
    last_event_at: Optional[datetime] = None
    last_event_type: Optional[str] = None
    total_events_count: int = 0
    last_error: Optional[str] = None


def _settings_response(row: MilesightSettings) -> MilesightSettingsResponse:
    return MilesightSettingsResponse(
        id=row.id,
        name=row.name,
        enabled=bool(row.enabled),
        base_url=row.base_url,
        client_id=row.client_id,
        client_secret=MASKED_SECRET,
        has_access_token=bool(row.access_token),
        access_token_expires_at=row.access_token_expires_at,
        refresh_token_expires_at=row.refresh_token_expires_at,
        updated_at=row.updated_at,
    )


def _webhook_response(row: MilesightWebhookSettings) -> WebhookSettingsResponse:
    return WebhookSettingsResponse(
        id=row.id,
        enabled=bool(row.enabled),
        webhook_uuid=row.webhook_uuid,
        webhook_secret=MASKED_SECRET if row.webhook_secret else None,
        verification_token=row.verification_token,
        last_event_at=row.last_event_at,
        last_event_type=row.last_event_type,
        total_events_count=row.total_events_count or 0,
        last_error=row.last_error,
    )


# ============================================
# OAuth settings
# ============================================

@router.get("/settings", response_model=Optional[MilesightSettingsResponse])
def get_settings(
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Current integration settings with the client secret masked."""
    row = get_latest_settings(db)
    return _settings_response(row) if row else None


@router.put("/settings", response_model=MilesightSettingsResponse)
def update_settings(
    payload: MilesightSettingsRequest,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Save credentials and, when enabled, request the first access token."""
    try:
        row = save_settings(
            db,
            name=payload.name,
            enabled=payload.enabled,
            base_url=payload.base_url,
            client_id=payload.client_id,
            client_secret=payload.client_secret,
            skip_token_request=payload.skip_token_request,
        )
    except MilesightAuthError as e:
        raise auth_error_to_http(e)
    except MilesightAPIError as e:
        raise api_error_to_http(e)

    log_activity(db, current_user, "milesight_settings_saved", f"Saved Milesight settings for {row.base_url}")
    return _settings_response(row)


@router.post("/settings/refresh-token", response_model=MilesightSettingsResponse)
def refresh_token_now(
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Request a new access token right away."""
    row = get_latest_settings(db)
    if row is None:
        raise auth_error_to_http(NotConfiguredError())
    try:
        row = refresh_access_token(db, row)
    except MilesightAPIError as e:
        db.rollback()
        raise api_error_to_http(e)

    log_activity(db, current_user, "milesight_token_refreshed", "Refreshed Milesight access token")
    return _settings_response(row)


@router.post("/settings/test")
def test_settings(
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Check the stored token against the Milesight API."""
    return check_connection(db)


@router.post("/settings/disconnect")
def disconnect_integration(
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Disable the integration and drop the stored tokens."""
    try:
        disconnect(db)
    except MilesightAuthError as e:
        raise auth_error_to_http(e)

    log_activity(db, current_user, "milesight_disconnected", "Disconnected Milesight integration")
    return {"success": True, "message": "Milesight integration disconnected"}


# ============================================
# Webhook settings
# ============================================

@router.get("/webhook-settings", response_model=Optional[WebhookSettingsResponse])
def get_webhook_config(
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    row = get_webhook_settings(db)
    return _webhook_response(row) if row else None


@router.put("/webhook-settings", response_model=WebhookSettingsResponse)
def update_webhook_config(
    payload: WebhookSettingsRequest,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Save webhook verification material. A masked secret keeps the stored one."""
    row = get_webhook_settings(db)
    if row is None:
        row = MilesightWebhookSettings(total_events_count=0)
        db.add(row)

    row.enabled = payload.enabled
    row.webhook_uuid = payload.webhook_uuid or None
    if payload.webhook_secret != MASKED_SECRET:
        row.webhook_secret = payload.webhook_secret or None
    if payload.generate_verification_token:
        row.verification_token = secrets.token_urlsafe(32)
    else:
        row.verification_token = payload.verification_token or None

    db.commit()
    db.refresh(row)

    log_activity(
        db, current_user, "milesight_webhook_saved",
        f"Webhook {'enabled' if row.enabled else 'disabled'}",
    )
    return _webhook_response(row)
