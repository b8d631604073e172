"""Bearer token lifecycle for the Milesight API.

Interactive device operations call :func:`get_valid_token`, which fails fast
on a missing or expired token. The scheduled job calls
:func:`refresh_token_if_needed`, which refreshes ahead of expiry inside a
buffer window.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from config import settings
from database import SessionLocal
from milesight_client import MilesightAPIError, MilesightClient, request_token
from models import MilesightSettings
from time_utils import as_utc, utcnow

logger = logging.getLogger(__name__)

MASKED_SECRET = "••••••••"

# Serializes refreshes within this process
_refresh_lock = threading.Lock()


class MilesightAuthError(Exception):
    """Base class for integration configuration errors."""


class NotConfiguredError(MilesightAuthError):
    def __init__(self):
        super().__init__("Milesight integration is not configured")


class IntegrationDisabledError(MilesightAuthError):
    def __init__(self):
        super().__init__("Milesight integration is disabled")


class NoTokenError(MilesightAuthError):
    def __init__(self):
        super().__init__("No Milesight access token. Save the settings or refresh the token first.")


class TokenExpiredError(MilesightAuthError):
    def __init__(self, expired_at: datetime):
        super().__init__(f"Milesight access token expired at {expired_at.isoformat()}")
        self.expired_at = expired_at


@dataclass
class TokenContext:
    base_url: str
    access_token: str

    def client(self) -> MilesightClient:
        return MilesightClient(self.base_url, self.access_token)


def get_latest_settings(db: Session) -> Optional[MilesightSettings]:
    return db.query(MilesightSettings).order_by(
        MilesightSettings.created_at.desc(), MilesightSettings.id.desc()
    ).first()


def get_valid_token(db: Session, now: Optional[datetime] = None) -> TokenContext:
    """Return the current token or raise a configuration error. Never refreshes."""
    now = now or utcnow()
    row = get_latest_settings(db)
    if row is None:
        raise NotConfiguredError()
    if not row.enabled:
        raise IntegrationDisabledError()
    if not row.access_token:
        raise NoTokenError()
    expires_at = as_utc(row.access_token_expires_at)
    if expires_at is not None and expires_at < now:
        raise TokenExpiredError(expires_at)
    return TokenContext(base_url=row.base_url, access_token=row.access_token)


def needs_refresh(expires_at: Optional[datetime], now: Optional[datetime] = None,
                  buffer_seconds: Optional[int] = None) -> bool:
    """True when the token is missing an expiry or expires within the buffer."""
    if expires_at is None:
        return True
    now = now or utcnow()
    if buffer_seconds is None:
        buffer_seconds = settings.token_refresh_buffer_seconds
    return as_utc(expires_at) - now <= timedelta(seconds=buffer_seconds)


def refresh_access_token(db: Session, row: MilesightSettings, now: Optional[datetime] = None,
                         force: bool = True) -> MilesightSettings:
    """Request a new token and persist it on ``row``.

    With ``force=False`` the row is re-read under the lock and left alone if
    another caller already refreshed it.
    """
    with _refresh_lock:
        if not force:
            db.refresh(row)
            if row.access_token and not needs_refresh(row.access_token_expires_at, now):
                logger.debug("Milesight token already refreshed by another caller")
                return row

        token = request_token(row.base_url, row.client_id, row.client_secret)
        issued_at = now or utcnow()
        row.access_token = token["access_token"]
        row.refresh_token = token["refresh_token"] or row.refresh_token
        row.access_token_expires_at = issued_at + timedelta(seconds=token["expires_in"])
        db.commit()
        db.refresh(row)

    logger.info(f"Milesight token refreshed, expires at {as_utc(row.access_token_expires_at).isoformat()}")
    return row


def ensure_fresh_token(db: Session, now: Optional[datetime] = None) -> TokenContext:
    """Token for background jobs, refreshed first when it is inside the buffer window."""
    row = get_latest_settings(db)
    if row is None:
        raise NotConfiguredError()
    if not row.enabled:
        raise IntegrationDisabledError()
    if not row.access_token or needs_refresh(row.access_token_expires_at, now):
        row = refresh_access_token(db, row, now=now, force=False)
    return TokenContext(base_url=row.base_url, access_token=row.access_token)


def refresh_token_if_needed() -> None:
    """Scheduled entry point. Errors are logged, never raised."""
    db = SessionLocal()
    try:
        row = get_latest_settings(db)
        if row is None or not row.enabled:
            logger.info("Milesight integration not configured or disabled, skipping token refresh")
            return
        if not row.access_token:
            logger.warning("No Milesight access token stored, skipping scheduled refresh")
            return
        if not needs_refresh(row.access_token_expires_at):
            logger.debug("Milesight token still valid, no refresh needed")
            return

        logger.info("Milesight token expired or expiring soon, refreshing")
        refresh_access_token(db, row, force=False)
    except Exception as e:
        logger.error(f"Scheduled Milesight token refresh failed: {e}", exc_info=True)
        db.rollback()
    finally:
        db.close()


def save_settings(db: Session, name: str, enabled: bool, base_url: str, client_id: str,
                  client_secret: str, skip_token_request: bool = False) -> MilesightSettings:
    """Create or update the integration settings, requesting a first token when enabled.

    A masked secret keeps the stored one. Token request failures propagate
    before anything is written.
    """
    base_url = base_url.rstrip("/")
    row = get_latest_settings(db)
    secret_changed = client_secret != MASKED_SECRET
    if not secret_changed:
        if row is None:
            raise NotConfiguredError()
        client_secret = row.client_secret

    token = None
    if enabled and not skip_token_request:
        token = request_token(base_url, client_id, client_secret)

    if row is None:
        row = MilesightSettings()
        db.add(row)
    row.name = name
    row.enabled = enabled
    row.base_url = base_url
    row.client_id = client_id
    row.client_secret = client_secret

    if token is not None:
        now = utcnow()
        row.access_token = token["access_token"]
        row.refresh_token = token["refresh_token"]
        row.access_token_expires_at = now + timedelta(seconds=token["expires_in"])
        row.refresh_token_expires_at = now + timedelta(days=30)
    elif secret_changed or not enabled:
        # Credentials changed without a new token, or integration switched off
        row.access_token = None
        row.refresh_token = None
        row.access_token_expires_at = None
        row.refresh_token_expires_at = None

    db.commit()
    db.refresh(row)
    return row


def disconnect(db: Session) -> None:
    """Disable the integration and forget the stored tokens."""
    row = get_latest_settings(db)
    if row is None:
        raise NotConfiguredError()
    row.enabled = False
    row.access_token = None
    row.refresh_token = None
    row.access_token_expires_at = None
    row.refresh_token_expires_at = None
    db.commit()


def check_connection(db: Session) -> dict:
    """Check the stored token against the API. Returns a success/message result."""
    try:
        token = get_valid_token(db)
    except MilesightAuthError as e:
        return {"success": False, "message": str(e)}

    client = token.client()
    if client.verify_token():
        return {"success": True, "message": "Connected to Milesight successfully"}

    # Some tenants do not expose the account endpoint; fall back to a device search
    try:
        _, total = client.search_devices(page_size=1)
    except MilesightAPIError as e:
        logger.error(f"Milesight connection test failed: {e}", exc_info=True)
        return {"success": False, "message": f"Connection test failed: {e}"}
    visible = f"{total} device(s) visible" if total is not None else "device search succeeded"
    return {"success": True, "message": f"Connected to Milesight, {visible}"}
