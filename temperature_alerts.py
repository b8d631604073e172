"""Temperature threshold alerts with per-channel configuration and cooldown."""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Union

from email_validator import EmailNotValidError, validate_email
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session

from config import settings
from device_cache import get_cached_device
from models import MilesightDeviceCache, SensorChannel, TemperatureAlertConfig
from notification_service import NotificationKind, notification_service
from time_utils import as_utc, utcnow

logger = logging.getLogger(__name__)

SINGLE_SENSOR_ALIASES = ("", "null", "none", "single")


class AlertConfigValidationError(ValueError):
    pass


class AlertConfigNotFoundError(LookupError):
    pass


def normalize_channel(channel: Optional[str]) -> Optional[str]:
    """Map user input to a channel key. None means the device's single sensor."""
    if channel is None or channel.strip().lower() in SINGLE_SENSOR_ALIASES:
        return None
    value = channel.strip().upper()
    if value not in {member.value for member in SensorChannel}:
        raise AlertConfigValidationError(f"Unknown sensor channel: {channel}")
    return value


def _config_query(db: Session, device_id: str, channel: Optional[str]) -> Query:
    query = db.query(TemperatureAlertConfig).filter(TemperatureAlertConfig.device_id == device_id)
    # NULL never equals NULL in SQL, so the single-sensor key needs its own predicate
    if channel is None:
        return query.filter(TemperatureAlertConfig.sensor_channel.is_(None))
    return query.filter(TemperatureAlertConfig.sensor_channel == channel)


def find_alert_config(db: Session, device_id: str, channel: Optional[str]) -> Optional[TemperatureAlertConfig]:
    return _config_query(db, device_id, channel).first()


def resolve_alert_channel(db: Session, device_id: str, channel: Optional[str]) -> Optional[str]:
    """Channel whose configuration applies to a reading.

    A probe reading falls back to the device-level configuration when its
    channel has none of its own.
    """
    if channel is not None and find_alert_config(db, device_id, channel) is None:
        return None
    return channel


def enabled_recipients(config: TemperatureAlertConfig) -> List[str]:
    return [entry["email"] for entry in (config.email_recipients or []) if entry.get("enabled", True)]


def _device_name(db: Session, device_id: str) -> str:
    device = db.query(MilesightDeviceCache).filter(MilesightDeviceCache.device_id == device_id).first()
    return (device.name if device and device.name else None) or device_id


def evaluate(db: Session, device_id: str, channel: Optional[str], temperature: float,
             now: Optional[datetime] = None) -> bool:
    """Check one reading against its configuration and email on a breach.

    Returns True when an alert was issued. The last-alert timestamp moves
    even if delivery fails, so a broken mailbox cannot cause a mail storm.
    """
    config = find_alert_config(db, device_id, channel)
    if config is None or not config.enabled:
        return False

    below = temperature < config.min_temperature
    above = temperature > config.max_temperature
    if not (below or above):
        return False

    now = now or utcnow()
    last_sent = as_utc(config.last_alert_sent_at)
    if last_sent is not None and (now - last_sent).total_seconds() < config.alert_cooldown_seconds:
        logger.info(f"Temperature alert for {device_id}/{channel or 'single'} suppressed, still in cooldown")
        return False

    config.last_alert_sent_at = now
    config.total_alerts_sent = (config.total_alerts_sent or 0) + 1

    recipients = enabled_recipients(config)
    device_name = _device_name(db, device_id)
    logger.warning(
        f"Temperature {'too low' if below else 'too high'} for {device_name}"
        f"{'/' + channel if channel else ''}: {temperature} °C"
    )
    if recipients:
        notification_service.send(
            NotificationKind.TEMPERATURE_ALERT,
            recipients,
            {
                "device_id": device_id,
                "device_name": device_name,
                "channel": channel,
                "temperature": temperature,
                "min_temperature": config.min_temperature,
                "max_temperature": config.max_temperature,
                "alert_type": "MIN" if below else "MAX",
                "timestamp": now,
                "cooldown_seconds": config.alert_cooldown_seconds,
            },
            db=db,
            device_id=device_id,
        )
    else:
        logger.warning(f"Temperature alert for {device_id} has no enabled recipients")

    db.commit()
    return True


def _normalize_recipients(recipients: Iterable[Union[str, Dict[str, Any]]]) -> List[Dict[str, Any]]:
    result: List[Dict[str, Any]] = []
    seen = set()
    for entry in recipients:
        if isinstance(entry, str):
            email, enabled = entry, True
        else:
            email, enabled = entry.get("email") or "", bool(entry.get("enabled", True))
        try:
            email = validate_email(email.strip(), check_deliverability=False).normalized
        except EmailNotValidError as e:
            raise AlertConfigValidationError(f"Invalid email address '{email}': {e}") from e
        if email.lower() in seen:
            continue
        seen.add(email.lower())
        result.append({"email": email, "enabled": enabled})
    return result


def save_alert_config(db: Session, device_id: str, channel: Optional[str], min_temperature: float,
                      max_temperature: float, email_recipients: Iterable[Union[str, Dict[str, Any]]],
                      enabled: bool = True,
                      alert_cooldown_seconds: Optional[int] = None) -> TemperatureAlertConfig:
    """Create or update the configuration for ``(device_id, channel)``.

    Recipients switched from enabled to disabled (or removed) get a one-time
    unsubscribe notice once the change is committed.
    """
    channel = normalize_channel(channel)
    recipients = _normalize_recipients(email_recipients)
    if not recipients:
        raise AlertConfigValidationError("At least one valid email address is required")
    if min_temperature >= max_temperature:
        raise AlertConfigValidationError("Minimum temperature must be less than maximum temperature")
    if alert_cooldown_seconds is None:
        alert_cooldown_seconds = settings.default_alert_cooldown_seconds
    if alert_cooldown_seconds < 0:
        raise AlertConfigValidationError("Alert cooldown cannot be negative")

    device = get_cached_device(db, device_id)

    config = find_alert_config(db, device_id, channel)
    previously_enabled = {}
    if config is None:
        config = TemperatureAlertConfig(device_id=device_id, sensor_channel=channel)
        db.add(config)
    else:
        previously_enabled = {email.lower(): email for email in enabled_recipients(config)}

    config.min_temperature = min_temperature
    config.max_temperature = max_temperature
    config.email_recipients = recipients
    config.enabled = enabled
    config.alert_cooldown_seconds = alert_cooldown_seconds

    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise AlertConfigValidationError(
            f"An alert configuration for {device_id}/{channel or 'single'} was created concurrently"
        ) from e
    db.refresh(config)

    now_enabled = {email.lower() for email in enabled_recipients(config)}
    unsubscribed = [email for key, email in previously_enabled.items() if key not in now_enabled]
    for email in unsubscribed:
        notification_service.send(
            NotificationKind.ALERT_UNSUBSCRIBED,
            [email],
            {"device_id": device_id, "device_name": device.name or device_id, "channel": channel},
            db=db,
            device_id=device_id,
        )
    if unsubscribed:
        logger.info(f"Sent unsubscribe notice to {len(unsubscribed)} recipient(s) of {device_id}/{channel or 'single'}")
        db.commit()
    return config


def get_alert_config(db: Session, device_id: str, channel: Optional[str]) -> Optional[TemperatureAlertConfig]:
    return find_alert_config(db, device_id, normalize_channel(channel))


def list_alert_configs(db: Session, device_id: str) -> List[TemperatureAlertConfig]:
    return db.query(TemperatureAlertConfig).filter(
        TemperatureAlertConfig.device_id == device_id
    ).order_by(TemperatureAlertConfig.id).all()


def delete_alert_config(db: Session, device_id: str, channel: Optional[str]) -> None:
    channel = normalize_channel(channel)
    config = find_alert_config(db, device_id, channel)
    if config is None:
        raise AlertConfigNotFoundError(f"No alert configuration for {device_id}/{channel or 'single'}")
    db.delete(config)
    db.commit()
