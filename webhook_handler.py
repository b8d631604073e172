"""Verification and processing of Milesight webhook deliveries."""
import logging
import secrets
from collections import Counter
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from device_cache import DeviceIdentityConflictError, find_cached_device, upsert_device
from models import MilesightWebhookEvent, MilesightWebhookSettings
from telemetry_ingestor import IngestMeta, ingest
from time_utils import utcnow

logger = logging.getLogger(__name__)

DEVICE_DATA_EVENT = "DEVICE_DATA"


class WebhookRejectedError(Exception):
    """Delivery refused before anything was stored."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


def get_webhook_settings(db: Session) -> Optional[MilesightWebhookSettings]:
    return db.query(MilesightWebhookSettings).order_by(MilesightWebhookSettings.id.desc()).first()


def _matches(expected: str, provided: Optional[str]) -> bool:
    return provided is not None and secrets.compare_digest(expected.encode(), provided.encode())


def verify_delivery(webhook_settings: Optional[MilesightWebhookSettings], token: Optional[str],
                    secret: Optional[str], webhook_uuid: Optional[str]) -> None:
    """Every credential configured in the settings must be presented and match."""
    if webhook_settings is None or not webhook_settings.enabled:
        raise WebhookRejectedError("Webhook is not enabled", 403)
    checks = (
        (webhook_settings.verification_token, token, "verification token"),
        (webhook_settings.webhook_secret, secret, "webhook secret"),
        (webhook_settings.webhook_uuid, webhook_uuid, "webhook UUID"),
    )
    for expected, provided, label in checks:
        if expected and not _matches(expected, provided):
            logger.warning(f"Webhook delivery rejected: invalid {label}")
            raise WebhookRejectedError(f"Invalid {label}", 401)


def _event_timestamp_ms(event: Dict[str, Any], data: Dict[str, Any]) -> Optional[int]:
    ts = data.get("ts")
    if isinstance(ts, (int, float)) and not isinstance(ts, bool):
        return int(ts)
    created = event.get("eventCreatedTime")
    if isinstance(created, (int, float)) and not isinstance(created, bool):
        return int(created * 1000)
    return None


def process_event(db: Session, event: Dict[str, Any]) -> str:
    """Store one event and, for device data, ingest its reading.

    Returns the outcome: ``invalid``, ``stored``, ``unregistered``,
    ``inserted`` or ``duplicate``.
    """
    event_type = event.get("eventType") or "unknown"
    data = event.get("data")
    if not isinstance(data, dict):
        logger.warning(f"Webhook event {event.get('eventId')} has no data, ignored")
        return "invalid"

    profile = data.get("deviceProfile") or {}
    device_id = str(profile["deviceId"]) if profile.get("deviceId") is not None else None

    record = MilesightWebhookEvent(
        event_id=event.get("eventId"),
        event_type=event_type,
        device_id=device_id,
        device_name=profile.get("name"),
        payload=event,
        processed=False,
    )
    db.add(record)
    db.commit()

    if event_type != DEVICE_DATA_EVENT or not device_id:
        return "stored"

    cached = find_cached_device(db, sn=profile.get("sn"), dev_eui=profile.get("devEUI"), device_id=device_id)
    if cached is None:
        logger.warning(
            f"Device SN:{profile.get('sn')} ID:{device_id} ({profile.get('name')}) is not registered, "
            "telemetry skipped"
        )
        return "unregistered"

    try:
        cached = upsert_device(
            db,
            {
                "deviceId": device_id,
                "sn": profile.get("sn"),
                "devEUI": profile.get("devEUI"),
                "name": profile.get("name"),
                "model": profile.get("model"),
                "connectStatus": "ONLINE",
            },
            partial=True,
        )
    except DeviceIdentityConflictError as e:
        logger.error(f"Webhook device profile not reconciled, storing under {cached.device_id}: {e}")

    result = ingest(
        db,
        cached.device_id,
        data.get("payload") or {},
        IngestMeta(
            event_type=event_type,
            source="webhook",
            event_id=event.get("eventId"),
            timestamp_ms=_event_timestamp_ms(event, data),
            data_type=data.get("type") or "PROPERTY",
            event_version=event.get("eventVersion"),
        ),
    )

    record.processed = True
    db.commit()
    return "inserted" if result.inserted else "duplicate"


def process_delivery(db: Session, body: Any, webhook_settings: MilesightWebhookSettings) -> Dict[str, Any]:
    """Process a delivery holding one event or a list of events."""
    events: List[Any] = body if isinstance(body, list) else [body]
    outcomes: Counter = Counter()
    last_error = None

    for event in events:
        if not isinstance(event, dict):
            outcomes["invalid"] += 1
            continue
        try:
            outcomes[process_event(db, event)] += 1
        except Exception as e:
            logger.error(f"Error processing webhook event {event.get('eventId')}: {e}", exc_info=True)
            db.rollback()
            outcomes["failed"] += 1
            last_error = str(e)

    processed = sum(count for outcome, count in outcomes.items() if outcome not in ("invalid", "failed"))
    if processed:
        first = next((event for event in events if isinstance(event, dict)), {})
        webhook_settings.last_event_at = utcnow()
        webhook_settings.last_event_type = first.get("eventType") or "unknown"
        webhook_settings.total_events_count = (webhook_settings.total_events_count or 0) + processed
    if last_error:
        webhook_settings.last_error = last_error
    db.commit()

    logger.info(f"Webhook delivery processed: {dict(outcomes)}")
    return {
        "success": True,
        "events_received": len(events),
        "events_processed": processed,
        "outcomes": dict(outcomes),
    }


def webhook_health(webhook_settings: Optional[MilesightWebhookSettings]) -> Dict[str, Any]:
    last_event = None
    if webhook_settings is not None and webhook_settings.last_event_at:
        last_event = {
            "at": webhook_settings.last_event_at,
            "type": webhook_settings.last_event_type,
            "total_count": webhook_settings.total_events_count,
        }
    return {
        "status": "ok",
        "enabled": bool(webhook_settings and webhook_settings.enabled),
        "last_event": last_event,
    }
