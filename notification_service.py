"""Email notifications for temperature alerts, offline devices and alert subscriptions."""
import enum
import logging
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from models import Notification, User, UserRole
from config import settings

logger = logging.getLogger(__name__)


class NotificationKind(str, enum.Enum):
    TEMPERATURE_ALERT = "temperature_alert"
    DEVICE_OFFLINE = "device_offline"
    ALERT_UNSUBSCRIBED = "alert_unsubscribed"
    OFFLINE_DEVICES_SUMMARY = "offline_devices_summary"
    TEST_EMAIL = "test_email"


def _format_time(value: Any) -> str:
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    return str(value) if value else "never"


def _channel_label(data: Dict[str, Any]) -> str:
    channel = data.get("channel")
    return f" ({channel})" if channel else ""


def _render_temperature_alert(data: Dict[str, Any]) -> Tuple[str, str]:
    direction = "below the minimum" if data["alert_type"] == "MIN" else "above the maximum"
    subject = f"Temperature Alert: {data['device_name']}{_channel_label(data)}"
    body = (
        f"The temperature reported by {data['device_name']}{_channel_label(data)} is {direction} threshold.\n\n"
        f"Current temperature: {data['temperature']:.1f} °C\n"
        f"Allowed range: {data['min_temperature']:.1f} °C to {data['max_temperature']:.1f} °C\n"
        f"Device ID: {data['device_id']}\n"
        f"Time: {_format_time(data.get('timestamp'))}\n\n"
        f"Further alerts for this sensor are suppressed for {data['cooldown_seconds']} seconds."
    )
    return subject, body


def _render_device_offline(data: Dict[str, Any]) -> Tuple[str, str]:
    minutes = data.get("minutes_since")
    silence = f"{minutes} minute(s)" if minutes is not None else "longer than the monitoring window"
    subject = f"No Telemetry from {data['device_name']}"
    body = (
        f"No telemetry has been received from {data['device_name']} for {silence}.\n\n"
        f"Serial number: {data.get('sn') or '-'}\n"
        f"DevEUI: {data.get('dev_eui') or '-'}\n"
        f"Last reading: {_format_time(data.get('last_seen'))}\n"
        f"Offline threshold: {data['threshold_minutes']} minute(s)\n\n"
        "A backfill from the Milesight console has been requested."
    )
    return subject, body


def _render_alert_unsubscribed(data: Dict[str, Any]) -> Tuple[str, str]:
    subject = f"Unsubscribed from temperature alerts: {data['device_name']}{_channel_label(data)}"
    body = (
        f"You will no longer receive temperature alerts for {data['device_name']}{_channel_label(data)}.\n\n"
        "Contact an administrator if this was not expected."
    )
    return subject, body


def _render_offline_devices_summary(data: Dict[str, Any]) -> Tuple[str, str]:
    devices = data["devices"]
    subject = f"{len(devices)} Device(s) Offline - {settings.app_name}"
    lines = [
        f"- {device['name'] or device['device_id']} (SN: {device.get('sn') or '-'}, "
        f"last sync: {_format_time(device.get('last_sync_at'))})"
        for device in devices
    ]
    body = "The following devices are reported offline by Milesight:\n\n" + "\n".join(lines)
    return subject, body


def _render_test_email(data: Dict[str, Any]) -> Tuple[str, str]:
    return (
        f"{settings.app_name} test email",
        data.get("message") or "Email delivery is configured correctly.",
    )


TEMPLATES: Dict[NotificationKind, Callable[[Dict[str, Any]], Tuple[str, str]]] = {
    NotificationKind.TEMPERATURE_ALERT: _render_temperature_alert,
    NotificationKind.DEVICE_OFFLINE: _render_device_offline,
    NotificationKind.ALERT_UNSUBSCRIBED: _render_alert_unsubscribed,
    NotificationKind.OFFLINE_DEVICES_SUMMARY: _render_offline_devices_summary,
    NotificationKind.TEST_EMAIL: _render_test_email,
}


def _unique(recipients: Iterable[str]) -> List[str]:
    seen = set()
    result = []
    for email in recipients:
        key = email.strip().lower()
        if key and key not in seen:
            seen.add(key)
            result.append(email.strip())
    return result


class NotificationService:
    """Sends templated emails over SMTP and records each attempt."""

    def __init__(self):
        """Initialize notification service."""
        self.smtp_host = settings.smtp_host or None
        self.smtp_port = settings.smtp_port or 587
        self.smtp_user = settings.smtp_user or None
        self.smtp_password = settings.smtp_password or None
        self.smtp_from = settings.smtp_from

    def send(self, kind: NotificationKind, recipients: Iterable[str], template_data: Dict[str, Any],
             db: Optional[Session] = None, device_id: Optional[str] = None) -> bool:
        """Render ``kind`` and email it to every recipient.

        Never raises on delivery problems. When ``db`` is given, one
        Notification row per recipient is added to it; the caller commits.
        Returns True only if every recipient was reached.
        """
        addresses = _unique(recipients)
        if not addresses:
            logger.warning(f"No recipients for {kind.value} notification, nothing sent")
            return False

        subject, body = TEMPLATES[kind](template_data)
        delivered = True
        for address in addresses:
            notification = Notification(
                kind=kind.value,
                channel="email",
                device_id=device_id,
                recipient=address,
                subject=subject,
                body=body,
                status="pending",
            )
            if not self.send_email(notification):
                delivered = False
            if db is not None:
                db.add(notification)
        return delivered

    def send_email(self, notification: Notification) -> bool:
        """Send email notification."""
        if not self.smtp_host:
            logger.warning("SMTP not configured, skipping email notification")
            notification.status = "failed"
            notification.error_message = "SMTP not configured"
            return False

        try:
            msg = MIMEMultipart()
            msg['From'] = self.smtp_from
            msg['To'] = notification.recipient
            msg['Subject'] = notification.subject or "Sensor Notification"
            msg.attach(MIMEText(notification.body or "", 'plain', 'utf-8'))

            self._deliver(msg)

            notification.status = "sent"
            notification.sent_at = datetime.now(timezone.utc)
            logger.info(f"Email '{notification.subject}' sent to {notification.recipient}")
            return True
        except Exception as e:
            logger.error(f"Failed to send email to {notification.recipient}: {e}", exc_info=True)
            notification.status = "failed"
            notification.error_message = str(e)
            return False

    def _deliver(self, msg: MIMEMultipart) -> None:
        with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
            if self.smtp_user and self.smtp_password:
                server.starttls()
                server.login(self.smtp_user, self.smtp_password)
            server.send_message(msg)


def admin_recipient_emails(db: Session) -> List[str]:
    """Emails of every active administrator."""
    rows = db.query(User.email).filter(User.role == UserRole.ADMIN, User.is_active == True).all()
    return [email for (email,) in rows]


# Global notification service instance
notification_service = NotificationService()
