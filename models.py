"""Database models for users, the Milesight integration and sensor telemetry."""
from sqlalchemy import (
    Column, String, Integer, BigInteger, Boolean, DateTime, Text, ForeignKey, JSON, Float, Enum,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base
import enum


class UserRole(str, enum.Enum):
    """User roles in the system."""
    ADMIN = "admin"  # Full access, integration settings and user management
    MANAGER = "manager"  # Device views and temperature alert management
    EMPLOYEE = "employee"  # Read-only dashboards


class User(Base):
    """User model for authentication and authorization."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    hashed_password = Column(String(255), nullable=False)
    full_name = Column(String(200), nullable=True)
    role = Column(Enum(UserRole), nullable=False, default=UserRole.EMPLOYEE)
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    last_login_at = Column(DateTime(timezone=True), nullable=True)

    activity_logs = relationship("ActivityLog", back_populates="user", cascade="all, delete-orphan")


class ActivityLog(Base):
    """Audit trail of administrative actions."""
    __tablename__ = "activity_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    action = Column(String(100), nullable=False, index=True)
    description = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="activity_logs")


class MilesightSettings(Base):
    """OAuth2 client credentials and the current bearer token for the Milesight API."""
    __tablename__ = "milesight_settings"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False, default="Milesight")
    enabled = Column(Boolean, default=True)
    base_url = Column(String(500), nullable=False)
    client_id = Column(String(255), nullable=False)
    client_secret = Column(String(500), nullable=False)

    # Written only by token_manager
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    access_token_expires_at = Column(DateTime(timezone=True), nullable=True)
    refresh_token_expires_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class MilesightWebhookSettings(Base):
    """Verification material and delivery statistics for the Milesight webhook."""
    __tablename__ = "milesight_webhook_settings"

    id = Column(Integer, primary_key=True, index=True)
    enabled = Column(Boolean, default=False)
    webhook_uuid = Column(String(255), nullable=True)
    webhook_secret = Column(String(500), nullable=True)
    verification_token = Column(String(500), nullable=True)

    last_event_at = Column(DateTime(timezone=True), nullable=True)
    last_event_type = Column(String(100), nullable=True)
    total_events_count = Column(Integer, default=0)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class MilesightWebhookEvent(Base):
    """Raw log of every webhook delivery, kept for debugging."""
    __tablename__ = "milesight_webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), nullable=True, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    device_id = Column(String(100), nullable=True, index=True)
    device_name = Column(String(255), nullable=True)
    payload = Column(JSON, nullable=False)
    processed = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)


class DeviceStatus(str, enum.Enum):
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"
    UNKNOWN = "UNKNOWN"


class MilesightDeviceCache(Base):
    """Local mirror of one device registered on the Milesight platform.

    ``device_id`` is the platform identity and can be re-issued; ``sn`` and
    ``dev_eui`` identify the hardware and survive re-registration.
    """
    __tablename__ = "milesight_device_cache"

    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(String(100), unique=True, nullable=False, index=True)
    sn = Column(String(100), nullable=True, index=True)
    dev_eui = Column(String(100), nullable=True, index=True)
    imei = Column(String(100), nullable=True)
    name = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    tag = Column(String(500), nullable=True)
    device_type = Column(String(100), nullable=True)
    last_status = Column(String(20), nullable=False, default=DeviceStatus.UNKNOWN.value)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)

    # Critical device monitoring
    is_critical = Column(Boolean, default=False, index=True)
    critical_alert_active = Column(Boolean, default=False)
    last_critical_alert_at = Column(DateTime(timezone=True), nullable=True)
    last_webhook_at = Column(DateTime(timezone=True), nullable=True)
    last_heartbeat_at = Column(DateTime(timezone=True), nullable=True)
    last_console_sync_at = Column(DateTime(timezone=True), nullable=True)

    # Display customization
    sensor_name_left = Column(String(100), nullable=True)
    sensor_name_right = Column(String(100), nullable=True)
    sensor_display_order = Column(JSON, nullable=True)  # e.g. ["temperature_left", "humidity", "battery"]
    display_order = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class MilesightDeviceTelemetry(Base):
    """One ingested reading. Rows are written once and never updated."""
    __tablename__ = "milesight_device_telemetry"
    __table_args__ = (
        UniqueConstraint("device_id", "event_id", name="uq_telemetry_device_event"),
    )

    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(String(100), nullable=False, index=True)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(100), nullable=False)
    event_version = Column(String(20), nullable=True)
    data_type = Column(String(50), nullable=False, default="PROPERTY")
    data_timestamp = Column(BigInteger, nullable=False, index=True)  # epoch ms, device clock
    source = Column(String(20), nullable=False, default="webhook")  # webhook, console, config
    payload = Column(JSON, nullable=False)

    temperature = Column(Float, nullable=True)
    humidity = Column(Float, nullable=True)
    battery = Column(Integer, nullable=True)

    # Device metadata at ingestion time
    device_sn = Column(String(100), nullable=True)
    device_name = Column(String(255), nullable=True)
    device_model = Column(String(100), nullable=True)
    device_dev_eui = Column(String(100), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())


class SensorChannel(str, enum.Enum):
    """Probe channels of multi-probe thermometers such as the TS302."""
    CH1 = "CH1"  # temperature_left
    CH2 = "CH2"  # temperature_right


class TemperatureAlertConfig(Base):
    """Threshold alert for one device, optionally scoped to one sensor channel.

    ``sensor_channel`` NULL addresses the device's single sensor. The unique
    constraint does not cover NULL on most backends, so temperature_alerts
    checks for an existing row before inserting.
    """
    __tablename__ = "temperature_alert_configs"
    __table_args__ = (
        UniqueConstraint("device_id", "sensor_channel", name="uq_alert_device_channel"),
    )

    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(String(100), nullable=False, index=True)
    sensor_channel = Column(String(20), nullable=True)
    min_temperature = Column(Float, nullable=False)
    max_temperature = Column(Float, nullable=False)
    email_recipients = Column(JSON, nullable=False, default=list)  # [{"email": str, "enabled": bool}]
    enabled = Column(Boolean, default=True)
    alert_cooldown_seconds = Column(Integer, nullable=False, default=300)

    last_alert_sent_at = Column(DateTime(timezone=True), nullable=True)
    total_alerts_sent = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class CriticalDeviceWatch(Base):
    """Hardware the critical device monitor must track."""
    __tablename__ = "critical_device_watch"

    id = Column(Integer, primary_key=True, index=True)
    label = Column(String(200), nullable=False)
    serial_number = Column(String(100), nullable=True, index=True)
    dev_eui = Column(String(100), nullable=True, index=True)
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class Notification(Base):
    """Outbound email attempts."""
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(String(50), nullable=False, index=True)  # temperature_alert, device_offline, ...
    channel = Column(String(50), nullable=False, default="email")
    device_id = Column(String(100), nullable=True, index=True)

    recipient = Column(String(255), nullable=False)

    # Status
    status = Column(String(50), nullable=False, default="pending", index=True)  # pending, sent, failed
    sent_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)

    # Content
    subject = Column(String(500), nullable=True)
    body = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
