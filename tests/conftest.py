"""Pytest fixtures. Use an in-memory SQLite database bound to SessionLocal and override get_db."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

from datetime import timedelta
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from starlette.testclient import TestClient

from admin_auth import create_access_token, hash_password
from database import Base, SessionLocal, get_db
from main import app
from models import MilesightDeviceCache, MilesightSettings, User, UserRole
from notification_service import NotificationService, notification_service
from time_utils import utcnow

# One connection shared by every session so the in-memory schema survives
test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Background callables open their own SessionLocal(); point it at the test DB too
SessionLocal.configure(bind=test_engine)


@pytest.fixture
def db():
    """Fresh schema per test."""
    Base.metadata.create_all(bind=test_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def client(db):
    """HTTP client sharing the test database."""
    def override_get_db():
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def sent_emails(monkeypatch):
    """Capture outbound email instead of talking to an SMTP server."""
    outbox = []
    monkeypatch.setattr(notification_service, "smtp_host", "smtp.test.local")
    monkeypatch.setattr(NotificationService, "_deliver", lambda self, msg: outbox.append(msg))
    return outbox


def make_user(db, email: str, role: UserRole, password: str = "secret123", is_active: bool = True) -> User:
    user = User(
        email=email,
        hashed_password=hash_password(password),
        full_name=email.split("@")[0].title(),
        role=role,
        is_active=is_active,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def auth_headers(user: User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user)}"}


@pytest.fixture
def admin_user(db):
    return make_user(db, "admin@example.com", UserRole.ADMIN)


@pytest.fixture
def admin_headers(admin_user):
    return auth_headers(admin_user)


@pytest.fixture
def manager_headers(db):
    return auth_headers(make_user(db, "manager@example.com", UserRole.MANAGER))


@pytest.fixture
def employee_headers(db):
    return auth_headers(make_user(db, "employee@example.com", UserRole.EMPLOYEE))


def make_device(db, device_id: str, sn: Optional[str] = None, dev_eui: Optional[str] = None,
                **fields) -> MilesightDeviceCache:
    device = MilesightDeviceCache(
        device_id=device_id,
        sn=sn,
        dev_eui=dev_eui,
        name=fields.pop("name", f"Sensor {device_id}"),
        last_status=fields.pop("last_status", "ONLINE"),
        **fields,
    )
    db.add(device)
    db.commit()
    db.refresh(device)
    return device


@pytest.fixture
def milesight_settings(db):
    """Enabled integration with a token valid for another hour."""
    row = MilesightSettings(
        name="Milesight",
        enabled=True,
        base_url="https://eu-openapi.milesight.com",
        client_id="client-id",
        client_secret="client-secret",
        access_token="token-abc",
        refresh_token="refresh-abc",
        access_token_expires_at=utcnow() + timedelta(hours=1),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


class FakeMilesightClient:
    """Stand-in for MilesightClient that serves canned responses and records calls."""

    def __init__(self, devices: Optional[List[Dict[str, Any]]] = None,
                 logs: Optional[Dict[str, List[Dict[str, Any]]]] = None,
                 configs: Optional[Dict[str, Dict[str, Any]]] = None,
                 report_total: bool = True):
        self.devices = devices or []
        self.logs = logs or {}
        self.configs = configs or {}
        self.report_total = report_total
        self.calls: List[tuple] = []

    def search_devices(self, page_number=1, page_size=20, **filters):
        self.calls.append(("search_devices", page_number, page_size))
        matches = [
            d for d in self.devices
            if all(d.get(key) == value for key, value in
                   (("sn", filters.get("sn")), ("devEUI", filters.get("dev_eui"))) if value)
        ]
        start = (page_number - 1) * page_size
        return matches[start:start + page_size], len(matches) if self.report_total else None

    def get_device(self, device_id):
        self.calls.append(("get_device", device_id))
        return next((d for d in self.devices if d["deviceId"] == device_id), {})

    def search_logs(self, dev_euis=None, device_ids=None, sns=None, page_size=20):
        self.calls.append(("search_logs", tuple(device_ids or ())))
        rows = []
        for device_id in device_ids or []:
            rows.extend(self.logs.get(device_id, []))
        return rows[:page_size]

    def get_device_config(self, device_id):
        self.calls.append(("get_device_config", device_id))
        if device_id not in self.configs:
            raise RuntimeError(f"no config for {device_id}")
        return self.configs[device_id]

    def delete_device(self, device_id):
        self.calls.append(("delete_device", device_id))
        return {"success": True}
