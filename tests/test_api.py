"""HTTP API tests: auth, roles, devices, alerts and telemetry."""
import io
from datetime import timedelta

import pandas as pd
import pytest

import routers.milesight as milesight_router
import token_manager
from models import ActivityLog, MilesightDeviceCache, TemperatureAlertConfig, User, UserRole
from telemetry_ingestor import IngestMeta, ingest
from time_utils import utcnow

from conftest import FakeMilesightClient, make_device, make_user

API = "/api/v1"


@pytest.fixture
def fake_client(client, milesight_settings):
    """Serve device endpoints from a fake Milesight client."""
    fake = FakeMilesightClient(devices=[
        {"deviceId": "d1", "sn": "X1", "devEUI": "E1", "name": "Cold Room", "connectStatus": "ONLINE"},
        {"deviceId": "d2", "sn": "X2", "name": "Freezer", "connectStatus": "OFFLINE"},
    ])
    client.app.dependency_overrides[milesight_router.get_milesight_client] = lambda: fake
    return fake


def _store_reading(db, device_id, event_id, ts, payload):
    ingest(db, device_id, payload, IngestMeta(event_type="DEVICE_DATA", source="webhook",
                                              event_id=event_id, timestamp_ms=ts))


# ============================================
# Auth and users
# ============================================

def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_login_returns_token(client, db):
    make_user(db, "ops@example.com", UserRole.MANAGER, password="pa55word")

    response = client.post(f"{API}/auth/login", json={"email": "OPS@example.com", "password": "pa55word"})

    assert response.status_code == 200
    body = response.json()
    assert body["user"]["role"] == "manager"
    me = client.get(f"{API}/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"})
    assert me.json()["email"] == "ops@example.com"


def test_login_rejects_bad_password_and_inactive_user(client, db):
    make_user(db, "ops@example.com", UserRole.MANAGER, password="pa55word")
    make_user(db, "gone@example.com", UserRole.MANAGER, password="pa55word", is_active=False)

    assert client.post(f"{API}/auth/login", json={"email": "ops@example.com", "password": "x"}).status_code == 401
    assert client.post(f"{API}/auth/login", json={"email": "gone@example.com", "password": "pa55word"}).status_code == 401


def test_missing_token_is_unauthorized(client):
    assert client.get(f"{API}/users").status_code == 401


def test_user_management_is_admin_only(client, manager_headers):
    assert client.get(f"{API}/users", headers=manager_headers).status_code == 403


def test_admin_creates_and_deactivates_user(client, db, admin_headers):
    created = client.post(f"{API}/users", headers=admin_headers, json={
        "email": "new@example.com", "password": "secret123", "role": "employee",
    })
    assert created.status_code == 201
    user_id = created.json()["id"]

    duplicate = client.post(f"{API}/users", headers=admin_headers, json={
        "email": "new@example.com", "password": "secret123",
    })
    assert duplicate.status_code == 400

    assert client.delete(f"{API}/users/{user_id}", headers=admin_headers).status_code == 204
    db.expire_all()
    assert db.query(User).filter_by(id=user_id).one().is_active is False
    assert db.query(ActivityLog).filter_by(action="user_created").count() == 1


def test_admin_cannot_demote_self(client, admin_user, admin_headers):
    response = client.put(f"{API}/users/{admin_user.id}", headers=admin_headers, json={"role": "employee"})

    assert response.status_code == 400


# ============================================
# Milesight settings
# ============================================

def test_settings_are_returned_with_masked_secret(client, admin_headers, milesight_settings):
    body = client.get(f"{API}/milesight/settings", headers=admin_headers).json()

    assert body["client_secret"] == token_manager.MASKED_SECRET
    assert body["has_access_token"] is True


def test_device_operations_fail_fast_on_expired_token(client, db, admin_headers, milesight_settings):
    milesight_settings.access_token_expires_at = utcnow() - timedelta(minutes=1)
    db.commit()

    response = client.post(f"{API}/devices/sync-all", headers=admin_headers)

    assert response.status_code == 409
    assert "expired" in response.json()["detail"]


def test_device_operations_without_settings(client, admin_headers):
    response = client.post(f"{API}/devices/search", headers=admin_headers, json={})

    assert response.status_code == 400
    assert response.json()["detail"] == "Milesight integration is not configured"


def test_webhook_settings_generate_token(client, admin_headers):
    response = client.put(f"{API}/milesight/webhook-settings", headers=admin_headers, json={
        "enabled": True, "webhook_secret": "abc", "generate_verification_token": True,
    })

    body = response.json()
    assert body["enabled"] is True
    assert body["verification_token"]
    assert body["webhook_secret"] == token_manager.MASKED_SECRET


# ============================================
# Devices
# ============================================

def test_sync_all_populates_cache(client, db, admin_headers, fake_client):
    response = client.post(f"{API}/devices/sync-all", headers=admin_headers)

    assert response.json()["success"] is True
    assert response.json()["synced"] == 2
    cached = client.get(f"{API}/devices/cached", headers=admin_headers).json()
    assert {d["device_id"]: d["last_status"] for d in cached} == {"d1": "ONLINE", "d2": "OFFLINE"}


def test_search_requires_manager(client, employee_headers, fake_client):
    assert client.post(f"{API}/devices/search", headers=employee_headers, json={}).status_code == 403


def test_search_syncs_results(client, db, manager_headers, fake_client):
    response = client.post(f"{API}/devices/search", headers=manager_headers, json={"sn": "X2"})

    assert response.json()["items"][0]["deviceId"] == "d2"
    assert db.query(MilesightDeviceCache).filter_by(device_id="d2").count() == 1


def test_delete_with_telemetry_needs_purge(client, db, admin_headers, fake_client):
    make_device(db, "d1", sn="X1")
    _store_reading(db, "d1", "e1", 1_760_000_000_000, {"temperature": 3.0})

    refused = client.delete(f"{API}/devices/d1", headers=admin_headers)
    assert refused.status_code == 409
    assert ("delete_device", "d1") not in fake_client.calls

    purged = client.delete(f"{API}/devices/d1", headers=admin_headers, params={"purge": "true"})
    assert purged.json()["success"] is True
    assert ("delete_device", "d1") in fake_client.calls
    db.expire_all()
    assert db.query(MilesightDeviceCache).count() == 0


def test_toggle_critical_and_sensor_names(client, db, admin_headers):
    make_device(db, "d1", critical_alert_active=True, is_critical=True)

    toggled = client.put(f"{API}/devices/d1/critical", headers=admin_headers, json={"is_critical": False})
    named = client.put(f"{API}/devices/d1/sensor-names", headers=admin_headers,
                       json={"sensor_name_left": "Top shelf", "sensor_name_right": " "})

    assert toggled.json()["critical_alert_active"] is False
    assert named.json()["sensor_name_left"] == "Top shelf"
    assert named.json()["sensor_name_right"] is None
    assert client.put(f"{API}/devices/nope/critical", headers=admin_headers,
                      json={"is_critical": True}).status_code == 404


# ============================================
# Temperature alerts
# ============================================

def test_manager_saves_channel_configs(client, db, manager_headers):
    make_device(db, "d1")
    payload = {"min_temperature": 0, "max_temperature": 8, "email_recipients": [{"email": "a@example.com"}]}

    single = client.put(f"{API}/temperature-alerts/d1", headers=manager_headers, json=payload)
    ch1 = client.put(f"{API}/temperature-alerts/d1", headers=manager_headers,
                     json={**payload, "sensor_channel": "ch1", "max_temperature": 5})

    assert single.status_code == 200
    assert single.json()["sensor_channel"] is None
    assert ch1.json()["sensor_channel"] == "CH1"
    listed = client.get(f"{API}/temperature-alerts/d1", headers=manager_headers).json()
    assert len(listed) == 2

    deleted = client.delete(f"{API}/temperature-alerts/d1", headers=manager_headers)
    assert deleted.status_code == 204
    assert db.query(TemperatureAlertConfig).one().sensor_channel == "CH1"


def test_alert_validation_errors(client, db, manager_headers):
    make_device(db, "d1")

    inverted = client.put(f"{API}/temperature-alerts/d1", headers=manager_headers, json={
        "min_temperature": 9, "max_temperature": 8, "email_recipients": [{"email": "a@example.com"}],
    })
    unknown = client.put(f"{API}/temperature-alerts/zz", headers=manager_headers, json={
        "min_temperature": 0, "max_temperature": 8, "email_recipients": [{"email": "a@example.com"}],
    })
    bad_channel = client.get(f"{API}/temperature-alerts/d1/config", headers=manager_headers,
                             params={"channel": "CH7"})

    bad_email = client.put(f"{API}/temperature-alerts/d1", headers=manager_headers, json={
        "min_temperature": 0, "max_temperature": 8,
        "email_recipients": [{"email": "a@example.com"}, {"email": "oncall@@example"}],
    })

    assert inverted.status_code == 400
    assert unknown.status_code == 404
    assert bad_channel.status_code == 400
    assert bad_email.status_code == 422
    assert db.query(TemperatureAlertConfig).count() == 0


def test_employee_cannot_edit_alerts(client, db, employee_headers):
    make_device(db, "d1")

    response = client.put(f"{API}/temperature-alerts/d1", headers=employee_headers, json={
        "min_temperature": 0, "max_temperature": 8, "email_recipients": [{"email": "a@example.com"}],
    })

    assert response.status_code == 403


# ============================================
# Telemetry
# ============================================

def test_telemetry_listing_is_newest_first_with_bounds(client, db, employee_headers):
    make_device(db, "d1")
    for i in range(5):
        _store_reading(db, "d1", f"e{i}", 1_000 * (i + 1), {"temperature": float(i)})

    everything = client.get(f"{API}/telemetry/d1", headers=employee_headers).json()
    bounded = client.get(f"{API}/telemetry/d1", headers=employee_headers,
                         params={"from": 2000, "to": 4000, "limit": 2}).json()

    assert [row["data_timestamp"] for row in everything] == [5000, 4000, 3000, 2000, 1000]
    assert [row["data_timestamp"] for row in bounded] == [4000, 3000]


def test_telemetry_for_unknown_device_is_404(client, employee_headers):
    assert client.get(f"{API}/telemetry/nope", headers=employee_headers).status_code == 404


def test_excel_export(client, db, employee_headers):
    make_device(db, "d1")
    _store_reading(db, "d1", "e1", 1_760_000_000_000, {"temperature_left": 3.5, "temperature_right": 4.5})

    response = client.get(f"{API}/telemetry/d1/export.xlsx", headers=employee_headers)

    assert response.status_code == 200
    assert "attachment" in response.headers["content-disposition"]
    df = pd.read_excel(io.BytesIO(response.content), engine="openpyxl")
    assert df.loc[0, "Temperature CH1 (°C)"] == 3.5
    assert df.loc[0, "Temperature CH2 (°C)"] == 4.5
