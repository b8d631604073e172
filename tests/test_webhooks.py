"""Milesight webhook receiver: verification, storage and ingestion."""
import pytest

from models import MilesightDeviceCache, MilesightDeviceTelemetry, MilesightWebhookEvent, MilesightWebhookSettings

from conftest import make_device

URL = "/api/v1/webhooks/milesight"


def _event(event_id="evt-1", device_id="d1", sn="X1", ts=1_760_000_000_000, payload=None, event_type="DEVICE_DATA"):
    return {
        "eventId": event_id,
        "eventType": event_type,
        "eventVersion": "1.0",
        "eventCreatedTime": ts // 1000,
        "data": {
            "deviceProfile": {"deviceId": device_id, "sn": sn, "name": "Cold Room", "model": "TS302", "devEUI": None},
            "type": "PROPERTY",
            "ts": ts,
            "payload": payload if payload is not None else {"temperature_left": 4.2, "humidity": 61, "battery": 93},
        },
    }


@pytest.fixture
def webhook(db):
    row = MilesightWebhookSettings(enabled=True, verification_token="tok", total_events_count=0)
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def test_disabled_webhook_is_rejected(client, db):
    db.add(MilesightWebhookSettings(enabled=False))
    db.commit()

    response = client.post(URL, params={"token": "tok"}, json=_event())

    assert response.status_code == 403


def test_wrong_token_is_rejected_before_storing(client, db, webhook):
    response = client.post(URL, params={"token": "nope"}, json=_event())

    assert response.status_code == 401
    assert db.query(MilesightWebhookEvent).count() == 0


def test_configured_secret_header_is_required(client, db, webhook):
    webhook.webhook_secret = "s3cret"
    db.commit()
    make_device(db, "d1", sn="X1")

    missing = client.post(URL, params={"token": "tok"}, json=_event())
    ok = client.post(URL, params={"token": "tok"}, headers={"X-Webhook-Secret": "s3cret"}, json=_event())

    assert missing.status_code == 401
    assert ok.status_code == 200


def test_device_data_is_ingested_once(client, db, webhook):
    make_device(db, "d1", sn="X1", last_status="OFFLINE")

    first = client.post(URL, params={"token": "tok"}, json=_event())
    second = client.post(URL, params={"token": "tok"}, json=_event())

    assert first.status_code == 200
    assert first.json()["outcomes"] == {"inserted": 1}
    assert second.json()["outcomes"] == {"duplicate": 1}
    rows = db.query(MilesightDeviceTelemetry).all()
    assert len(rows) == 1
    assert (rows[0].temperature, rows[0].humidity, rows[0].battery) == (4.2, 61, 93)
    assert rows[0].event_id == "evt-1"
    assert rows[0].data_timestamp == 1_760_000_000_000
    db.expire_all()
    device = db.query(MilesightDeviceCache).one()
    assert device.last_status == "ONLINE"
    assert device.device_type == "TS302"
    assert db.query(MilesightWebhookSettings).one().total_events_count == 2


def test_batch_with_unregistered_device(client, db, webhook):
    make_device(db, "d1", sn="X1")

    response = client.post(URL, params={"token": "tok"}, json=[
        _event("evt-1"),
        _event("evt-2", device_id="d9", sn="UNKNOWN"),
    ])

    body = response.json()
    assert body["events_received"] == 2
    assert body["outcomes"] == {"inserted": 1, "unregistered": 1}
    assert db.query(MilesightWebhookEvent).count() == 2
    assert db.query(MilesightDeviceTelemetry).count() == 1


def test_other_event_types_are_only_stored(client, db, webhook):
    make_device(db, "d1", sn="X1")

    response = client.post(URL, params={"token": "tok"}, json=_event(event_type="DEVICE_ONLINE"))

    assert response.json()["outcomes"] == {"stored": 1}
    assert db.query(MilesightDeviceTelemetry).count() == 0
    assert db.query(MilesightWebhookEvent).one().event_type == "DEVICE_ONLINE"


def test_reissued_device_id_is_reconciled_before_ingest(client, db, webhook):
    make_device(db, "d1", sn="X1")

    client.post(URL, params={"token": "tok"}, json=_event("evt-1", device_id="d2", sn="X1"))

    db.expire_all()
    assert [row.device_id for row in db.query(MilesightDeviceCache).all()] == ["d2"]
    assert db.query(MilesightDeviceTelemetry).one().device_id == "d2"


def test_event_without_ts_uses_created_time(client, db, webhook):
    make_device(db, "d1", sn="X1")
    event = _event(event_id=None)
    del event["data"]["ts"]

    client.post(URL, params={"token": "tok"}, json=event)

    row = db.query(MilesightDeviceTelemetry).one()
    assert row.data_timestamp == 1_760_000_000_000
    assert row.event_id == "d1-1760000000000"


def test_health_probe(client, db, webhook):
    response = client.get(URL)

    assert response.status_code == 200
    assert response.json()["enabled"] is True
