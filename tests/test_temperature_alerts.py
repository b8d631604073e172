"""Temperature alert evaluation, cooldown and per-channel configuration."""
from datetime import timedelta

import pytest

from device_cache import DeviceNotCachedError
from models import Notification, TemperatureAlertConfig
from temperature_alerts import (
    AlertConfigNotFoundError,
    AlertConfigValidationError,
    delete_alert_config,
    evaluate,
    get_alert_config,
    list_alert_configs,
    normalize_channel,
    save_alert_config,
)
from time_utils import utcnow

from conftest import make_device


@pytest.fixture
def freezer(db):
    device = make_device(db, "d1", name="Freezer")
    save_alert_config(db, "d1", None, 0.0, 8.0, ["ops@example.com"], alert_cooldown_seconds=300)
    return device


def test_breaches_60_seconds_apart_send_one_email(db, freezer, sent_emails):
    t0 = utcnow()

    assert evaluate(db, "d1", None, 12.0, now=t0) is True
    assert evaluate(db, "d1", None, 12.5, now=t0 + timedelta(seconds=60)) is False

    assert len(sent_emails) == 1


def test_breaches_400_seconds_apart_send_two_emails(db, freezer, sent_emails):
    t0 = utcnow()

    assert evaluate(db, "d1", None, 12.0, now=t0) is True
    assert evaluate(db, "d1", None, -2.0, now=t0 + timedelta(seconds=400)) is True

    assert len(sent_emails) == 2
    config = get_alert_config(db, "d1", None)
    assert config.total_alerts_sent == 2


def test_reading_inside_range_is_ignored(db, freezer, sent_emails):
    assert evaluate(db, "d1", None, 4.0) is False
    assert evaluate(db, "d1", None, 8.0) is False
    assert sent_emails == []


def test_disabled_config_never_alerts(db, freezer, sent_emails):
    save_alert_config(db, "d1", None, 0.0, 8.0, ["ops@example.com"], enabled=False)

    assert evaluate(db, "d1", None, 30.0) is False
    assert sent_emails == []


def test_missing_config_is_a_no_op(db, sent_emails):
    make_device(db, "d9")

    assert evaluate(db, "d9", "CH1", 30.0) is False


def test_only_enabled_recipients_are_emailed(db, sent_emails):
    make_device(db, "d1")
    save_alert_config(db, "d1", None, 0.0, 8.0, [
        {"email": "on@example.com", "enabled": True},
        {"email": "off@example.com", "enabled": False},
    ])

    evaluate(db, "d1", None, 20.0)

    assert [msg["To"] for msg in sent_emails] == ["on@example.com"]


def test_failed_delivery_still_starts_cooldown(db, freezer):
    # No SMTP host configured, every send fails
    t0 = utcnow()

    assert evaluate(db, "d1", None, 12.0, now=t0) is True
    assert evaluate(db, "d1", None, 12.0, now=t0 + timedelta(seconds=10)) is False

    log = db.query(Notification).filter_by(kind="temperature_alert").all()
    assert [row.status for row in log] == ["failed"]


def test_null_and_ch1_configs_are_independent(db):
    make_device(db, "d1")
    save_alert_config(db, "d1", None, 0.0, 8.0, ["single@example.com"])
    save_alert_config(db, "d1", "CH1", -20.0, -10.0, ["probe@example.com"])

    assert len(list_alert_configs(db, "d1")) == 2
    assert get_alert_config(db, "d1", None).max_temperature == 8.0
    assert get_alert_config(db, "d1", "CH1").max_temperature == -10.0

    delete_alert_config(db, "d1", None)

    assert get_alert_config(db, "d1", None) is None
    assert get_alert_config(db, "d1", "CH1") is not None


def test_saving_twice_updates_the_same_null_channel_row(db):
    make_device(db, "d1")
    save_alert_config(db, "d1", None, 0.0, 8.0, ["a@example.com"])
    save_alert_config(db, "d1", "", 1.0, 9.0, ["a@example.com"])

    rows = db.query(TemperatureAlertConfig).filter_by(device_id="d1").all()
    assert len(rows) == 1
    assert rows[0].min_temperature == 1.0


def test_normalize_channel():
    assert normalize_channel(None) is None
    assert normalize_channel("") is None
    assert normalize_channel("single") is None
    assert normalize_channel("ch1") == "CH1"
    with pytest.raises(AlertConfigValidationError):
        normalize_channel("CH9")


def test_validation_rules(db):
    make_device(db, "d1")

    with pytest.raises(AlertConfigValidationError):
        save_alert_config(db, "d1", None, 8.0, 8.0, ["a@example.com"])
    with pytest.raises(AlertConfigValidationError):
        save_alert_config(db, "d1", None, 0.0, 8.0, ["not-an-email"])
    with pytest.raises(AlertConfigValidationError):
        save_alert_config(db, "d1", None, 0.0, 8.0, ["a@example.com"], alert_cooldown_seconds=-1)
    with pytest.raises(DeviceNotCachedError):
        save_alert_config(db, "unknown", None, 0.0, 8.0, ["a@example.com"])


def test_invalid_recipient_rejects_whole_save(db):
    make_device(db, "d1")

    with pytest.raises(AlertConfigValidationError, match="oncall@@example"):
        save_alert_config(db, "d1", None, 0.0, 8.0, ["ops@example.com", "oncall@@example"])

    assert get_alert_config(db, "d1", None) is None


def test_delete_missing_config_raises(db):
    make_device(db, "d1")

    with pytest.raises(AlertConfigNotFoundError):
        delete_alert_config(db, "d1", "CH2")


def test_disabled_recipient_gets_one_unsubscribe_notice(db, sent_emails):
    make_device(db, "d1", name="Cold Room")
    save_alert_config(db, "d1", "CH1", 0.0, 8.0, ["a@example.com", "b@example.com"])
    assert sent_emails == []

    save_alert_config(db, "d1", "CH1", 0.0, 8.0, [
        {"email": "a@example.com", "enabled": True},
        {"email": "b@example.com", "enabled": False},
    ])
    save_alert_config(db, "d1", "CH1", 0.0, 8.0, [
        {"email": "a@example.com", "enabled": True},
        {"email": "b@example.com", "enabled": False},
    ])

    assert len(sent_emails) == 1
    assert sent_emails[0]["To"] == "b@example.com"
    assert sent_emails[0]["Subject"].startswith("Unsubscribed from temperature alerts: Cold Room")


def test_removed_recipient_is_notified(db, sent_emails):
    make_device(db, "d1")
    save_alert_config(db, "d1", None, 0.0, 8.0, ["a@example.com", "b@example.com"])

    save_alert_config(db, "d1", None, 0.0, 8.0, ["a@example.com"])

    assert [msg["To"] for msg in sent_emails] == ["b@example.com"]
