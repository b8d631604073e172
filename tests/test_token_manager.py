"""Token validity checks, refresh window and settings persistence."""
from datetime import timedelta

import pytest

import token_manager
from models import MilesightSettings
from time_utils import as_utc, utcnow
from token_manager import (
    MASKED_SECRET,
    IntegrationDisabledError,
    NoTokenError,
    NotConfiguredError,
    TokenExpiredError,
    disconnect,
    ensure_fresh_token,
    get_valid_token,
    needs_refresh,
    refresh_access_token,
    refresh_token_if_needed,
    save_settings,
)


@pytest.fixture
def token_requests(monkeypatch):
    """Fake token endpoint; records every call."""
    calls = []

    def fake_request_token(base_url, client_id, client_secret):
        calls.append((base_url, client_id, client_secret))
        return {"access_token": f"token-{len(calls)}", "refresh_token": None,
                "expires_in": 3600, "token_type": "Bearer"}

    monkeypatch.setattr(token_manager, "request_token", fake_request_token)
    return calls


def test_refresh_window_boundary():
    now = utcnow()

    assert needs_refresh(now + timedelta(minutes=4), now=now) is True
    assert needs_refresh(now + timedelta(minutes=6), now=now) is False
    assert needs_refresh(None, now=now) is True


def test_expired_token_fails_strict_check(db, milesight_settings):
    milesight_settings.access_token_expires_at = utcnow() - timedelta(seconds=1)
    db.commit()

    with pytest.raises(TokenExpiredError):
        get_valid_token(db)


def test_token_inside_refresh_window_is_still_usable(db, milesight_settings):
    milesight_settings.access_token_expires_at = utcnow() + timedelta(minutes=4)
    db.commit()

    token = get_valid_token(db)

    assert token.access_token == "token-abc"
    assert token.base_url == "https://eu-openapi.milesight.com"


def test_configuration_errors(db):
    with pytest.raises(NotConfiguredError):
        get_valid_token(db)

    row = MilesightSettings(base_url="https://x", client_id="id", client_secret="s", enabled=False)
    db.add(row)
    db.commit()
    with pytest.raises(IntegrationDisabledError):
        get_valid_token(db)

    row.enabled = True
    db.commit()
    with pytest.raises(NoTokenError):
        get_valid_token(db)


def test_refresh_keeps_previous_refresh_token(db, milesight_settings, token_requests):
    now = utcnow()

    row = refresh_access_token(db, milesight_settings, now=now)

    assert row.access_token == "token-1"
    assert row.refresh_token == "refresh-abc"
    assert as_utc(row.access_token_expires_at) == now + timedelta(seconds=3600)


def test_non_forced_refresh_skips_fresh_token(db, milesight_settings, token_requests):
    refresh_access_token(db, milesight_settings, force=False)

    assert token_requests == []


def test_ensure_fresh_token_refreshes_inside_window(db, milesight_settings, token_requests):
    milesight_settings.access_token_expires_at = utcnow() + timedelta(minutes=2)
    db.commit()

    token = ensure_fresh_token(db)

    assert token.access_token == "token-1"
    assert len(token_requests) == 1


def test_scheduled_refresh_only_inside_window(db, milesight_settings, token_requests):
    refresh_token_if_needed()
    assert token_requests == []

    milesight_settings.access_token_expires_at = utcnow() + timedelta(minutes=4)
    db.commit()
    refresh_token_if_needed()

    assert len(token_requests) == 1
    db.expire_all()
    assert db.query(MilesightSettings).one().access_token == "token-1"


def test_scheduled_refresh_swallows_errors(db, milesight_settings, monkeypatch):
    def failing_request_token(*args):
        raise RuntimeError("token endpoint down")

    monkeypatch.setattr(token_manager, "request_token", failing_request_token)
    milesight_settings.access_token_expires_at = utcnow() - timedelta(minutes=1)
    db.commit()

    refresh_token_if_needed()

    db.expire_all()
    assert db.query(MilesightSettings).one().access_token == "token-abc"


def test_save_settings_requests_first_token(db, token_requests):
    row = save_settings(db, "Milesight", True, "https://eu-openapi.milesight.com/", "id", "secret")

    assert row.base_url == "https://eu-openapi.milesight.com"
    assert row.access_token == "token-1"
    assert token_requests == [("https://eu-openapi.milesight.com", "id", "secret")]


def test_masked_secret_keeps_stored_secret(db, milesight_settings, token_requests):
    row = save_settings(db, "Milesight", True, milesight_settings.base_url, "client-id", MASKED_SECRET)

    assert row.client_secret == "client-secret"
    assert token_requests[0][2] == "client-secret"


def test_disconnect_clears_tokens(db, milesight_settings):
    disconnect(db)

    db.refresh(milesight_settings)
    assert milesight_settings.enabled is False
    assert milesight_settings.access_token is None
