from __future__ import annotations

from rostersync.services.audit import sanitize_metadata


def test_sync_metadata_redacts_credentials() -> None:
    # Sync log metadata must never carry tokens or secrets.
    payload = {
        "access_token": "secret-access",
        "refresh_token": "secret-refresh",
        "client_secret": "super-secret",
        "failedGroups": [{"externalGroupId": "L1", "authorization": "Bearer abc"}],
        "listsFetched": 3,
    }
    sanitized = sanitize_metadata(payload)
    assert sanitized["access_token"] == "[REDACTED]"
    assert sanitized["refresh_token"] == "[REDACTED]"
    assert sanitized["client_secret"] == "[REDACTED]"
    assert sanitized["failedGroups"][0]["authorization"] == "[REDACTED]"
    assert sanitized["failedGroups"][0]["externalGroupId"] == "L1"
    assert sanitized["listsFetched"] == 3
