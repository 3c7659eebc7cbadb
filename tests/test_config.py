# ruff: noqa: INP001
"""Settings validation and derived values."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from sprintboard.core.config import Settings


def _settings(**overrides: object) -> Settings:
    return Settings(_env_file=None, **overrides)  # type: ignore[arg-type]


def test_base_url_trailing_slash_is_trimmed() -> None:
    settings = _settings(persistence_base_url="http://svc.local/api/v1/")

    assert settings.persistence_base_url == "http://svc.local/api/v1"


def test_push_url_derives_from_persistence_root() -> None:
    settings = _settings(persistence_base_url="http://svc.local/api/v1", sprint_id="s-1")

    assert settings.resolved_push_channel_url() == "http://svc.local/api/v1/sprints/s-1/events"
    assert settings.resolved_push_channel_url("s-2").endswith("/sprints/s-2/events")


def test_explicit_push_url_wins() -> None:
    settings = _settings(push_channel_url=" http://push.local/stream ")

    assert settings.resolved_push_channel_url("s-1") == "http://push.local/stream"


@pytest.mark.parametrize(
    "overrides",
    [
        {"lifecycle_timeout_seconds": 0},
        {"fetch_timeout_seconds": -1},
        {"push_reconnect_base_seconds": 0},
        {"push_reconnect_base_seconds": 5, "push_reconnect_max_seconds": 2},
        {"snapshot_poll_seconds": -1},
    ],
)
def test_invalid_timing_is_rejected(overrides: dict[str, object]) -> None:
    with pytest.raises(ValidationError):
        _settings(**overrides)


def test_environment_variables_are_read(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LIFECYCLE_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("ACTING_USER_ID", "alice")

    settings = _settings()

    assert settings.lifecycle_timeout_seconds == 2.5
    assert settings.acting_user_id == "alice"
