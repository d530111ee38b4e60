"""Tests for Settings."""

from pathlib import Path

from chatsync.config import DEFAULT_IDENTITY_BASE_URL, Settings


def test_defaults():
    settings = Settings(session_file="/tmp/chatsync-test-session.json")

    assert settings.message_page_size == 50
    assert settings.users_in_query_limit == 10
    assert settings.batch_delete_limit == 500
    assert settings.max_emoji_message_length == 8
    assert settings.timestamp_display_threshold_seconds == 300.0
    assert settings.invitation_code_length == 6
    assert settings.invitation_expiry_days == 7
    assert settings.identity_base_url == DEFAULT_IDENTITY_BASE_URL


def test_http_timeout_pairs_request_and_resource_timeouts():
    settings = Settings(
        session_file="/tmp/s.json", request_timeout_seconds=2.5, resource_timeout_seconds=9
    )
    assert settings.http_timeout == (2.5, 9.0)


def test_environment_variables_override(monkeypatch):
    monkeypatch.setenv("MESSAGE_PAGE_SIZE", "20")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("TEST_SESSION_FILE", "/tmp/chatsync-env-session.json")

    settings = Settings()

    assert settings.message_page_size == 20
    assert settings.is_test
    assert not settings.is_production
    assert settings.session_path == Path("/tmp/chatsync-env-session.json")


def test_session_path_expands_user():
    settings = Settings(session_file="~/.chatsync/session.json")
    assert settings.session_path == Path.home() / ".chatsync" / "session.json"
