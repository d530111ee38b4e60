import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import AliasChoices, Field, model_validator
from typing import Optional
from pydantic_settings import BaseSettings

DEFAULT_SESSION_FILE = "~/.chatsync/auth_session.json"
DEFAULT_IDENTITY_BASE_URL = "https://identitytoolkit.googleapis.com/v1"
DEFAULT_SECURE_TOKEN_URL = "https://securetoken.googleapis.com/v1/token"
DEFAULT_FIRESTORE_BASE_URL = "https://firestore.googleapis.com/v1"

# Project root (parent of chatsync/) - used so .env is found regardless of cwd
_PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Explicitly load .env into os.environ so it works in tests and subprocesses
load_dotenv(_PROJECT_ROOT / ".env")


class Settings(BaseSettings):
    app_name: str = "chatsync"
    environment: str = Field(
        default="development",
        validation_alias=AliasChoices("ENV", "ENVIRONMENT"),
    )
    log_level: str = Field(default="INFO", json_schema_extra={"env": "LOG_LEVEL"})

    # Identity provider (Firebase Auth REST)
    firebase_api_key: Optional[str] = Field(
        default=None, json_schema_extra={"env": "FIREBASE_API_KEY"}
    )
    firebase_project_id: Optional[str] = Field(
        default=None, json_schema_extra={"env": "FIREBASE_PROJECT_ID"}
    )
    identity_base_url: str = Field(
        default=DEFAULT_IDENTITY_BASE_URL,
        json_schema_extra={"env": "IDENTITY_BASE_URL"},
    )
    secure_token_url: str = Field(
        default=DEFAULT_SECURE_TOKEN_URL,
        json_schema_extra={"env": "SECURE_TOKEN_URL"},
    )
    # Document store (Cloud Firestore REST)
    firestore_base_url: str = Field(
        default=DEFAULT_FIRESTORE_BASE_URL,
        json_schema_extra={"env": "FIRESTORE_BASE_URL"},
    )
    firestore_database: str = Field(
        default="(default)", json_schema_extra={"env": "FIRESTORE_DATABASE"}
    )
    store_poll_interval_seconds: float = Field(
        default=2.0, gt=0, json_schema_extra={"env": "STORE_POLL_INTERVAL_SECONDS"}
    )
    request_timeout_seconds: float = Field(
        default=15.0, json_schema_extra={"env": "REQUEST_TIMEOUT_SECONDS"}
    )
    resource_timeout_seconds: float = Field(
        default=30.0, json_schema_extra={"env": "RESOURCE_TIMEOUT_SECONDS"}
    )
    session_file: Optional[str] = None  # Will be set dynamically

    # Pagination / query limits
    message_page_size: int = Field(
        default=50, ge=1, json_schema_extra={"env": "MESSAGE_PAGE_SIZE"}
    )
    user_search_limit: int = Field(
        default=50, ge=1, json_schema_extra={"env": "USER_SEARCH_LIMIT"}
    )
    users_in_query_limit: int = Field(
        default=10, ge=1, json_schema_extra={"env": "USERS_IN_QUERY_LIMIT"}
    )
    batch_delete_limit: int = Field(
        default=500, ge=1, json_schema_extra={"env": "BATCH_DELETE_LIMIT"}
    )

    # Message validation
    max_message_length: int = Field(
        default=10_000, json_schema_extra={"env": "MAX_MESSAGE_LENGTH"}
    )
    max_emoji_message_length: int = Field(
        default=8, json_schema_extra={"env": "MAX_EMOJI_MESSAGE_LENGTH"}
    )

    # Timing
    typing_debounce_seconds: float = Field(
        default=0.5, json_schema_extra={"env": "TYPING_DEBOUNCE_SECONDS"}
    )
    typing_auto_clear_seconds: float = Field(
        default=5.0, json_schema_extra={"env": "TYPING_AUTO_CLEAR_SECONDS"}
    )
    search_debounce_seconds: float = Field(
        default=0.3, json_schema_extra={"env": "SEARCH_DEBOUNCE_SECONDS"}
    )
    timestamp_display_threshold_seconds: float = Field(
        default=300.0,
        json_schema_extra={"env": "TIMESTAMP_DISPLAY_THRESHOLD_SECONDS"},
    )

    # Notifications
    notifications_enabled: bool = Field(
        default=True, json_schema_extra={"env": "NOTIFICATIONS_ENABLED"}
    )
    sound_enabled: bool = Field(default=True, json_schema_extra={"env": "SOUND_ENABLED"})
    badge_enabled: bool = Field(default=True, json_schema_extra={"env": "BADGE_ENABLED"})
    notification_preview_length: int = Field(
        default=100, json_schema_extra={"env": "NOTIFICATION_PREVIEW_LENGTH"}
    )
    max_pending_notification_tasks: int = Field(
        default=50, ge=1, json_schema_extra={"env": "MAX_PENDING_NOTIFICATION_TASKS"}
    )

    # Invitations / registration
    invitation_code_length: int = Field(
        default=6, ge=4, json_schema_extra={"env": "INVITATION_CODE_LENGTH"}
    )
    invitation_expiry_days: Optional[int] = Field(
        default=7, json_schema_extra={"env": "INVITATION_EXPIRY_DAYS"}
    )
    minimum_password_length: int = Field(
        default=6, json_schema_extra={"env": "MINIMUM_PASSWORD_LENGTH"}
    )

    @model_validator(mode="before")
    def set_session_file(cls, values):
        """Set the session_file dynamically based on the environment field."""
        if values.get("session_file"):
            return values
        environment = values.get("environment", os.getenv("ENV", "development"))
        if environment.lower() == "test":
            values["session_file"] = os.getenv(
                "TEST_SESSION_FILE", str(_PROJECT_ROOT / ".test_auth_session.json")
            )
        else:
            values["session_file"] = os.getenv("SESSION_FILE", DEFAULT_SESSION_FILE)

        return values

    @property
    def is_production(self) -> bool:
        """Check if the current environment is production."""
        return self.environment.lower() == "production"

    @property
    def is_test(self) -> bool:
        """Check if the current environment is test."""
        return self.environment.lower() == "test"

    @property
    def session_path(self) -> Path:
        """Return the session file as an expanded Path."""
        if not self.session_file:
            raise ValueError("Session file is not set.")
        return Path(self.session_file).expanduser()

    @property
    def http_timeout(self) -> tuple[float, float]:
        """(connect, read) timeout pair for requests: request phase, then transfer phase."""
        return (self.request_timeout_seconds, self.resource_timeout_seconds)

    class ConfigDict:
        env_file = str(_PROJECT_ROOT / ".env")
        env_file_encoding = "utf-8"
        extra = "allow"  # Allow extra environment variables


def get_settings() -> Settings:
    """Get application settings with required environment variables."""
    return Settings()
