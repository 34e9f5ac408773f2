"""Environment-driven configuration for the event pipeline."""
from __future__ import annotations

import typing as t

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """All tunables of the pipeline and its collaborators.

    Every field is read from the environment variable named by its alias and
    can also be passed by field name, e.g. ``Settings(data_dir="/tmp/x")``.
    Values that do not parse raise ``pydantic.ValidationError``.
    """

    model_config = SettingsConfigDict(
        populate_by_name=True,
        extra="ignore",
    )

    data_dir: str = Field(default="data", alias="PIPELINE_DATA_DIR")
    poll_interval: float = Field(default=300.0, gt=0, alias="PIPELINE_POLL_INTERVAL")
    settle_delay: float = Field(default=0.3, ge=0, alias="PIPELINE_SETTLE_DELAY")
    await_specialized: bool = Field(default=False, alias="PIPELINE_AWAIT_SPECIALIZED")
    claim_ttl: float = Field(default=900.0, alias="PIPELINE_CLAIM_TTL")
    monitor_enabled: bool = Field(default=False, alias="PIPELINE_MONITOR_ENABLED")
    excluded_titles: t.Annotated[list[str], NoDecode] = Field(
        default_factory=list, alias="PIPELINE_EXCLUDED_TITLES",
    )

    # Calendar
    calendar_timeout: float = Field(default=15.0, gt=0, alias="CALENDAR_TIMEOUT")
    calendar_lookahead_days: int = Field(default=30, gt=0, alias="CALENDAR_LOOKAHEAD_DAYS")
    calendar_max_results: int = Field(default=50, gt=0, alias="CALENDAR_MAX_RESULTS")
    google_access_token: t.Optional[str] = Field(default=None, alias="GOOGLE_ACCESS_TOKEN")
    google_refresh_token: t.Optional[str] = Field(default=None, alias="GOOGLE_REFRESH_TOKEN")
    google_client_id: t.Optional[str] = Field(default=None, alias="GOOGLE_CLIENT_ID")
    google_client_secret: t.Optional[str] = Field(default=None, alias="GOOGLE_CLIENT_SECRET")

    # Classifier
    openai_api_key: t.Optional[str] = Field(default=None, alias="OPENAI_API_KEY")
    openai_model: str = Field(default="gpt-4o-mini", alias="OPENAI_MODEL")
    classifier_timeout: float = Field(default=30.0, gt=0, alias="CLASSIFIER_TIMEOUT")

    # Browser automation
    browser_use_api_key: t.Optional[str] = Field(default=None, alias="BROWSER_USE_API_KEY")
    browser_use_api_url: str = Field(
        default="https://api.browser-use.com/api/v1", alias="BROWSER_USE_API_URL",
    )
    browser_use_live_url: str = Field(
        default="https://cloud.browser-use.com", alias="BROWSER_USE_LIVE_URL",
    )
    automation_session_timeout: float = Field(default=15.0, gt=0, alias="AUTOMATION_SESSION_TIMEOUT")
    automation_completion_timeout: float = Field(
        default=600.0, gt=0, alias="AUTOMATION_COMPLETION_TIMEOUT",
    )

    @field_validator("excluded_titles", mode="before")
    @classmethod
    def _split_titles(cls, value: t.Any) -> t.Any:
        # Comma separated in the environment.
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @classmethod
    def from_env(cls) -> Settings:
        return cls()

    def missing(self) -> list[str]:
        """Names of the environment variables required to talk to the collaborators."""
        required = {
            "OPENAI_API_KEY": self.openai_api_key,
            "GOOGLE_ACCESS_TOKEN": self.google_access_token,
            "BROWSER_USE_API_KEY": self.browser_use_api_key,
        }
        return [key for key, value in required.items() if not value]

    def require_credentials(self) -> None:
        """
        Raises:
            RuntimeError: If a required environment variable is not set
        """
        missing = self.missing()
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )
