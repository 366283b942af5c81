from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_DATA_DIR = ".pulse"
DEFAULT_USER_AGENT = "Pulse/1.0 (News Aggregator)"
_DATA_DIR_RELATIVE_DEFAULTS: tuple[tuple[str, Path], ...] = (
    ("db_path", Path("state.db")),
    ("log_dir", Path("logs")),
)
_PATH_FIELDS: tuple[str, ...] = (
    "data_dir",
    *(field_name for field_name, _ in _DATA_DIR_RELATIVE_DEFAULTS),
)
_BOOLEAN_COERCION_FIELDS: tuple[str, ...] = (
    "scheduler_enabled",
    "scheduler_autostart",
    "telemetry_enabled",
)


def _default_in_data_dir(relative_path: Path) -> Path:
    return Path(DEFAULT_DATA_DIR) / relative_path


def _data_dir_default_note(relative_path: Path) -> str:
    return f"Defaults to `${{PULSE_DATA_DIR}}/{relative_path}` when not explicitly set."


def _resolve_path(value: str | Path) -> Path:
    return Path(value).expanduser().resolve()


def _parse_bool_with_default(value: Any, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if value == 1:
            return True
        if value == 0:
            return False
        return default
    if not isinstance(value, str):
        return default

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _normalize_optional_text(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    if normalized:
        return normalized
    return None


def _split_csv(value: Any) -> list[str]:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, list | tuple):
        return [str(part).strip() for part in value if str(part).strip()]
    raise ValueError("expected a comma-separated string or a list")


class AppSettings(BaseSettings):
    """
    Canonical runtime configuration.

    Every option is read from `PULSE_*` environment variables (or `.env`).
    Values that were product decisions rather than protocol constants, such as
    the first-fetch window and the breaking keywords, live here so they can be
    tuned without a code change.
    """

    model_config = SettingsConfigDict(
        env_prefix="PULSE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # Core paths.
    data_dir: Path = Field(
        default=Path(DEFAULT_DATA_DIR),
        description="Root runtime directory for local state and logs.",
    )
    db_path: Path = Field(
        default=_default_in_data_dir(Path("state.db")),
        description=f"SQLite database path. {_data_dir_default_note(Path('state.db'))}",
    )

    # Poll chain.
    scheduler_enabled: bool = Field(
        default=True,
        description="Run the background runner that executes due poll units.",
    )
    scheduler_autostart: bool = Field(
        default=True,
        description="Arm the poll chain on startup when no pending unit exists.",
    )
    scheduler_tick_seconds: int = Field(
        default=30,
        ge=1,
        description="How often the runner checks for a due unit (the host-level floor).",
    )
    poll_base_interval_minutes: int = Field(
        default=5,
        ge=1,
        description="Normal cadence between poll passes.",
    )
    poll_max_attempts: int = Field(
        default=3,
        ge=0,
        description="Consecutive failed passes retried on the backoff schedule before resetting.",
    )
    poll_backoff_minutes: Annotated[list[int], NoDecode] = Field(
        default_factory=lambda: [1, 2, 5],
        description="Retry delays in minutes, indexed by attempt count (comma-separated).",
    )

    # Dedup and parsing.
    first_fetch_limit: int = Field(
        default=5,
        ge=1,
        description="Items treated as new on the first-ever fetch of a source.",
    )
    breaking_keywords: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["breaking", "urgent", "alert"],
        description="Case-insensitive title keywords that mark an item as breaking.",
    )
    feed_body_max_chars: int = Field(
        default=200,
        ge=1,
        description="Maximum characters kept from a feed item's description.",
    )

    # Notification history and delivery.
    notification_history_cap: int = Field(
        default=50,
        ge=1,
        description="Maximum notifications retained in the device history.",
    )
    notification_message_max_chars: int = Field(
        default=100,
        ge=1,
        description="Characters of the article snippet kept in a fanned-out user notification.",
    )
    delivery_recent_window_seconds: int = Field(
        default=3600,
        ge=0,
        description="Only notifications published within this window are handed to delivery.",
    )

    # HTTP.
    http_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for feed and timeline HTTP requests.",
    )
    http_user_agent: str = Field(
        default=DEFAULT_USER_AGENT,
        description="User-Agent header sent with feed requests.",
    )

    # Timeline source.
    timeline_api_base_url: str = Field(
        default="https://api.twitter.com/2",
        description="Base URL of the timeline API.",
    )
    timeline_bearer_token: str | None = Field(
        default=None,
        description="Bearer token for the timeline API. Timeline sources are skipped without it.",
    )
    timeline_page_size: int = Field(
        default=5,
        ge=5,
        le=100,
        description="max_results requested per timeline fetch.",
    )

    # Server variant.
    fanout_max_workers: int = Field(
        default=4,
        ge=1,
        description="Concurrent feed fetches during a fanout pass.",
    )
    push_gateway_url: str | None = Field(
        default=None,
        description="HTTP endpoint accepting multicast push requests. Pushes are only logged when unset.",
    )

    # Logging.
    log_dir: Path = Field(
        default=_default_in_data_dir(Path("logs")),
        description=f"Directory for log files. {_data_dir_default_note(Path('logs'))}",
    )
    log_level: str = Field(
        default="INFO",
        description="Console log level (stdout).",
    )
    log_max_bytes: int = Field(
        default=10 * 1024 * 1024,
        ge=0,
        description="Rotate log files after this many bytes (0 disables rotation).",
    )
    log_backup_count: int = Field(
        default=5,
        ge=0,
        description="Rotated log files kept per log.",
    )

    # Telemetry.
    telemetry_enabled: bool = Field(
        default=True,
        description="Enable lightweight internal telemetry events.",
    )
    telemetry_sink: Literal["none", "log"] = Field(
        default="log",
        description=(
            "Telemetry sink backend. `log` emits structured telemetry locally; "
            "`none` disables sink output."
        ),
    )

    @field_validator("telemetry_sink", mode="before")
    @classmethod
    def _normalize_telemetry_sink(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("PULSE_TELEMETRY_SINK must be a string.")
        normalized = value.strip().lower()
        if normalized in {"none", "log"}:
            return normalized
        raise ValueError("PULSE_TELEMETRY_SINK must be set to: none, log.")

    @field_validator("timeline_api_base_url", mode="before")
    @classmethod
    def _normalize_base_url(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("PULSE_TIMELINE_API_BASE_URL must be a string.")
        normalized = value.strip().rstrip("/")
        if not normalized:
            raise ValueError("PULSE_TIMELINE_API_BASE_URL must not be empty.")
        return normalized

    @field_validator("http_user_agent", mode="before")
    @classmethod
    def _normalize_user_agent(cls, value: Any) -> str:
        normalized = _normalize_optional_text(value)
        return normalized or DEFAULT_USER_AGENT

    @field_validator("poll_backoff_minutes", mode="before")
    @classmethod
    def _parse_backoff(cls, value: Any) -> list[int]:
        parts = _split_csv(value)
        minutes: list[int] = []
        for part in parts:
            try:
                parsed = int(part)
            except ValueError as exc:
                raise ValueError("PULSE_POLL_BACKOFF_MINUTES must be integers.") from exc
            if parsed < 1:
                raise ValueError("PULSE_POLL_BACKOFF_MINUTES entries must be >= 1.")
            minutes.append(parsed)
        return minutes

    @field_validator("breaking_keywords", mode="before")
    @classmethod
    def _parse_keywords(cls, value: Any) -> list[str]:
        return [part.lower() for part in _split_csv(value)]

    @field_validator(*_PATH_FIELDS, mode="before")
    @classmethod
    def _normalize_paths(cls, value: Any) -> Any:
        if value is None:
            return None
        return _resolve_path(value)

    @field_validator(*_BOOLEAN_COERCION_FIELDS, mode="before")
    @classmethod
    def _normalize_booleans(cls, value: Any, info: ValidationInfo) -> bool:
        field_name = info.field_name
        assert field_name is not None
        default_value = cls.model_fields[field_name].default
        assert isinstance(default_value, bool)
        return _parse_bool_with_default(value, default=default_value)

    @field_validator("timeline_bearer_token", "push_gateway_url", mode="before")
    @classmethod
    def _normalize_optional_strings(cls, value: Any) -> str | None:
        return _normalize_optional_text(value)


def _apply_path_defaults(settings: AppSettings) -> AppSettings:
    updates: dict[str, Path] = {}
    for field_name, relative_default in _DATA_DIR_RELATIVE_DEFAULTS:
        if field_name in settings.model_fields_set:
            continue
        updates[field_name] = settings.data_dir / relative_default
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def _resolve_path_fields(settings: AppSettings) -> AppSettings:
    resolved_updates = {
        field_name: _resolve_path(getattr(settings, field_name))
        for field_name in _PATH_FIELDS
    }
    return settings.model_copy(update=resolved_updates)


def load_settings() -> AppSettings:
    settings = AppSettings()
    settings = _apply_path_defaults(settings)
    return _resolve_path_fields(settings)
