"""Service configuration loaded from RELAY_* environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RelaySettings(BaseSettings):
    """threadrelay settings.

    All fields are read from environment variables with the ``RELAY_`` prefix.
    For example, ``RELAY_LOG_LEVEL=DEBUG`` maps to ``log_level``.

    The chat-platform login token is **not** managed here; it belongs to the
    chat client that drives the gateway.
    """

    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"
    debug: bool = False

    # -- Channels --------------------------------------------------------------
    channels: str | None = None
    """Watched channels as ``name:/abs/path,name2:/abs/path2``.

    Each watched channel maps to the working directory its agent runs use.
    When unset, ``watch_channel`` + ``working_dir`` form a single mapping.
    """

    watch_channel: str = "claude"
    working_dir: str | None = None

    # -- Agent -----------------------------------------------------------------
    agent_config_dir: str = "~/.claude"
    """Agent runtime's own config directory.  Plan documents live in ``plans/``."""

    model: str | None = None
    permission_mode: str = "bypassPermissions"
    max_turns_per_run: int = 50
    max_total_turns: int = 200
    """Ceiling on turns across auto-resumes for one user request."""

    tool_accept_delay_ms: int = 0
    """Upper bound of the random delay before auto-allowing a generic tool."""

    context_window: int = 200_000
    mcp_config: str | None = None
    """Optional path to a JSON file with an ``mcpServers`` map."""

    anthropic_api_key: SecretStr | None = None

    # -- Streaming -------------------------------------------------------------
    edit_rate_ms: int = 1500
    typing_interval_seconds: float = 8.0
    stop_grace_seconds: float = 5.0
    """How long a stop request waits for the run to finish before cancelling it."""

    # -- Sessions --------------------------------------------------------------
    session_timeout_minutes: int = 60
    sweep_interval_seconds: float = 600.0
    plan_max_age_seconds: float = 300.0

    # -- Storage ---------------------------------------------------------------
    data_root: str = "./data"
    upload_dir_name: str = "Discord"
    """Subdirectory of the working dir that inbound attachments are saved to."""

    # -- Server ----------------------------------------------------------------
    host: str = "127.0.0.1"
    port: int = 8000
    shutdown_timeout_seconds: float = 10.0
    """How long shutdown waits for in-flight runs to tear down before cancelling them."""

    # -- Validation ------------------------------------------------------------

    @field_validator("channels")
    @classmethod
    def _validate_channels(cls, value: str | None) -> str | None:
        if value:
            parse_channel_map(value)
        return value

    # -- Helpers ---------------------------------------------------------------

    def channel_map(self) -> dict[str, str]:
        """Return ``{channel name: working dir}`` for every watched channel."""
        if self.channels:
            return parse_channel_map(self.channels)
        if self.working_dir:
            return {self.watch_channel: self.working_dir}
        return {}

    @property
    def plans_dir(self) -> Path:
        return Path(self.agent_config_dir).expanduser() / "plans"

    @property
    def session_timeout_seconds(self) -> float:
        return self.session_timeout_minutes * 60.0


def parse_channel_map(raw: str) -> dict[str, str]:
    """Parse ``name:/abs/path,...``.

    Raises ``ValueError`` for a malformed entry, a relative path, or a path
    that is not an existing directory.
    """
    result: dict[str, str] = {}
    for entry in raw.split(","):
        entry = entry.strip()
        if not entry:
            continue
        name, sep, path = entry.partition(":")
        name, path = name.strip(), path.strip()
        if not sep or not name or not path:
            raise ValueError(f"Invalid channel entry {entry!r}, expected 'name:/abs/path'")
        if not Path(path).is_absolute():
            raise ValueError(f"Working dir for channel {name!r} must be absolute: {path}")
        if not Path(path).is_dir():
            raise ValueError(f"Working dir for channel {name!r} does not exist: {path}")
        result[name] = path
    return result


def get_settings() -> RelaySettings:
    """Return a cached settings instance.

    Reads from environment variables and ``.env`` on first call, then returns
    the same object.  Call ``_get_settings_cached.cache_clear()`` in tests to
    force a re-read after overriding env vars.
    """
    return _get_settings_cached()


def _get_settings_cached() -> RelaySettings:
    """Inner function wrapped by lru_cache (allows type-safe cache_clear)."""
    return RelaySettings()


from functools import lru_cache  # noqa: E402

_get_settings_cached = lru_cache(maxsize=1)(_get_settings_cached)
