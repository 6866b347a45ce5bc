import json
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from scute.utils.paths import get_default_data_dir, get_default_log_dir


class Settings(BaseSettings):
    """Application-wide settings managed via .env and config.json."""

    app_name: str = "scute"
    debug: bool = Field(default=False, description="Master toggle for verbose logging")
    user_id: str = Field(default="local", description="Identity the presets belong to")

    # Paths
    data_dir: Path = Field(default_factory=get_default_data_dir)
    log_dir: Path = Field(default_factory=get_default_log_dir)

    def model_post_init(self, __context):
        # Ensure paths are absolute
        self.data_dir = self.data_dir.resolve()
        self.log_dir = self.log_dir.resolve()

    @property
    def state_file(self) -> Path:
        return self.data_dir / "state.json"

    @property
    def command_file(self) -> Path:
        return self.data_dir / "command.json"

    @property
    def backend_dir(self) -> Path:
        return self.data_dir / "users"

    @property
    def alarms_file(self) -> Path:
        return self.data_dir / "alarms.json"

    @property
    def tapout_journal_file(self) -> Path:
        return self.data_dir / "tapout_journal.json"

    @property
    def icon_path(self) -> str:
        return str(Path(__file__).resolve().parent / "resources" / "icon.png")

    # Read cache
    presets_cache_ttl_seconds: float = 30.0
    lock_cache_ttl_seconds: float = 10.0

    # Transitions
    io_timeout_seconds: float = 5.0
    activation_marker_seconds: float = 2.0

    # Daemon loop
    countdown_tick_seconds: float = 1.0
    idle_poll_seconds: float = 5.0
    command_stale_seconds: float = 30.0

    # Emergency tapouts
    tapout_max: int = 3
    tapout_refill_days: int = 14

    # Recurrence: occurrences skipped before a colliding recurring preset is disabled
    recurrence_horizon: int = 52

    # Enforcement engine
    enforce_interval_seconds: float = 2.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="SCUTE_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def save(self):
        """Saves current settings to config.json in data_dir."""
        config_path = self.data_dir / "config.json"
        self.data_dir.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json")
        with open(config_path, "w") as f:
            json.dump(data, f, indent=4)


_last_settings_mtime: float | None = None
_cached_settings: Settings | None = None


def load_settings() -> Settings:
    """Loads settings, merging with config.json if it exists."""
    global _last_settings_mtime, _cached_settings

    initial = Settings()
    config_path = initial.data_dir / "config.json"

    if not config_path.exists():
        _last_settings_mtime = None
        _cached_settings = initial
        return initial

    current_mtime = config_path.stat().st_mtime
    if _last_settings_mtime == current_mtime and _cached_settings is not None:
        return _cached_settings

    try:
        with open(config_path) as f:
            config_data = json.load(f)
        _cached_settings = Settings(**{**initial.model_dump(), **config_data})
        _last_settings_mtime = current_mtime
        return _cached_settings
    except (OSError, ValueError):
        _cached_settings = initial
        return initial


# The single source of truth for the app
settings = load_settings()
