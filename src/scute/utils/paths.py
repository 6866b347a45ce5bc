from pathlib import Path

from platformdirs import user_config_dir, user_data_dir, user_log_dir

APP_NAME = "scute"
SERVICE_NAME = f"{APP_NAME}.service"


def source_checkout() -> Path | None:
    """Returns the repository root when running from a git checkout, else None."""
    root = Path(__file__).resolve().parents[3]
    if (root / "pyproject.toml").exists() and (root / ".git").exists():
        return root
    return None


def get_default_data_dir() -> Path:
    """Presets, lock status, alarms and the command file live here."""
    root = source_checkout()
    return root / "outputs" if root else Path(user_data_dir(appname=APP_NAME))


def get_default_log_dir() -> Path:
    root = source_checkout()
    return root / "outputs" / "logs" if root else Path(user_log_dir(appname=APP_NAME))


def systemd_unit_path() -> Path:
    """Location of the user unit that `scute start` hands the daemon to."""
    return Path(user_config_dir("systemd")) / "user" / SERVICE_NAME
