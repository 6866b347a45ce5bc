import json
import os
from datetime import datetime

from loguru import logger

from scute.settings import settings


_last_written_state: dict | None = None


def write_state(session_info: dict | None = None, last_command: dict | None = None):
    """Writes the current daemon state to a file for the 'status' command."""
    global _last_written_state
    state = {
        "pid": os.getpid(),
        "session": session_info,
        "last_command": last_command,
    }

    if state == _last_written_state:
        return  # No change, no need to write

    try:
        settings.data_dir.mkdir(parents=True, exist_ok=True)
        with open(settings.state_file, "w") as f:
            json.dump({**state, "last_update": datetime.now().isoformat()}, f, indent=4)
        _last_written_state = state
    except OSError as e:
        logger.error(f"Failed to write daemon state: {e}")


def read_state() -> dict | None:
    if not settings.state_file.exists():
        return None
    try:
        with open(settings.state_file) as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.debug(f"Could not read daemon state: {e}")
        return None


def is_daemon_running() -> bool:
    """Checks if the daemon is running via state file and PID."""
    state = read_state()
    pid = state.get("pid") if state else None
    if not pid:
        return False
    try:
        os.kill(pid, 0)  # Check if process exists
        return True
    except OSError:
        return False


def cleanup_state():
    """Removes the state file when the daemon stops."""
    global _last_written_state
    _last_written_state = None
    try:
        settings.state_file.unlink(missing_ok=True)
    except OSError as e:
        logger.error(f"Failed to remove daemon state: {e}")
