import subprocess

import psutil
from loguru import logger

from scute.utils.notifications import send_notification


def kill_processes(process_names: list[str]) -> set[str]:
    """Kills every running process whose name is in `process_names`."""
    killed_processes = set()
    process_names_set = set(process_names)

    for proc in psutil.process_iter(["name"]):
        try:
            if proc.info["name"] in process_names_set:
                logger.info(f"Killing {proc.info['name']} (PID: {proc.pid})")
                proc.kill()
                killed_processes.add(proc.info["name"])
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue

    for killed_name in killed_processes:
        send_notification(f"Blocked {killed_name}", "This app is blocked by your active preset.")
    return killed_processes


# (name, status command, predicate on stdout)
_LOCK_CHECKS = [
    ("xdg-screensaver", ["xdg-screensaver", "status"], lambda out: "is locked" in out),
    (
        "loginctl",
        ["loginctl", "show-session", "self", "-p", "LockedHint", "--value"],
        lambda out: out.strip() == "yes",
    ),
    (
        "gdbus-gnome",
        [
            "gdbus",
            "call",
            "--session",
            "--dest",
            "org.gnome.ScreenSaver",
            "--object-path",
            "/org/gnome/ScreenSaver",
            "--method",
            "org.gnome.ScreenSaver.GetActive",
        ],
        lambda out: "(true,)" in out,
    ),
]

_LOCK_COMMANDS = [
    ["loginctl", "lock-session"],
    ["xdg-screensaver", "lock"],
    ["gnome-screensaver-command", "-l"],
]

_screen_lock_method_cache: str | None = None
_screen_lock_command_cache: list[str] | None = None


def is_screen_locked() -> bool:
    """Checks if the screen is locked, trying the last working method first."""
    global _screen_lock_method_cache

    checks = sorted(_LOCK_CHECKS, key=lambda c: c[0] != _screen_lock_method_cache)
    for name, command, predicate in checks:
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=2)
        except (FileNotFoundError, subprocess.TimeoutExpired):
            if name == _screen_lock_method_cache:
                _screen_lock_method_cache = None
            continue
        if predicate(result.stdout):
            _screen_lock_method_cache = name
            return True
    return False


def lock_screen() -> bool:
    """Locks the screen with the first available command."""
    global _screen_lock_command_cache
    logger.debug("Attempting to lock screen...")

    commands = _LOCK_COMMANDS
    if _screen_lock_command_cache:
        commands = [_screen_lock_command_cache] + [
            c for c in _LOCK_COMMANDS if c != _screen_lock_command_cache
        ]
    for command in commands:
        try:
            subprocess.run(command, check=False, timeout=5)
        except (FileNotFoundError, subprocess.TimeoutExpired):
            if command == _screen_lock_command_cache:
                _screen_lock_command_cache = None
            continue
        _screen_lock_command_cache = command
        return True
    logger.warning("No screen lock command available.")
    return False
