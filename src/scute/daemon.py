import json
import time
from datetime import datetime

from loguru import logger
from rich.console import Console

from scute.errors import ScuteError
from scute.manager import SessionManager
from scute.settings import settings
from scute.utils.notifications import send_notification
from scute.utils.state import cleanup_state, write_state
from scute.utils.time import utcnow

console = Console()


def _read_command() -> dict | None:
    """Reads and removes the pending command file, if any."""
    if not settings.command_file.exists():
        return None

    try:
        with open(settings.command_file) as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        console.print(f"[red]Error reading command file: {e}[/red]")
        return None
    finally:
        settings.command_file.unlink(missing_ok=True)


def _handle_command(manager: SessionManager, command_data: dict) -> dict:
    """Runs one command from the CLI and returns its outcome for the state file."""
    cmd = command_data.get("command")
    key = command_data.get("preset")
    console.print(f"[bold blue]Received command:[/bold blue] {cmd}")

    try:
        if cmd == "lock":
            manager.activate(key)
        elif cmd == "unlock":
            manager.slide_unlock()
        elif cmd == "tapout":
            manager.tapout_unlock()
        elif cmd == "select":
            manager.select(key)
        elif cmd == "enable":
            manager.enable_schedule(key)
        elif cmd == "disable":
            manager.disable_schedule(key)
        elif cmd == "refresh":
            manager.on_foreground()
        else:
            logger.warning(f"Unknown command: {cmd}")
            return {"command": cmd, "ok": False, "message": f"Unknown command: {cmd}"}
    except ScuteError as e:
        logger.error(f"Command '{cmd}' failed: {e}")
        send_notification("scute", str(e))
        return {"command": cmd, "ok": False, "message": str(e)}

    return {"command": cmd, "ok": True, "message": None}


def _session_info(manager: SessionManager, now: datetime) -> dict | None:
    session = manager.session(refresh=False)
    if not session.is_locked:
        return None
    preset = session.preset
    return {
        "state": session.state.value,
        "preset_id": preset.id if preset else None,
        "preset_name": preset.name if preset else None,
        "mode": preset.mode.value if preset else None,
        "blocked_apps": preset.selected_apps if preset else [],
        "strict_mode": preset.strict_mode if preset else False,
        "is_scheduled": preset.is_scheduled if preset else False,
        "lock_started_at": session.lock.lock_started_at.isoformat(),
        "lock_ends_at": session.lock.lock_ends_at.isoformat() if session.lock.lock_ends_at else None,
        "remaining_secs": session.remaining_seconds(now),
        "elapsed_secs": session.elapsed_seconds(now),
    }


def run_daemon():
    """Main loop for the scute daemon."""
    manager = SessionManager.from_settings(settings)
    console.print("[bold green]scute daemon started...[/bold green]")
    console.print(f"Data directory: [cyan]{settings.data_dir}[/cyan]")
    console.print("Watching schedules, alarms and commands. Press Ctrl+C to stop.")

    manager.store.init_defaults()
    manager.on_process_start()
    last_command = None
    write_state(_session_info(manager, utcnow()))

    try:
        while True:
            now = utcnow()

            # Commands first, so an unlock is never delayed by schedule work.
            command_data = _read_command()
            if command_data:
                last_command = _handle_command(manager, command_data)

            # Presets edited by the CLI show up as a changed backend file.
            if manager.store.refresh_if_changed():
                manager.on_foreground(now)

            for preset_id in manager.gateway.pop_due_alarms(now):
                manager.on_alarm(preset_id, now)

            session = manager.session()
            if session.lock.is_timed:
                manager.countdown_tick(now)
                sleep_secs = settings.countdown_tick_seconds
            else:
                sleep_secs = settings.idle_poll_seconds

            write_state(_session_info(manager, now), last_command)
            time.sleep(sleep_secs)
    finally:
        console.print("\n[yellow]Stopping daemon...[/yellow]")
        cleanup_state()
