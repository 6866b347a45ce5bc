import json
import subprocess
import time
from datetime import timedelta

import typer
from rich.console import Console
from rich.table import Table

from scute.errors import PresetNotFound, ScuteError
from scute.manager import SessionManager
from scute.schema import Preset, PresetMode, RepeatUnit
from scute.settings import load_settings, settings
from scute.utils.logging import setup_logging
from scute.utils.paths import SERVICE_NAME, systemd_unit_path
from scute.utils.state import is_daemon_running, read_state
from scute.utils.time import format_remaining, parse_timestamp, utcnow

app = typer.Typer(help="scute - Blocking session orchestrator")
console = Console()


def get_manager() -> SessionManager:
    return SessionManager.from_settings(load_settings())


def fail(message: str) -> None:
    console.print(f"[red]Error:[/red] {message}")
    raise typer.Exit(1)


def process_list(values: list[str] | None) -> list[str]:
    """Processes a list of strings potentially containing commas into a clean list."""
    if not values:
        return []
    processed = []
    for v in values:
        processed.extend(x.strip() for x in v.split(",") if x.strip())
    return processed


def parse_window(start: str, end: str):
    start_at = parse_timestamp(start)
    end_at = parse_timestamp(end)
    if end_at <= start_at:
        # '23:00' to '01:00' crosses midnight
        end_at += timedelta(days=1)
    return start_at, end_at


def send_command(command: dict, wait_secs: float = 5.0) -> None:
    """Hands a session command to the running daemon and reports its outcome."""
    if not is_daemon_running():
        fail("Daemon is not running. Please start it with `scute start`.")

    if settings.command_file.exists():
        mtime = settings.command_file.stat().st_mtime
        if time.time() - mtime > settings.command_stale_seconds:
            console.print("[yellow]Found stale command file, removing...[/yellow]")
            settings.command_file.unlink(missing_ok=True)
        else:
            fail("Another command is already pending. Please wait a moment before trying again.")

    try:
        settings.data_dir.mkdir(parents=True, exist_ok=True)
        with open(settings.command_file, "w") as f:
            json.dump(command, f)
    except OSError as e:
        fail(f"Could not send command to daemon: {e}")

    deadline = time.time() + wait_secs
    while settings.command_file.exists() and time.time() < deadline:
        time.sleep(0.2)
    if settings.command_file.exists():
        console.print("[yellow]Command sent; the daemon has not picked it up yet.[/yellow]")
        return

    # Give the daemon one loop to write the outcome.
    time.sleep(0.5)
    state = read_state() or {}
    outcome = state.get("last_command") or {}
    if outcome.get("command") == command["command"] and not outcome.get("ok", True):
        fail(outcome.get("message") or "Command failed")
    console.print(f"[green]Done:[/green] {command['command']}")


def build_preset(
    name: str,
    apps: list[str] | None,
    sites: list[str] | None,
    mode: PresetMode,
    days: int,
    hours: int,
    minutes: int,
    seconds: int,
    until: str | None,
    strict: bool,
    tapout: bool,
    block_settings: bool,
    start: str | None,
    end: str | None,
    repeat_unit: RepeatUnit | None,
    repeat_every: int | None,
    base: Preset | None = None,
) -> Preset:
    data = base.model_dump() if base else {}
    data["name"] = name
    if apps is not None:
        data["selected_apps"] = process_list(apps)
    if sites is not None:
        data["blocked_websites"] = process_list(sites)
    data["mode"] = mode
    data["strict_mode"] = strict
    data["allow_emergency_tapout"] = tapout
    data["block_settings"] = block_settings

    if until is not None:
        data.update(target_date=parse_timestamp(until), no_time_limit=False)
    elif days or hours or minutes or seconds:
        data.update(
            timer_days=days,
            timer_hours=hours,
            timer_minutes=minutes,
            timer_seconds=seconds,
            target_date=None,
            no_time_limit=False,
        )

    if start is not None or end is not None:
        if start is None or end is None:
            raise ValueError("A schedule needs both --start and --end")
        window_start, window_end = parse_window(start, end)
        data.update(
            is_scheduled=True,
            schedule_start_date=window_start,
            schedule_end_date=window_end,
        )
    if repeat_unit is not None:
        data.update(repeat_enabled=True, repeat_unit=repeat_unit, repeat_interval=repeat_every or 1)

    return Preset.model_validate(data)


def describe_duration(preset: Preset) -> str:
    if preset.is_scheduled:
        return "Schedule"
    if preset.is_untimed:
        return "No limit"
    if preset.target_date is not None:
        return f"Until {preset.target_date.astimezone():%Y-%m-%d %H:%M}"
    return format_remaining(int(preset.timer_duration.total_seconds()))


def describe_schedule(preset: Preset) -> str:
    if not preset.is_scheduled:
        return "-"
    start, end = preset.window
    text = f"{start.astimezone():%a %H:%M} - {end.astimezone():%a %H:%M}"
    if preset.is_recurring:
        text += f" every {preset.repeat_interval} {preset.repeat_unit.value}"
    return text


@app.command()
def add(
    name: str = typer.Argument(..., help="Preset name"),
    apps: list[str] | None = typer.Option(None, "--apps", "-a", help="Apps to block (comma separated)"),
    sites: list[str] | None = typer.Option(None, "--sites", "-w", help="Websites to block (comma separated)"),
    mode: PresetMode = typer.Option(PresetMode.SPECIFIC, "--mode", "-m", help="'all' locks the screen"),
    days: int = typer.Option(0, "--days", min=0),
    hours: int = typer.Option(0, "--hours", min=0),
    minutes: int = typer.Option(0, "--minutes", min=0),
    seconds: int = typer.Option(0, "--seconds", min=0),
    until: str | None = typer.Option(None, "--until", help="Absolute end time (ISO or e.g. 8pm)"),
    strict: bool = typer.Option(False, "--strict", help="Refuse early unlocks while the timer runs"),
    tapout: bool = typer.Option(True, "--tapout/--no-tapout", help="Allow emergency tapouts"),
    block_settings: bool = typer.Option(False, "--block-settings"),
    start: str | None = typer.Option(None, "--start", help="Schedule start (ISO or e.g. 8pm)"),
    end: str | None = typer.Option(None, "--end", help="Schedule end (ISO or e.g. 9pm)"),
    repeat_unit: RepeatUnit | None = typer.Option(None, "--repeat", help="Repeat the schedule every unit"),
    repeat_every: int | None = typer.Option(None, "--every", min=1, help="Repeat interval"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Add a new preset. Scheduled presets are saved disabled; use `enable`."""
    setup_logging(verbose=verbose)
    manager = get_manager()
    try:
        preset = build_preset(
            name, apps, sites, mode, days, hours, minutes, seconds, until,
            strict, tapout, block_settings, start, end, repeat_unit, repeat_every,
        )
        manager.save_preset(preset, evaluate=False)
    except (ValueError, ScuteError) as e:
        fail(str(e))
    console.print(f"[green]Successfully added preset:[/green] {preset.name} ({preset.id})")


@app.command()
def edit(
    key: str = typer.Argument(..., help="Preset name or id"),
    name: str | None = typer.Option(None, "--name", "-n"),
    apps: list[str] | None = typer.Option(None, "--apps", "-a"),
    sites: list[str] | None = typer.Option(None, "--sites", "-w"),
    mode: PresetMode | None = typer.Option(None, "--mode", "-m"),
    days: int = typer.Option(0, "--days", min=0),
    hours: int = typer.Option(0, "--hours", min=0),
    minutes: int = typer.Option(0, "--minutes", min=0),
    seconds: int = typer.Option(0, "--seconds", min=0),
    until: str | None = typer.Option(None, "--until"),
    strict: bool | None = typer.Option(None, "--strict/--no-strict"),
    tapout: bool | None = typer.Option(None, "--tapout/--no-tapout"),
    block_settings: bool | None = typer.Option(None, "--block-settings/--no-block-settings"),
    start: str | None = typer.Option(None, "--start"),
    end: str | None = typer.Option(None, "--end"),
    repeat_unit: RepeatUnit | None = typer.Option(None, "--repeat"),
    repeat_every: int | None = typer.Option(None, "--every", min=1),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Edit a preset. The preset that is currently blocking cannot be edited."""
    setup_logging(verbose=verbose)
    manager = get_manager()
    try:
        existing = manager.find(key)
        preset = build_preset(
            name or existing.name,
            apps,
            sites,
            mode or existing.mode,
            days,
            hours,
            minutes,
            seconds,
            until,
            existing.strict_mode if strict is None else strict,
            existing.allow_emergency_tapout if tapout is None else tapout,
            existing.block_settings if block_settings is None else block_settings,
            start,
            end,
            repeat_unit,
            repeat_every,
            base=existing,
        )
        saved = manager.save_preset(preset, evaluate=False)
    except (ValueError, ScuteError) as e:
        fail(str(e))
    if saved.is_scheduled and existing.is_active and not saved.is_active:
        console.print("[yellow]The new window overlaps another schedule; the preset was disabled.[/yellow]")
    console.print(f"[green]Preset updated:[/green] {saved.name}")


@app.command(name="list")
def list_presets(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """List all presets."""
    setup_logging(verbose=verbose)
    manager = get_manager()
    try:
        presets = manager.presets()
        session = manager.session(refresh=False)
    except ScuteError as e:
        fail(str(e))

    if not presets:
        console.print("[yellow]No presets found. Add one with `scute add`.[/yellow]")
        return

    enforced_id = session.preset.id if session.preset else None
    table = Table(title="Presets")
    table.add_column("Name", style="cyan")
    table.add_column("Mode", style="yellow")
    table.add_column("Duration", style="blue")
    table.add_column("Schedule", style="magenta")
    table.add_column("Blocked Apps", style="magenta")
    table.add_column("Sites", justify="right")
    table.add_column("Flags", style="white")
    table.add_column("Status", style="green")

    for p in presets:
        flags = [f for f, on in (("strict", p.strict_mode), ("tapout", p.allow_emergency_tapout)) if on]
        if p.id == enforced_id:
            state = "[bold red]Blocking[/bold red]"
        elif p.is_active:
            state = "Enabled" if p.is_scheduled else "Selected"
        else:
            state = "-"
        table.add_row(
            p.name,
            "Full Lock" if p.mode == PresetMode.ALL else "Apps Only",
            describe_duration(p),
            describe_schedule(p),
            ", ".join(p.selected_apps) or "None",
            str(len(p.blocked_websites)),
            ", ".join(flags),
            state,
        )
    console.print(table)


@app.command()
def remove(
    key: str = typer.Argument(..., help="Preset name or id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Remove a preset."""
    setup_logging(verbose=verbose)
    manager = get_manager()
    try:
        preset = manager.delete_preset(key)
    except ScuteError as e:
        fail(str(e))
    console.print(f"[green]Removed preset:[/green] {preset.name}")


@app.command()
def enable(
    key: str = typer.Argument(..., help="Scheduled preset name or id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Enable a scheduled preset."""
    setup_logging(verbose=verbose)
    manager = get_manager()
    try:
        preset = manager.enable_schedule(key, evaluate=False)
    except ScuteError as e:
        fail(str(e))
    start = preset.schedule_start_date.astimezone()
    console.print(f"[green]Schedule enabled:[/green] {preset.name} starts {start:%Y-%m-%d %H:%M}")


@app.command()
def disable(
    key: str = typer.Argument(..., help="Scheduled preset name or id"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Disable a scheduled preset."""
    setup_logging(verbose=verbose)
    manager = get_manager()
    try:
        preset = manager.disable_schedule(key)
    except ScuteError as e:
        fail(str(e))
    console.print(f"[green]Schedule disabled:[/green] {preset.name}")


@app.command()
def select(
    key: str | None = typer.Argument(None, help="Preset name or id; omit to clear"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Make a preset the current one without starting a block."""
    setup_logging(verbose=verbose)
    if is_daemon_running():
        send_command({"command": "select", "preset": key})
        return
    manager = get_manager()
    try:
        manager.select(key)
    except ScuteError as e:
        fail(str(e))
    console.print(f"[green]Current preset:[/green] {key or 'none'}")


@app.command()
def lock(
    key: str | None = typer.Argument(None, help="Preset name or id; defaults to the current preset"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Start blocking with a preset via the running daemon."""
    setup_logging(verbose=verbose)
    if key is None:
        manager = get_manager()
        try:
            manager.session()
        except ScuteError as e:
            fail(str(e))
        current = manager.machine.current_preset
        if current is None:
            fail("No preset selected. Pass a preset name or use `scute select`.")
        key = current.id
    else:
        try:
            get_manager().find(key)
        except PresetNotFound as e:
            fail(str(e))
    send_command({"command": "lock", "preset": key})


@app.command()
def unlock(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """End the current block (not allowed for strict presets with a timer)."""
    setup_logging(verbose=verbose)
    send_command({"command": "unlock"})


@app.command()
def tapout(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """End the current block using an emergency tapout."""
    setup_logging(verbose=verbose)
    try:
        remaining = get_manager().tapout_status().remaining
    except ScuteError as e:
        fail(str(e))
    if remaining <= 0:
        fail("You have no emergency tapouts remaining")
    if not typer.confirm(f"Use one of your {remaining} emergency tapouts?"):
        raise typer.Abort()
    send_command({"command": "tapout"})


@app.command()
def config(
    user: str | None = typer.Option(None, "--user", "-u", help="Identity the presets belong to"),
    io_timeout: float | None = typer.Option(None, "--io-timeout", help="Seconds before a backend or engine call gives up"),
    enforce_interval: float | None = typer.Option(None, "--enforce-interval", help="Seconds between enforcement checks"),
    idle_poll: float | None = typer.Option(None, "--idle-poll", help="Daemon poll interval while idle"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Configure the daemon."""
    setup_logging(verbose=verbose)
    current_settings = load_settings()

    if user is not None:
        current_settings.user_id = user
    if io_timeout is not None:
        if io_timeout <= 0:
            fail("The I/O timeout must be positive.")
        current_settings.io_timeout_seconds = io_timeout
    if enforce_interval is not None:
        current_settings.enforce_interval_seconds = enforce_interval
    if idle_poll is not None:
        current_settings.idle_poll_seconds = idle_poll

    current_settings.save()

    table = Table(title="Current Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("User", current_settings.user_id)
    table.add_row("Data Directory", str(current_settings.data_dir))
    table.add_row("I/O Timeout (s)", str(current_settings.io_timeout_seconds))
    table.add_row("Enforce Interval (s)", str(current_settings.enforce_interval_seconds))
    table.add_row("Idle Poll (s)", str(current_settings.idle_poll_seconds))
    table.add_row("Max Emergency Tapouts", str(current_settings.tapout_max))
    console.print(table)
    console.print("[green]Configuration saved![/green]")


@app.command()
def status(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Check the status of the daemon and the current block."""
    setup_logging(verbose=verbose)

    running = is_daemon_running()
    state = read_state() if running else None

    console.print("[bold cyan]scute - Daemon Status[/bold cyan]")
    status_text = "[bold green]● Running[/bold green]" if running else "[bold red]○ Stopped[/bold red]"
    console.print(f"Service Status: {status_text}")
    if state:
        console.print(f"Daemon PID: [magenta]{state.get('pid')}[/magenta]")

    manager = get_manager()
    try:
        session = manager.session()
        tapouts = manager.tapout_status()
    except ScuteError as e:
        fail(str(e))

    now = utcnow()
    if session.is_locked:
        preset = session.preset
        name = preset.name if preset else "unknown preset"
        console.print(f"\n[bold yellow]⚠️ BLOCKING: {name}[/bold yellow]")
        remaining = session.remaining_seconds(now)
        if remaining is not None:
            console.print(f"Time left: {format_remaining(remaining)}")
        else:
            console.print(f"Blocking for: {format_remaining(session.elapsed_seconds(now) or 0)}")
        if preset and preset.selected_apps:
            console.print(f"Blocking: [magenta]{', '.join(preset.selected_apps)}[/magenta]")
        if preset and preset.strict_mode:
            console.print("[red]Strict mode is on.[/red]")
    else:
        current = manager.machine.current_preset
        console.print(f"\nNo block currently active. Current preset: {current.name if current else 'none'}")

    refill = ""
    if tapouts.next_refill_at is not None:
        refill = f" (next refill {tapouts.next_refill_at.astimezone():%Y-%m-%d})"
    console.print(f"Emergency tapouts: {tapouts.remaining}{refill}")

    if not running:
        console.print("\n[dim]To start the daemon, run: [bold]scute start[/bold] or use systemd.[/dim]")


@app.command()
def start(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    daemonize: bool = typer.Option(
        False,
        "--daemonize",
        hidden=True,
        help="Internal flag for systemd to run the daemon directly.",
    ),
) -> None:
    """Starts and manages the scute daemon using systemd."""
    if daemonize:
        setup_logging(verbose=verbose, component="daemon")
        # This is the execution path for systemd. It runs the daemon in the
        # foreground from systemd's perspective.
        from scute.daemon import run_daemon

        console.print("Daemon process started directly.")
        run_daemon()
        return

    setup_logging(verbose=verbose)
    service_file = systemd_unit_path()
    if not service_file.exists():
        fail("systemd service file not found. Run the daemon with `scute start --daemonize` instead.")

    if is_daemon_running():
        console.print("[yellow]Daemon is already running.[/yellow]")
        return

    console.print("Daemon is not running. Attempting to start it via systemd...")

    try:
        subprocess.run(
            ["systemctl", "--user", "start", SERVICE_NAME],
            check=True,
            capture_output=True,
            text=True,
        )

        console.print("Waiting for daemon to initialize...")
        time.sleep(2)

        if is_daemon_running():
            console.print("[bold green]✔ Daemon started successfully via systemd.[/bold green]")
        else:
            console.print(
                "[bold red]✖ Error:[/bold red] Failed to start daemon. Check service "
                "status with `systemctl --user status scute.service` or logs with "
                "`journalctl --user -u scute.service`."
            )
    except FileNotFoundError:
        fail("`systemctl` command not found. This command requires a systemd-based OS.")
    except subprocess.CalledProcessError as e:
        console.print("[red]Error starting systemd service:[/red]")
        console.print(f"[dim]{e.stderr}[/dim]")
        raise typer.Exit(1) from None


if __name__ == "__main__":
    app()
