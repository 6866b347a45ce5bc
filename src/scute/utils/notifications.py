import subprocess

from loguru import logger

from scute.settings import settings


def send_notification(summary: str, body: str):
    """Sends a desktop notification using notify-send."""
    logger.info(f"Sending notification: {summary} | {body}")
    cmd = [
        "notify-send",
        summary,
        body,
        "-a",
        settings.app_name,
        "-i",
        settings.icon_path,
    ]
    try:
        subprocess.run(cmd, check=False, timeout=5)
    except FileNotFoundError:
        logger.debug("notify-send not found. Install libnotify-bin.")
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.error(f"Failed to send notification: {e}")
