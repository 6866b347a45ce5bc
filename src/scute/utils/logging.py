import sys

from loguru import logger

from scute.settings import settings

# Logging Constants
LOG_FORMAT_CONSOLE = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[component]}</magenta> | "
    "<cyan>{name}</cyan> | "
    "<level>{message}</level>"
)
LOG_FORMAT_FILE = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[component]} | {name}:{line} | {message}"
LOG_ROTATION = "10 MB"
LOG_RETENTION = "10 days"
LOG_COMPRESSION = "zip"


def setup_logging(verbose: bool = False, component: str = "cli") -> None:
    """
    Configure loguru for one process.

    The CLI and the daemon write to separate files (`cli.log`, `daemon.log`)
    so a short-lived command never rotates the daemon's history away.

    Args:
        verbose (bool): If True, enables DEBUG level logging.
        component (str): Name of the process, used for the log file and the
                         `component` field of every record.
    """
    logger.remove()
    logger.configure(extra={"component": component})

    level = "DEBUG" if verbose or settings.debug else "INFO"

    # The CLI keeps stderr for warnings; rich output is what the user reads.
    console_level = level if component == "daemon" or verbose else "WARNING"
    logger.add(sys.stderr, level=console_level, format=LOG_FORMAT_CONSOLE)

    settings.log_dir.mkdir(parents=True, exist_ok=True)
    log_file_path = settings.log_dir / f"{component}.log"
    logger.add(
        log_file_path,
        level=level,
        format=LOG_FORMAT_FILE,
        rotation=LOG_ROTATION,
        retention=LOG_RETENTION,
        compression=LOG_COMPRESSION,
        enqueue=component == "daemon",
    )

    logger.debug(f"Logging initialized for {component}. Logs saved to: {log_file_path}")
