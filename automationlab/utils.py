"""
Utility functions for automationlab.

Includes logging setup, retry with backoff, and console output helpers.
"""

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from rich.console import Console
from rich.logging import RichHandler

from automationlab.errors import TransientError


# Global console for pretty output
console = Console()
err_console = Console(stderr=True)

LOGGER_NAME = "automationlab"


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "pretty",
    log_file: Optional[Path] = None,
    console_output: bool = True,
) -> logging.Logger:
    """
    Set up logging for a CLI invocation.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: "structured" (JSON) or "pretty" (human-readable)
        log_file: Optional path to a log file (always JSON lines)
        console_output: Also log to the console (stderr)

    Returns:
        Configured logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    logger.handlers = []  # Clear existing handlers

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(StructuredFormatter())
        logger.addHandler(file_handler)

    if console_output:
        if log_format == "pretty":
            console_handler = RichHandler(console=err_console, rich_tracebacks=True, show_time=False, show_path=False)
        elif log_format == "structured":
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(StructuredFormatter())
        else:
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        logger.addHandler(console_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    EXTRA_FIELDS = ("workspace", "step", "resource", "resource_id")

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for name in self.EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def retry_with_backoff(
    func: Callable,
    max_attempts: int = 3,
    backoff_seconds: float = 2.0,
    backoff_multiplier: float = 2.0,
    retry_on: tuple = (TransientError,),
    logger: Optional[logging.Logger] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Retry a function with exponential backoff.

    Only exceptions listed in retry_on are retried; anything else
    propagates immediately.

    Args:
        func: Function to retry
        max_attempts: Maximum number of attempts
        backoff_seconds: Initial backoff time in seconds
        backoff_multiplier: Multiplier for each retry
        retry_on: Exception types that are worth another attempt
        logger: Logger for retry messages
        sleep: Sleep function (injectable for tests)

    Returns:
        Result of successful function call

    Raises:
        Exception: The last error once retries are exhausted
    """
    attempt = 1
    wait_time = backoff_seconds

    while True:
        try:
            return func()

        except retry_on as e:
            if attempt >= max_attempts:
                if logger:
                    logger.error(f"All {max_attempts} attempts failed: {e}")
                raise

            if logger:
                logger.warning(
                    f"Attempt {attempt}/{max_attempts} failed: {e}. Retrying in {wait_time:.0f}s..."
                )

            sleep(wait_time)
            wait_time *= backoff_multiplier
            attempt += 1


def format_duration(seconds: float) -> str:
    """
    Format duration in human-readable format.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "2m 30s")
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes}m"


def print_banner(text: str) -> None:
    """Print a banner with text."""
    console.print()
    console.rule(f"[bold blue]{text}[/bold blue]")
    console.print()


def print_success(text: str) -> None:
    console.print(f"[bold green]✓[/bold green] {text}")


def print_error(text: str) -> None:
    err_console.print(f"[bold red]✗[/bold red] {text}")


def print_warning(text: str) -> None:
    console.print(f"[bold yellow]⚠[/bold yellow] {text}")


def print_info(text: str) -> None:
    console.print(f"[bold blue]ℹ[/bold blue] {text}")
