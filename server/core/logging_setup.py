import contextvars
import logging
import re
import sys
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

import colorama
from colorama import Fore, Style

from .config import settings

provider_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "provider_var", default=None
)
user_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "user_var", default=None
)
step_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "step_var", default="APP"
)

LOG_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}

URL_REGEX = re.compile(r'https?://[^/\s"\']+(/[^"\'\s<?#]*)?(\?[^"\'\s<#]*)?')

# Token fields echoed back in provider error bodies, JSON or form encoded.
SECRET_FIELD_REGEX = re.compile(
    r'("?(?:access_token|refresh_token|client_secret|code_verifier|id_token)"?\s*[:=]\s*"?)[^"&\s,}]+'
)
BEARER_REGEX = re.compile(r"(Bearer\s+)[A-Za-z0-9\-._~+/]+=*")


def redact_url(message: str) -> str:
    """
    Finds URLs in a log message and replaces them with just the path.
    Query strings carry OAuth state, codes and sometimes access tokens.
    """

    def replacer(match):
        path = match.group(1)
        return path if path else "/"

    return URL_REGEX.sub(replacer, message)


def redact_secrets(message: str) -> str:
    message = SECRET_FIELD_REGEX.sub(r"\1[REDACTED]", message)
    return BEARER_REGEX.sub(r"\1[REDACTED]", message)


class CustomFormatter(logging.Formatter):
    """
    A custom formatter that injects context variables and colors.
    """

    COLORS = {
        "timestamp": Fore.LIGHTBLACK_EX,
        "step": Fore.BLUE,
        "provider": Fore.CYAN,
        "user": Fore.MAGENTA,
        "reset": Style.RESET_ALL,
    }

    LOG_LEVEL_COLORS = {
        logging.DEBUG: Fore.CYAN,
        logging.INFO: Fore.GREEN,
        logging.WARNING: Fore.YELLOW,
        logging.ERROR: Fore.RED,
        logging.CRITICAL: Fore.RED + Style.BRIGHT,
    }

    def format(self, record):
        level_color = self.LOG_LEVEL_COLORS.get(record.levelno, self.COLORS["reset"])

        t = datetime.fromtimestamp(record.created)
        asctime = t.strftime("%Y-%m-%dT%H:%M:%S")
        msecs = f"{int(record.msecs):03d}"
        timestamp_str = f"[{asctime}.{msecs}]"

        record.step = step_var.get()

        log_parts = [
            f"{self.COLORS['timestamp']}{timestamp_str}{self.COLORS['reset']}",
            f"{level_color}[{record.levelname}]{self.COLORS['reset']}",
            f"{self.COLORS['step']}[{record.step}]{self.COLORS['reset']}",
        ]

        if provider := provider_var.get():
            log_parts.append(
                f"{self.COLORS['provider']} [provider={provider}]{self.COLORS['reset']}"
            )
        if user_id := user_var.get():
            log_parts.append(
                f"{self.COLORS['user']} [user={user_id}]{self.COLORS['reset']}"
            )

        record.message = record.getMessage()

        log_parts.append(f" {record.message}")

        formatted_message = "".join(log_parts)

        if record.exc_info:
            formatted_message += (
                f"\n{self.COLORS['reset']}{self.formatException(record.exc_info)}"
            )

        return redact_secrets(redact_url(formatted_message))


def setup_logging():
    """
    Configures the root logger for the application.
    """
    colorama.init()

    level_str = settings.LOGGING_LEVEL.upper()
    log_level = LOG_LEVELS.get(level_str, logging.INFO)

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(log_level)
    stdout_handler.addFilter(lambda record: record.levelno < logging.ERROR)
    stdout_handler.setFormatter(CustomFormatter())

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    stderr_handler.setFormatter(CustomFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    root_logger.addHandler(stdout_handler)
    root_logger.addHandler(stderr_handler)

    # httpx logs every request line at INFO, full URL included
    logging.getLogger("httpx").setLevel(logging.WARNING)


@contextmanager
def log_step(name: str):
    """Context manager to set the 'step' for all logs within it."""
    token = step_var.set(name)
    try:
        yield
    finally:
        step_var.reset(token)


@contextmanager
def log_context(provider: Optional[str] = None, user_id: Optional[str] = None):
    """Tags every log line inside the block with a provider and/or user."""
    provider_token = provider_var.set(provider) if provider else None
    user_token = user_var.set(user_id) if user_id else None
    try:
        yield
    finally:
        if user_token is not None:
            user_var.reset(user_token)
        if provider_token is not None:
            provider_var.reset(provider_token)
