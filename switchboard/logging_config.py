"""Logging configuration for switchboard.

Routes each framework subsystem to its own rotating log file, scrubs
bot credentials from every event, and wires structlog on top of the
stdlib logging hierarchy.

Subsystem hierarchy (stdlib dotted names, structlog wraps them):
    root                  → ConsoleHandler (terminal)
      └─ switchboard      → RotatingFileHandler → switchboard.log (combined)
           ├─ switchboard.dispatch → RFH → dispatch.log
           ├─ switchboard.events   → RFH → events.log
           ├─ switchboard.plugins  → RFH → plugins.log
           └─ switchboard.store    → RFH → store.log
"""

import logging
import logging.handlers
import re
import sys
from pathlib import Path
from typing import Any, Dict

import structlog

SUBSYSTEMS = ("dispatch", "events", "plugins", "store")

LOGGER_PREFIX = "switchboard"

# ---------------------------------------------------------------------------
# Secret sanitization
# ---------------------------------------------------------------------------

_SECRET_PATTERNS = [
    # Discord-style bot tokens: <id>.<timestamp>.<hmac>
    re.compile(r"[MNO][a-zA-Z0-9_-]{23,27}\.[a-zA-Z0-9_-]{6}\.[a-zA-Z0-9_-]{27,}"),
    # Webhook URLs carry their secret in the path
    re.compile(r"https://[^\s]*/api/webhooks/\d+/[a-zA-Z0-9_-]+"),
    # Bearer / Bot authorization header values
    re.compile(r"(?:Bearer|Bot)\s+[a-zA-Z0-9_./-]{20,}"),
]

_REDACTED = "***REDACTED***"


def _scrub_value(value: str) -> str:
    """Scrub credentials from a single string value."""
    for pattern in _SECRET_PATTERNS:
        value = pattern.sub(_REDACTED, value)
    return value


def sanitize_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """structlog processor that scrubs bot tokens and webhook secrets.

    Walks all string values in the event dict (one level into lists,
    tuples and dicts) and replaces matches with a redacted placeholder.
    """
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = _scrub_value(value)
        elif isinstance(value, (list, tuple)):
            event_dict[key] = type(value)(
                _scrub_value(v) if isinstance(v, str) else v
                for v in value
            )
        elif isinstance(value, dict):
            event_dict[key] = {
                k: _scrub_value(v) if isinstance(v, str) else v
                for k, v in value.items()
            }
    return event_dict


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

_FILE_PROCESSORS = [
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.format_exc_info,
    structlog.dev.ConsoleRenderer(colors=False),
]


def _level(name: str, default: int) -> int:
    return getattr(logging, name.upper(), default) if name else default


def _reset(name: str, level: int) -> logging.Logger:
    target = logging.getLogger(name)
    for handler in target.handlers:
        handler.close()
    target.handlers.clear()
    target.setLevel(level)
    target.propagate = True
    return target


def setup_logging(config=None) -> None:
    """Configure structured logging with one rotating file per subsystem.

    Every ``switchboard.<subsystem>`` event lands in its own file, in
    the combined ``switchboard.log`` and on the console. Without a log
    directory only the console is used.

    Args:
        config: Optional Config. The first call (before config loads)
                uses defaults and leaves loggers uncached; the second
                call applies the configured levels and caches them.
    """
    if config is not None:
        log_dir = config.log_dir
        level = _level(config.logging_level, logging.INFO)
        subsystem_levels = config.logging_subsystem_levels
        rotation = {
            "maxBytes": config.logging_max_file_size_mb * 1024 * 1024,
            "backupCount": config.logging_backup_count,
        }
    else:
        log_dir = Path.cwd() / "logs"
        level = logging.INFO
        subsystem_levels = {}
        rotation = {"maxBytes": 10 * 1024 * 1024, "backupCount": 5}

    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        print(
            f"WARNING: Cannot create log directory {log_dir}: {exc}. "
            "Falling back to console-only logging.",
            file=sys.stderr,
        )
        log_dir = None

    formatter = structlog.stdlib.ProcessorFormatter(processors=_FILE_PROCESSORS)

    def add_file(target: logging.Logger, filename: str, file_level: int) -> None:
        if log_dir is None:
            return
        handler = logging.handlers.RotatingFileHandler(
            log_dir / filename, encoding="utf-8", **rotation
        )
        handler.setLevel(file_level)
        handler.setFormatter(formatter)
        target.addHandler(handler)

    # Root: console only; handlers do the level filtering
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.handlers.clear()
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    root.addHandler(console)

    add_file(_reset(LOGGER_PREFIX, logging.DEBUG), "switchboard.log", level)

    for subsystem in SUBSYSTEMS:
        sub_level = _level(subsystem_levels.get(subsystem, ""), level)
        add_file(_reset(f"{LOGGER_PREFIX}.{subsystem}", sub_level), f"{subsystem}.log", sub_level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            sanitize_secrets,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=config is not None,
    )
