from __future__ import annotations

import json
import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
import sys
from typing import Final, Literal, cast


ROOT_LOGGER: Final[str] = "ghcherry"
LOG_FILENAME: Final[str] = "gh-cherry.log"
_LINE_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s %(message)s"
_VALUE_LIMIT: Final[int] = 120

# Events that still reach the operator at low verbosity. Warnings always do.
KEY_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "selection_finished",
        "cherry_pick_conflict",
        "cherry_pick_applied",
        "change_request_applied",
        "change_request_aborted",
        "label_update_failed",
        "summary_comment_failed",
    }
)

VerboseMode = Literal["low", "high"]


def configure_logging(verbose: bool | str | None, *, state_dir: Path | None = None) -> None:
    """Route ``ghcherry.*`` loggers to stderr, and optionally to a log file.

    ``verbose`` is ``None``/``False`` for silence, ``"low"`` for key events and
    warnings only, ``"high"``/``True`` for everything. With ``state_dir`` set,
    the same lines go to ``<state_dir>/logs/gh-cherry.log``, rotated at UTC
    midnight.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.propagate = False
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()

    mode = verbose_mode(verbose)
    if mode is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if state_dir is not None:
        logs_dir = state_dir / "logs"
        logs_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            TimedRotatingFileHandler(
                logs_dir / LOG_FILENAME, when="midnight", utc=True, encoding="utf-8"
            )
        )
    for handler in handlers:
        handler.setFormatter(logging.Formatter(_LINE_FORMAT))
        if mode == "low":
            handler.addFilter(KeyEventFilter())
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None or verbose is False:
        return None
    if verbose is True:
        return "high"
    normalized = verbose.strip().lower()
    if normalized not in ("low", "high"):
        raise ValueError(f"Unsupported verbose mode: {verbose!r}")
    return cast(VerboseMode, normalized)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(format_event(event, fields), extra={"event": event})


def log_warning_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.warning(format_event(event, fields), extra={"event": event})


def format_event(event: str, fields: dict[str, object]) -> str:
    """Render ``event=<name>`` followed by the fields as sorted ``key=value`` pairs."""
    pairs = [("event", event), *sorted(fields.items())]
    return " ".join(f"{key}={_render(value)}" for key, value in pairs)


def _render(value: object) -> str:
    if value is None:
        text = "null"
    elif isinstance(value, bool):
        text = str(value).lower()
    elif isinstance(value, int | float):
        text = str(value)
    elif isinstance(value, str):
        text = " ".join(value.split())
    elif isinstance(value, frozenset | set):
        text = ",".join(str(item) for item in sorted(value))
    elif isinstance(value, tuple | list):
        text = ",".join(str(item) for item in value)
    else:
        return f"<{type(value).__name__}>"

    if not text:
        return "<empty>"
    if len(text) > _VALUE_LIMIT:
        text = text[:_VALUE_LIMIT] + "..."
    if "=" in text or any(ch.isspace() for ch in text):
        return json.dumps(text)
    return text


class KeyEventFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        return getattr(record, "event", None) in KEY_EVENTS
