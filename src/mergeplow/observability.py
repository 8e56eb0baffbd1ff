from __future__ import annotations

import json
import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
import sys
from typing import Final, Mapping


_PACKAGE_LOGGER: Final[str] = "mergeplow"
_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s %(message)s"
_FIELD_LIMIT: Final[int] = 120
# What an event is about leads the line; remaining fields follow sorted.
_SUBJECT_FIELDS: Final[tuple[str, ...]] = ("repo_full_name", "pull_request", "pr_number")
_OUTCOME_ATTR: Final[str] = "mergeplow_outcome"


def configure_logging(verbose: str | None, *, state_dir: Path | None = None) -> None:
    """Route the package's logs to stderr and, given `state_dir`, to a file.

    `"high"` shows everything down to DEBUG. `"low"` shows warnings and the
    events logged with `outcome=True`: what happened to a pull request, not
    how. None silences the package. The file is `<state_dir>/logs/mergeplow.log`,
    rotated at UTC midnight.
    """
    logger = logging.getLogger(_PACKAGE_LOGGER)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if verbose is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return
    if verbose not in ("low", "high"):
        raise ValueError(f"Unsupported verbose mode: {verbose!r}")

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if state_dir is not None:
        logs_dir = state_dir / "logs"
        logs_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            TimedRotatingFileHandler(
                logs_dir / "mergeplow.log", when="midnight", utc=True, encoding="utf-8"
            )
        )
    for handler in handlers:
        handler.setFormatter(logging.Formatter(_FORMAT))
        if verbose == "low":
            handler.addFilter(_is_outcome)
        logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose == "high" else logging.INFO)


def log_event(
    logger: logging.Logger,
    event: str,
    *,
    level: int = logging.INFO,
    outcome: bool = False,
    **fields: object,
) -> None:
    logger.log(level, render_event(event, fields), extra={_OUTCOME_ATTR: outcome})


def render_event(event: str, fields: Mapping[str, object]) -> str:
    subject = [key for key in _SUBJECT_FIELDS if key in fields]
    rest = sorted(key for key in fields if key not in _SUBJECT_FIELDS)
    parts = [f"event={_render_value(event)}"]
    parts.extend(f"{key}={_render_value(fields[key])}" for key in subject + rest)
    return " ".join(parts)


def _render_value(value: object) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return str(value)
    if not isinstance(value, str):
        return f"<{type(value).__name__}>"
    text = " ".join(value.split())
    if not text:
        return "<empty>"
    if len(text) > _FIELD_LIMIT:
        text = f"{text[:_FIELD_LIMIT]}..."
    return json.dumps(text) if " " in text or "=" in text else text


def _is_outcome(record: logging.LogRecord) -> bool:
    return record.levelno >= logging.WARNING or bool(getattr(record, _OUTCOME_ATTR, False))
