from __future__ import annotations

import json
import logging
import os
from contextvars import ContextVar
from logging import Filter
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping

from rich.console import Console
from rich.logging import RichHandler


_SCOPE: ContextVar[str | None] = ContextVar("scope", default=None)
_USER_ID: ContextVar[str | None] = ContextVar("user_id", default=None)


class _ContextLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that merges contextvars with per-call extras."""

    def process(self, msg: str, kwargs: MutableMapping[str, Any]):
        extra: Dict[str, Any] = dict(kwargs.get("extra") or {})

        module_name = self.extra.get("module_name") or self.logger.name
        extra.setdefault("module_name", module_name)

        scope = kwargs.pop("scope", None) or extra.pop("scope", None)
        user_id = kwargs.pop("user_id", None) or extra.pop("user_id", None)
        stage = kwargs.pop("stage", None) or extra.pop("stage", None)
        payload = kwargs.pop("payload", None) or extra.pop("payload", None)

        if scope is None:
            scope = _SCOPE.get()
        if user_id is None:
            user_id = _USER_ID.get()

        if scope is not None:
            extra.setdefault("scope", scope)
        if user_id is not None:
            extra.setdefault("user_id", user_id)
        if stage is not None:
            extra.setdefault("stage", stage)
        if payload is not None:
            extra.setdefault("payload", payload)

        kwargs["extra"] = extra
        return msg, kwargs


class _CompactFormatter(logging.Formatter):
    """Formatter that renders compact records for console and file output."""

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        time_str = self.formatTime(record, self.datefmt)
        module_name = getattr(record, "module_name", record.name)
        level = record.levelname
        message = record.message

        context_parts: list[str] = []
        scope = getattr(record, "scope", None)
        user_id = getattr(record, "user_id", None)
        stage = getattr(record, "stage", None)
        payload = getattr(record, "payload", None)

        if scope:
            context_parts.append(f"scope={scope}")
        if user_id:
            context_parts.append(f"user_id={user_id}")
        if stage:
            context_parts.append(f"stage={stage}")
        if payload:
            payload_repr = _stringify_payload(payload)
            if payload_repr:
                context_parts.append(payload_repr)

        context_suffix = f" ({', '.join(context_parts)})" if context_parts else ""

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            message = f"{message}\n{record.exc_text}"

        return f"[{time_str}] [{level}] [{module_name}] {message}{context_suffix}"


def _stringify_payload(payload: Any) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    try:
        return json.dumps(payload, ensure_ascii=False, default=str)
    except TypeError:
        return str(payload)


class _DomainInfoFilter(Filter):
    """Allow INFO records only when marked as domain milestones."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: D401 - standard interface
        if record.levelno != logging.INFO:
            return True
        return bool(getattr(record, "domain", False))


def setup_logging() -> logging.Logger:
    """Configure logging once for the entire process."""

    root = logging.getLogger()
    if getattr(root, "_penpal_configured", False):
        return root

    for handler in list(root.handlers):
        root.removeHandler(handler)

    log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    try:
        log_level = getattr(logging, log_level_name)
    except AttributeError:
        log_level = logging.INFO

    root.setLevel(log_level)

    formatter_console = _CompactFormatter(datefmt="%H:%M:%S")

    console = Console()
    console_handler = RichHandler(
        console=console,
        rich_tracebacks=True,
        show_time=False,
        show_level=False,
        show_path=False,
        markup=False,
    )
    console_handler.setFormatter(formatter_console)

    noise_mode = os.getenv("LOG_NOISE", "low").strip().lower() or "low"
    if noise_mode != "debug":
        console_handler.addFilter(_DomainInfoFilter())

    logs_dir = Path(os.getenv("LOG_DIR", "logs"))
    logs_dir.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        logs_dir / "penpal.log",
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setFormatter(_CompactFormatter(datefmt="%Y-%m-%d %H:%M:%S"))

    root.addHandler(console_handler)
    root.addHandler(file_handler)

    # Silence verbose third-party loggers.
    logging.getLogger("google").setLevel(logging.WARNING)
    logging.getLogger("google.cloud.firestore").setLevel(logging.WARNING)
    logging.getLogger("grpc").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    root._penpal_configured = True  # type: ignore[attr-defined]
    return root


def get_logger(name: str) -> logging.LoggerAdapter:
    base = logging.getLogger(name)
    return _ContextLoggerAdapter(base, {"module_name": name})


def info_domain(
    module: str,
    message: str,
    *,
    stage: str | None = None,
    user_id: str | None = None,
    **context: Any,
) -> None:
    """Log a milestone INFO message visible in console output."""

    logger = get_logger(module)
    extra: Dict[str, Any] = {"domain": True}
    if stage:
        extra["stage"] = stage
    if context:
        extra["payload"] = context
    kwargs: Dict[str, Any] = {"extra": extra}
    if user_id is not None:
        kwargs["user_id"] = user_id
    logger.info(message, **kwargs)


def log_event(
    level: str | int,
    module: str,
    message: str,
    *,
    user_id: str | None = None,
    stage: str | None = None,
    extra: Mapping[str, Any] | None = None,
    exc_info: Any | None = None,
) -> None:
    logger = get_logger(module)
    kwargs: Dict[str, Any] = {}
    if extra:
        kwargs["extra"] = {"payload": dict(extra)}
    if user_id is not None:
        kwargs["user_id"] = user_id
    if stage:
        kwargs["stage"] = stage
    if isinstance(level, str):
        level_value = getattr(logging, level.upper(), logging.INFO)
    else:
        level_value = int(level)
    logger.log(level_value, message, exc_info=exc_info, **kwargs)


def bind_context(*, scope: str | None = None, user_id: str | None = None) -> Dict[str, Any]:
    tokens: Dict[str, Any] = {}
    if scope is not None:
        tokens["scope"] = _SCOPE.set(scope)
    if user_id is not None:
        tokens["user_id"] = _USER_ID.set(user_id)
    return tokens


def reset_context(tokens: Mapping[str, Any]) -> None:
    scope_token = tokens.get("scope")
    if scope_token is not None:
        _SCOPE.reset(scope_token)
    user_token = tokens.get("user_id")
    if user_token is not None:
        _USER_ID.reset(user_token)


__all__ = [
    "setup_logging",
    "get_logger",
    "info_domain",
    "log_event",
    "bind_context",
    "reset_context",
]
