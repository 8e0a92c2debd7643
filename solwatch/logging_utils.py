from __future__ import annotations

import contextlib
import logging
import os
import re
import sys
import threading
import time
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterable

import orjson

DEFAULT_LOG_DIR = Path("logs")
RUNTIME_LOG_NAME = "solwatch.log"

DEFAULT_RUNTIME_MAX_BYTES = 5_000_000
DEFAULT_RUNTIME_BACKUP_COUNT = 3
DEFAULT_RUNTIME_FORMAT = "%(asctime)sZ [%(levelname)s] %(name)s:%(lineno)d | %(message)s"
DEFAULT_RUNTIME_DATEFMT = "%Y-%m-%d %H:%M:%S"

_NOISY_LOGGERS: tuple[str, ...] = (
    "asyncio",
    "aiohttp.access",
    "aiosqlite",
)

_warn_once_lock = threading.Lock()
_warn_once_last_emit: dict[str, float] = {}

_API_LOG_STATE: dict[str, Any] = {"enabled": False, "dir": DEFAULT_LOG_DIR / "api"}
_API_KEY_SANITIZER = re.compile(r"[^a-zA-Z0-9_-]+")


class _UTCFormatter(logging.Formatter):
    """Formatter that renders timestamps in UTC."""

    converter = time.gmtime


_LOG_RECORD_RESERVED = set(logging.LogRecord(None, 0, "", 0, "", (), None).__dict__.keys())


class JsonFormatter(logging.Formatter):
    """Structured logging formatter producing JSON payloads."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - short summary sufficient
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: dict[str, Any] = {
            "ts": stamp.strftime("%Y-%m-%dT%H:%M:%S.") + f"{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "line": record.lineno,
            "msg": record.getMessage(),
        }

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack_info"] = record.stack_info

        for key, value in record.__dict__.items():
            if key in payload or key.startswith("_") or key in _LOG_RECORD_RESERVED:
                continue
            payload[key] = value

        return orjson.dumps(payload, default=str).decode()


def setup_stdout_logging(
    *,
    level: int = logging.INFO,
    formatter: logging.Formatter | None = None,
    propagate_off: Iterable[str] = _NOISY_LOGGERS,
) -> logging.StreamHandler:
    """Ensure a single ``StreamHandler`` to ``sys.stdout`` exists on the root logger."""

    root = logging.getLogger()
    root.setLevel(level)

    sentinel_key = "_solwatch_stdout_handler"
    stream_handler = getattr(root, sentinel_key, None)
    if not isinstance(stream_handler, logging.StreamHandler) or stream_handler not in root.handlers:
        stream_handler = None

    for handler in list(root.handlers):
        if handler is stream_handler or isinstance(handler, logging.FileHandler):
            continue
        if not isinstance(handler, logging.StreamHandler):
            continue
        stream = getattr(handler, "stream", None)
        if stream in {sys.stdout, sys.stderr, sys.__stdout__, sys.__stderr__}:
            # ``logging.basicConfig`` leftovers would duplicate every line.
            if stream_handler is None and stream in {sys.stdout, sys.__stdout__}:
                stream_handler = handler
                continue
            root.removeHandler(handler)
            with contextlib.suppress(Exception):  # pragma: no cover - best effort
                handler.close()

    if stream_handler is None:
        stream_handler = logging.StreamHandler(sys.stdout)
        root.addHandler(stream_handler)

    stream_handler.setLevel(level)
    if formatter is not None:
        stream_handler.setFormatter(formatter)

    for name in propagate_off:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    setattr(root, sentinel_key, stream_handler)
    return stream_handler


def warn_once_per(
    minutes: float,
    key: str,
    message: str,
    *args: Any,
    logger: logging.Logger | None = None,
    **kwargs: Any,
) -> bool:
    """Emit ``logger.warning`` for *message* at most once per *minutes* interval."""

    interval = max(0.0, minutes) * 60.0
    now = time.monotonic()

    with _warn_once_lock:
        last = _warn_once_last_emit.get(key)
        if last is not None and interval > 0 and now - last < interval:
            return False
        _warn_once_last_emit[key] = now

    target = logger or logging.getLogger()
    target.warning(message, *args, **kwargs)
    return True


def reset_warn_once_cache() -> None:
    """Clear cached emission timestamps for :func:`warn_once_per`."""

    with _warn_once_lock:
        _warn_once_last_emit.clear()


def _parse_log_level(value: str | int | None) -> int:
    if value is None or value == "":
        return logging.INFO
    if isinstance(value, int):
        return value
    level = str(value).strip().upper()
    if level.isdigit():
        return int(level)
    resolved = logging.getLevelName(level)
    return resolved if isinstance(resolved, int) else logging.INFO


def _env_flag(name: str) -> bool | None:
    raw = os.getenv(name)
    if raw is None:
        return None
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_runtime_logging(
    *,
    level: str | int | None = None,
    console: bool | None = None,
    log_dir: str | Path | None = None,
    logfile: str | Path | None = None,
    max_bytes: int | None = None,
    backup_count: int | None = None,
    json_logs: bool | None = None,
    api_responses: bool | None = None,
    force: bool = False,
) -> Path:
    """Configure global logging handlers for the service.

    ``LOG_LEVEL``, ``LOG_JSON``, ``LOG_CONSOLE`` and ``LOG_FILE`` override the
    defaults when the matching argument is ``None``.
    """

    resolved_level = _parse_log_level(level if level is not None else os.getenv("LOG_LEVEL"))

    if console is None:
        console = _env_flag("LOG_CONSOLE")
        console = True if console is None else console
    if json_logs is None:
        json_logs = bool(_env_flag("LOG_JSON"))

    base_dir = Path(log_dir or os.getenv("LOG_DIR") or DEFAULT_LOG_DIR)
    log_path = Path(logfile or os.getenv("LOG_FILE") or base_dir / RUNTIME_LOG_NAME)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    log_path = log_path.resolve()

    root = logging.getLogger()
    if force:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            with contextlib.suppress(Exception):
                handler.close()
    root.setLevel(resolved_level)

    formatter: logging.Formatter
    if json_logs:
        formatter = JsonFormatter()
    else:
        formatter = _UTCFormatter(DEFAULT_RUNTIME_FORMAT, datefmt=DEFAULT_RUNTIME_DATEFMT)

    file_handler: logging.Handler | None = None
    for handler in list(root.handlers):
        base = getattr(handler, "baseFilename", None)
        if base is not None and Path(base) == log_path:
            file_handler = handler
            break
    if file_handler is None:
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_bytes or DEFAULT_RUNTIME_MAX_BYTES,
            backupCount=backup_count or DEFAULT_RUNTIME_BACKUP_COUNT,
            encoding="utf-8",
        )
        root.addHandler(file_handler)
    file_handler.setLevel(resolved_level)
    file_handler.setFormatter(formatter)

    if console:
        setup_stdout_logging(level=resolved_level, formatter=formatter)

    configure_api_logging(
        enabled=bool(api_responses) if api_responses is not None else bool(_env_flag("LOG_API_RESPONSES")),
        directory=base_dir / "api",
    )

    root.debug("Logging initialised", extra={"log_file": str(log_path)})
    return log_path


def configure_api_logging(*, enabled: bool, directory: str | Path | None = None) -> None:
    """Toggle raw provider response capture for :func:`write_api_log_once`."""

    _API_LOG_STATE["enabled"] = bool(enabled)
    if directory is not None:
        _API_LOG_STATE["dir"] = Path(directory)


def write_api_log_once(kind: str, key: Any, payload: Any) -> Path | None:
    """Store ``payload`` under ``<dir>/<kind>_<key>.txt`` unless it exists.

    Returns the written path or ``None`` when capture is disabled, the file
    already exists or writing failed.
    """

    if not _API_LOG_STATE["enabled"]:
        return None
    safe = _API_KEY_SANITIZER.sub("_", str(key or "unknown"))[:200]
    directory: Path = _API_LOG_STATE["dir"]
    path = directory / f"{kind}_{safe}.txt"
    try:
        if path.exists():
            return None
        directory.mkdir(parents=True, exist_ok=True)
        if isinstance(payload, (str, bytes)):
            data = payload.encode() if isinstance(payload, str) else payload
        else:
            data = orjson.dumps(payload, option=orjson.OPT_INDENT_2, default=str)
        path.write_bytes(data)
    except OSError:
        logging.getLogger(__name__).debug("failed to capture %s response", kind, exc_info=True)
        return None
    return path


__all__ = [
    "JsonFormatter",
    "setup_stdout_logging",
    "warn_once_per",
    "reset_warn_once_cache",
    "configure_runtime_logging",
    "configure_api_logging",
    "write_api_log_once",
]
