from __future__ import annotations

import asyncio
import contextvars
import datetime as dt
import json
import logging
import re
from typing import Any, Callable, Optional

from sqlalchemy import text

from .service_config import ANSI_RE, COLLAPSE_INTERNAL_SPACES, CTRL_ZW_RE, STRIP_ANSI

run_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar("run_id", default="")
_STD_LOG_FIELDS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime", "run_id"}


def clean_message(msg: str) -> str:
    if STRIP_ANSI:
        msg = ANSI_RE.sub("", msg)
    msg = CTRL_ZW_RE.sub("", msg)
    if COLLAPSE_INTERNAL_SPACES:
        msg = re.sub(r"[ \t\u00A0]{2,}", " ", msg)
    return msg.strip()


def quiet_library_loggers() -> None:
    for name in ("httpx", "httpcore", "uvicorn.access", "asyncio"):
        logging.getLogger(name).setLevel(logging.WARNING)


class RunIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - trivial
        if not getattr(record, "run_id", None):
            setattr(record, "run_id", run_id_ctx.get())
        return True


class PerRunDBAndMemoryHandler(logging.Handler):
    """Mirror each record of a replay job into its session and, when configured, ``run_logs``."""

    def __init__(self, session_lookup: Callable[[str], Any], session_factory=None):
        super().__init__()
        self._session_lookup = session_lookup
        self._session_factory = session_factory
        self._pending: set[asyncio.Task] = set()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            run_id = getattr(record, "run_id", None) or run_id_ctx.get()
            if not run_id:
                return
            sess = self._session_lookup(run_id)
            if not sess:
                return

            try:
                text_line = clean_message(record.getMessage())
            except (TypeError, ValueError):
                text_line = clean_message(str(record.msg))
            if not text_line:
                return

            sess.log_seq += 1
            seq = sess.log_seq
            sess.log_lines.append(text_line)

            if self._session_factory:
                extras = {k: v for k, v in record.__dict__.items() if k not in _STD_LOG_FIELDS}
                payload = json.dumps(extras, default=str, ensure_ascii=False) if extras else None
                task = asyncio.get_running_loop().create_task(
                    self._save(run_id, seq, text_line, record.levelname, record.name, payload)
                )
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
        except RuntimeError:
            # no running loop
            return
        except Exception:
            self.handleError(record)

    async def _save(self, run_id: str, seq: int, line: str, level: str, logger_name: str, payload: Optional[str]):
        async with self._session_factory() as db:
            await db.execute(
                text(
                    """
                    INSERT INTO run_logs(run_id, ts, seq, line, level, logger, payload)
                    VALUES (:run_id,:ts,:seq,:line,:level,:logger,:payload)
                    """
                ),
                {
                    "run_id": run_id,
                    "ts": dt.datetime.now(dt.timezone.utc).replace(tzinfo=None),
                    "seq": seq,
                    "line": line,
                    "level": level,
                    "logger": logger_name[:32],
                    "payload": payload,
                },
            )
            await db.commit()


def configure_logging(
    session_lookup: Optional[Callable[[str], Any]] = None,
    session_factory=None,
    level: int = logging.INFO,
) -> None:
    """Idempotent root-logger wiring shared by the HTTP service and the CLI."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    if not any(isinstance(h, logging.StreamHandler) for h in root_logger.handlers):
        stream = logging.StreamHandler()
        stream.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        root_logger.addHandler(stream)
    for handler in root_logger.handlers:
        if not any(isinstance(f, RunIdFilter) for f in handler.filters):
            handler.addFilter(RunIdFilter())
    if session_lookup is not None and not any(isinstance(h, PerRunDBAndMemoryHandler) for h in root_logger.handlers):
        handler = PerRunDBAndMemoryHandler(session_lookup=session_lookup, session_factory=session_factory)
        handler.setFormatter(logging.Formatter("%(message)s"))
        handler.addFilter(RunIdFilter())
        root_logger.addHandler(handler)
    quiet_library_loggers()
