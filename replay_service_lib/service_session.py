from __future__ import annotations

import asyncio
import contextlib
import datetime as dt
import logging
import traceback
from pathlib import Path
from typing import Any, Dict, Optional

from .engine import ReplayEngine
from .service_config import CONTINUITY_SESSION_KEY, RECORDINGS_BASE
from .service_db import continuity_store, db_finish_run, db_insert_run
from .service_logging import run_id_ctx
from .service_models import ReplayNotice, ReplayStartReq, SessionState, Storyboard

sessions: Dict[str, "ReplaySession"] = {}


class ReplaySession:
    """One queued or running replay job behind the HTTP API."""

    def __init__(self, session_id: str, req: ReplayStartReq, storyboard: Storyboard):
        self.id = session_id
        self.storyboard = storyboard
        self.title = storyboard.meta.title
        self.total_events = len(storyboard.timeline)
        self.speed = req.speed
        self.record_video = req.record_video
        self.headless = req.headless
        self.viewport_width = req.viewport_width
        self.viewport_height = req.viewport_height
        self.session_key = req.session_key or f"{CONTINUITY_SESSION_KEY}:{session_id}"

        self.state: SessionState = "queued"
        self.error: Optional[str] = None
        self.video_path: Optional[Path] = None
        self.current_event_index = 0
        self.events_executed = 0
        self.capture_lost = False
        self.notices: list[ReplayNotice] = []
        self.engine: Optional[ReplayEngine] = None

        self.video_dir: Path = RECORDINGS_BASE / self.id / "video"
        self.log_lines: list[str] = []
        self.log_seq: int = 0
        self.finished_at: Optional[dt.datetime] = None

    @property
    def is_finished(self) -> bool:
        return self.state in ("completed", "stopped", "error")

    def attach_engine(self, engine: ReplayEngine) -> None:
        self.engine = engine

    def to_status(self, queue_position: Optional[int] = None) -> Dict[str, Any]:
        live = self.engine.status() if self.engine else None
        notices = self.engine.notices if self.engine else self.notices
        return {
            "session_id": self.id,
            "state": self.state,
            "title": self.title,
            "total_events": self.total_events,
            "current_event_index": live["currentEventIndex"] if live else self.current_event_index,
            "events_executed": live["eventsExecuted"] if live else self.events_executed,
            "capture_lost": live["captureLost"] if live else self.capture_lost,
            "error": self.error,
            "video_path": str(self.video_path) if self.video_path else None,
            "notices": [n.model_dump(by_alias=True) for n in notices],
            "queue_position": queue_position,
        }


async def run_replay_session(sess: ReplaySession) -> None:
    from .service_replay import replay_storyboard

    token = run_id_ctx.set(sess.id)
    log = logging.getLogger("replay")
    sess.state = "starting"

    with contextlib.suppress(Exception):
        await db_insert_run(sess)

    try:
        if sess.record_video:
            sess.video_dir.mkdir(parents=True, exist_ok=True)
        sess.state = "running"
        log.info("[session] replay %s: %s event(s) at %sx", sess.id, sess.total_events, sess.speed)
        outcome = await replay_storyboard(
            sess.storyboard,
            speed=sess.speed,
            record_video=sess.record_video,
            video_dir=sess.video_dir,
            headless=sess.headless,
            viewport_width=sess.viewport_width,
            viewport_height=sess.viewport_height,
            store=continuity_store(),
            session_key=sess.session_key,
            on_engine=sess.attach_engine,
            logger_instance=log,
        )
        sess.events_executed = outcome.terminal.events_executed
        sess.capture_lost = outcome.terminal.capture_lost
        sess.notices = outcome.notices
        sess.video_path = outcome.video_path
        if outcome.conversion_error:
            sess.error = outcome.conversion_error
        sess.state = "completed" if outcome.terminal.completed else "stopped"
        log.info("[session] replay %s finished: %s", sess.id, sess.state)
    except asyncio.CancelledError:
        sess.state = "stopped"
        log.warning("[session] replay %s cancelled", sess.id)
        raise
    except Exception:
        sess.error = traceback.format_exc()
        sess.state = "error"
        log.error("[session] replay %s failed:\n%s", sess.id, sess.error)
    finally:
        if sess.engine is not None:
            sess.notices = list(sess.engine.notices)
            sess.current_event_index = sess.engine.status()["currentEventIndex"]
            sess.engine = None
        with contextlib.suppress(Exception):
            await db_finish_run(sess)
        run_id_ctx.reset(token)
