from __future__ import annotations

import datetime as dt
import logging
from typing import TYPE_CHECKING, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, async_sessionmaker, create_async_engine

from .continuity import ContinuityStore, MemoryContinuityStore, SqlContinuityStore
from .service_config import DB_URL

if TYPE_CHECKING:
    from .service_session import ReplaySession

logger = logging.getLogger("replay")

engine = create_async_engine(DB_URL, pool_pre_ping=True) if DB_URL else None
SessionLocal = async_sessionmaker(engine, expire_on_commit=False) if engine else None

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS replay_runs (
  id               VARCHAR(16) PRIMARY KEY,
  title            VARCHAR(255) NULL,
  total_events     INT NOT NULL,
  speed            DOUBLE NOT NULL,
  record_video     TINYINT(1) NOT NULL,
  state            VARCHAR(16) NOT NULL,
  started_at       DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP,
  finished_at      DATETIME NULL,
  events_executed  INT NULL,
  capture_lost     TINYINT(1) NULL,
  video_path       TEXT NULL,
  error            LONGTEXT NULL
) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4;

CREATE TABLE IF NOT EXISTS run_logs (
  id      BIGINT AUTO_INCREMENT PRIMARY KEY,
  run_id  VARCHAR(16) NOT NULL,
  ts      DATETIME NOT NULL,
  seq     INT NOT NULL,
  line    TEXT NOT NULL,
  level   VARCHAR(16) NULL,
  logger  VARCHAR(32) NULL,
  payload JSON NULL,
  INDEX idx_run_seq (run_id, seq),
  CONSTRAINT fk_run_logs_replay_runs
    FOREIGN KEY (run_id) REFERENCES replay_runs(id)
    ON DELETE CASCADE
) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4;

CREATE TABLE IF NOT EXISTS replay_continuity (
  session_key VARCHAR(128) PRIMARY KEY,
  payload     LONGTEXT NOT NULL,
  updated_at  DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP ON UPDATE CURRENT_TIMESTAMP
) ENGINE=InnoDB DEFAULT CHARSET=utf8mb4;
"""


async def create_tables(conn: AsyncConnection) -> None:
    for stmt in CREATE_TABLES_SQL.strip().split(";\n\n"):
        s = stmt.strip().rstrip(";")
        if s:
            await conn.execute(text(s))


def continuity_store() -> ContinuityStore:
    """Database-backed continuity when a DB is configured, process memory otherwise."""
    if SessionLocal is not None:
        return SqlContinuityStore(SessionLocal)
    return MemoryContinuityStore()


async def db_insert_run(sess: "ReplaySession") -> None:
    if not SessionLocal:
        return
    async with SessionLocal() as db:
        await db.execute(
            text(
                """INSERT INTO replay_runs (id, title, total_events, speed, record_video, state)
                    VALUES (:id, :title, :total_events, :speed, :record_video, :state)"""
            ),
            {
                "id": sess.id,
                "title": (sess.title or "")[:255] or None,
                "total_events": sess.total_events,
                "speed": sess.speed,
                "record_video": 1 if sess.record_video else 0,
                "state": "starting",
            },
        )
        await db.commit()


async def db_finish_run(sess: "ReplaySession", finished_at: Optional[dt.datetime] = None) -> None:
    if not SessionLocal:
        return
    sess.finished_at = finished_at or dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)
    async with SessionLocal() as db:
        await db.execute(
            text(
                """UPDATE replay_runs
                    SET state=:state, finished_at=:finished_at, events_executed=:events_executed,
                        capture_lost=:capture_lost, video_path=:video_path, error=:error
                    WHERE id=:id"""
            ),
            {
                "id": sess.id,
                "state": sess.state,
                "finished_at": sess.finished_at,
                "events_executed": sess.events_executed,
                "capture_lost": 1 if sess.capture_lost else 0,
                "video_path": str(sess.video_path) if sess.video_path else None,
                "error": sess.error,
            },
        )
        await db.commit()
