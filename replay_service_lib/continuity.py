from __future__ import annotations

import abc
import json
import logging
import uuid
from typing import Optional

from pydantic import ValidationError
from sqlalchemy import text

from .clock import Clock
from .errors import ReplayAlreadyActiveError
from .service_config import CONTINUITY_SESSION_KEY, CONTINUITY_TTL_MS
from .service_models import ReplayState

logger = logging.getLogger("replay")

LEASE_SUFFIX = ":lease"


# -------------------------------------------------------------------
# Stores
# -------------------------------------------------------------------
class ContinuityStore(abc.ABC):
    """Session-scoped key/value storage that outlives a document but not the session."""

    @abc.abstractmethod
    async def get(self, key: str) -> Optional[str]: ...

    @abc.abstractmethod
    async def set(self, key: str, value: str) -> None: ...

    @abc.abstractmethod
    async def delete(self, key: str) -> None: ...


class MemoryContinuityStore(ContinuityStore):
    def __init__(self):
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class SqlContinuityStore(ContinuityStore):
    """Rows in ``replay_continuity``; lets a resumed job on another worker pick up the record."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    async def get(self, key: str) -> Optional[str]:
        async with self._session_factory() as db:
            row = (
                await db.execute(
                    text("SELECT payload FROM replay_continuity WHERE session_key=:k"),
                    {"k": key},
                )
            ).first()
        return row[0] if row else None

    async def set(self, key: str, value: str) -> None:
        async with self._session_factory() as db:
            await db.execute(text("DELETE FROM replay_continuity WHERE session_key=:k"), {"k": key})
            await db.execute(
                text("INSERT INTO replay_continuity (session_key, payload) VALUES (:k, :v)"),
                {"k": key, "v": value},
            )
            await db.commit()

    async def delete(self, key: str) -> None:
        async with self._session_factory() as db:
            await db.execute(text("DELETE FROM replay_continuity WHERE session_key=:k"), {"k": key})
            await db.commit()


# -------------------------------------------------------------------
# Manager
# -------------------------------------------------------------------
class ContinuityManager:
    """
    Persists the replay cursor before anything that may tear down the document
    and hands it back to whichever engine instance boots next.

    Alongside the snapshot the manager keeps a lease ``{owner, heartbeat}``
    naming the instance currently stepping the session. A snapshot taken right
    before a navigation hands the lease off so the next instance may claim it.
    """

    def __init__(
        self,
        store: ContinuityStore,
        clock: Optional[Clock] = None,
        session_key: str = CONTINUITY_SESSION_KEY,
        owner_id: Optional[str] = None,
        ttl_ms: float = CONTINUITY_TTL_MS,
        log: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.clock = clock or Clock()
        self.session_key = session_key
        self.owner_id = owner_id or uuid.uuid4().hex[:12]
        self.ttl_ms = ttl_ms
        self.log = log or logger

    @property
    def lease_key(self) -> str:
        return self.session_key + LEASE_SUFFIX

    async def snapshot(self, state: ReplayState, *, handoff: bool = False) -> str:
        now = self.clock.now_ms()
        state.saved_at_wall_clock = now
        state.session_key = self.session_key
        state.owner_id = self.owner_id
        token = state.model_dump_json(by_alias=True)
        await self.store.set(self.session_key, token)
        if handoff:
            await self.store.delete(self.lease_key)
        else:
            await self._write_lease(now)
        self.log.debug(
            "[replay/continuity] saved index=%s/%s handoff=%s",
            state.current_event_index,
            len(state.events),
            handoff,
        )
        return token

    async def restore(self, *, capture_survives_navigation: bool = False) -> Optional[ReplayState]:
        raw = await self.store.get(self.session_key)
        if not raw:
            return None
        try:
            state = ReplayState.model_validate_json(raw)
        except ValidationError as exc:
            self.log.warning("[replay/continuity] unreadable snapshot discarded: %s", exc)
            await self.store.delete(self.session_key)
            return None

        now = self.clock.now_ms()
        saved_at = state.saved_at_wall_clock
        if saved_at is None or now - saved_at > self.ttl_ms:
            self.log.info("[replay/continuity] snapshot expired (saved_at=%s); not resuming", saved_at)
            await self.store.delete(self.session_key)
            await self.store.delete(self.lease_key)
            return None

        await self._ensure_lease_free(now)

        if state.recording_mode and not capture_survives_navigation:
            self.log.warning("[replay/continuity] capture stream did not survive navigation; recording mode cleared")
            state.recording_mode = False
            state.capture_lost = True

        state.owner_id = self.owner_id
        await self._write_lease(now)
        self.log.info(
            "[replay/continuity] restored index=%s/%s speed=%s",
            state.current_event_index,
            len(state.events),
            state.speed_multiplier,
        )
        return state

    async def has_snapshot(self) -> bool:
        return bool(await self.store.get(self.session_key))

    async def claim(self) -> None:
        now = self.clock.now_ms()
        await self._ensure_lease_free(now)
        await self._write_lease(now)

    async def release(self) -> None:
        holder = await self._read_lease()
        if holder is None or holder.get("owner") == self.owner_id:
            await self.store.delete(self.lease_key)

    async def clear(self) -> None:
        await self.store.delete(self.session_key)
        await self.release()

    async def _read_lease(self) -> Optional[dict]:
        raw = await self.store.get(self.lease_key)
        if not raw:
            return None
        try:
            lease = json.loads(raw)
        except ValueError:
            return None
        return lease if isinstance(lease, dict) else None

    async def _write_lease(self, now: float) -> None:
        await self.store.set(self.lease_key, json.dumps({"owner": self.owner_id, "heartbeat": now}))

    async def _ensure_lease_free(self, now: float) -> None:
        lease = await self._read_lease()
        if not lease:
            return
        owner = lease.get("owner")
        heartbeat = float(lease.get("heartbeat") or 0)
        if owner and owner != self.owner_id and now - heartbeat <= self.ttl_ms:
            self.log.warning("[replay/continuity] session %s already running in %s", self.session_key, owner)
            raise ReplayAlreadyActiveError(self.session_key, owner)
