from __future__ import annotations

import asyncio
import base64
import contextlib
import logging
from typing import Awaitable, Optional

import httpx

from .adapters import MediaKind, PlatformAdapter
from .service_config import VOICEOVER_FETCH_TIMEOUT_S, VOICEOVER_STORE_URL
from .service_models import MediaTrack, Subtitle, Voiceover

logger = logging.getLogger("replay")

VOICEOVER_CHANNEL = "voiceover"
ORIGINAL_AUDIO_CHANNEL = "original-audio"
WEBCAM_CHANNEL = "webcam"


class VoiceoverResolver:
    """
    Turns a voiceover reference into something a media element can play.

    Inline base64 becomes a data URL, ``audioSource`` passes through, and a
    ``blobId`` is fetched from the voiceover store once and cached.
    """

    def __init__(
        self,
        store_url: str = VOICEOVER_STORE_URL,
        *,
        timeout_s: float = VOICEOVER_FETCH_TIMEOUT_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.store_url = (store_url or "").rstrip("/")
        self.timeout_s = timeout_s
        self._transport = transport
        self._cache: dict[str, str] = {}
        self.log = log or logger

    async def resolve(self, voiceover: Voiceover) -> Optional[str]:
        if voiceover.audio_base64:
            b64 = voiceover.audio_base64
            if b64.startswith("data:"):
                return b64
            return f"data:{voiceover.audio_type or 'audio/mpeg'};base64,{b64}"
        if voiceover.audio_source:
            return voiceover.audio_source
        if voiceover.blob_id:
            return await self._fetch_blob(voiceover.blob_id, voiceover.audio_type)
        return None

    async def _fetch_blob(self, blob_id: str, fallback_type: Optional[str]) -> Optional[str]:
        if blob_id in self._cache:
            return self._cache[blob_id]
        if not self.store_url:
            self.log.warning("[replay/overlay] voiceover blob %s referenced but VOICEOVER_STORE_URL is unset", blob_id)
            return None
        url = f"{self.store_url}/{blob_id}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport) as client:
                resp = await client.get(url)
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            self.log.warning("[replay/overlay] voiceover fetch failed for %s: %s", blob_id, exc)
            return None
        mime = resp.headers.get("content-type", "").split(";")[0].strip() or fallback_type or "audio/mpeg"
        data_url = f"data:{mime};base64,{base64.b64encode(resp.content).decode('ascii')}"
        self._cache[blob_id] = data_url
        return data_url


class OverlayTrackPlayer:
    """Subtitle and media timers running against the scheduler's origin, never blocking it."""

    def __init__(
        self,
        adapter: PlatformAdapter,
        resolver: Optional[VoiceoverResolver] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.adapter = adapter
        self.resolver = resolver or VoiceoverResolver()
        self.log = log or logger
        self._tasks: set[asyncio.Task] = set()
        self._visible: Optional[int] = None
        self._visible_sub: Optional[Subtitle] = None

    @property
    def pending(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    def schedule(
        self,
        subtitles: list[Subtitle],
        origin_wall_clock: float,
        original_audio: Optional[MediaTrack] = None,
        webcam_video: Optional[MediaTrack] = None,
    ) -> int:
        """Arm timers for everything not yet finished; returns how many were armed."""
        self._cancel_all()
        elapsed = self.adapter.now_ms() - origin_wall_clock
        armed = 0

        for idx, sub in enumerate(subtitles):
            end = sub.time + sub.duration
            if end > elapsed:
                self._spawn(self._subtitle_timer(idx, sub, sub.time - elapsed, end - elapsed))
                armed += 1
            vo = sub.voiceover
            if vo is not None:
                vo_at = sub.time + vo.offset
                if vo_at >= elapsed:
                    self._spawn(self._voiceover_timer(idx, vo, vo_at - elapsed))
                    armed += 1

        for channel, track, kind in (
            (ORIGINAL_AUDIO_CHANNEL, original_audio, "audio"),
            (WEBCAM_CHANNEL, webcam_video, "video"),
        ):
            if track is not None and track.offset >= elapsed:
                self._spawn(self._media_timer(channel, track, kind, track.offset - elapsed))
                armed += 1

        self.log.info("[replay/overlay] armed %s timer(s) (origin +%.0fms)", armed, elapsed)
        return armed

    async def stop(self) -> None:
        tasks = list(self._tasks)
        self._cancel_all()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._visible, self._visible_sub = None, None
        with contextlib.suppress(Exception):
            await self.adapter.hide_subtitle()
        for channel in (VOICEOVER_CHANNEL, ORIGINAL_AUDIO_CHANNEL, WEBCAM_CHANNEL):
            with contextlib.suppress(Exception):
                await self.adapter.stop_media(channel)

    async def refresh(self) -> None:
        """Re-show the current subtitle on a document that replaced the old one."""
        if self._visible_sub is None:
            return
        try:
            await self.adapter.show_subtitle(self._visible_sub)
        except Exception as exc:
            self.log.warning("[replay/overlay] could not re-show subtitle %s: %s", self._visible, exc)

    # -------------------------------------------------------------------
    # Timers
    # -------------------------------------------------------------------
    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()

    async def _subtitle_timer(self, idx: int, sub: Subtitle, show_in: float, hide_in: float) -> None:
        try:
            if show_in > 0:
                await self.adapter.sleep(show_in)
            await self.adapter.show_subtitle(sub)
            self._visible, self._visible_sub = idx, sub
            await self.adapter.sleep(hide_in - max(show_in, 0.0))
            if self._visible == idx:
                await self.adapter.hide_subtitle()
                self._visible, self._visible_sub = None, None
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.log.warning("[replay/overlay] subtitle %s failed: %s", idx, exc)

    async def _voiceover_timer(self, idx: int, vo: Voiceover, start_in: float) -> None:
        try:
            if start_in > 0:
                await self.adapter.sleep(start_in)
            src = await self.resolver.resolve(vo)
            if not src:
                self.log.warning("[replay/overlay] voiceover for subtitle %s has no playable source", idx)
                return
            await self.adapter.stop_media(VOICEOVER_CHANNEL)
            await self.adapter.play_media(VOICEOVER_CHANNEL, src, "audio")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.log.warning("[replay/overlay] voiceover %s failed: %s", idx, exc)

    async def _media_timer(self, channel: str, track: MediaTrack, kind: MediaKind, start_in: float) -> None:
        try:
            if start_in > 0:
                await self.adapter.sleep(start_in)
            await self.adapter.play_media(channel, track.src, kind)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.log.warning("[replay/overlay] %s track failed: %s", channel, exc)
