from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from typing import Any, Optional, Union

from .adapters import CursorState, PlatformAdapter
from .continuity import ContinuityManager, ContinuityStore, MemoryContinuityStore
from .errors import ReplayAlreadyActiveError, ReplayNoticeCode
from .executor import EventExecutor
from .overlay import OverlayTrackPlayer, VoiceoverResolver
from .scheduler import PlaybackScheduler
from .selector_resolver import SelectorResolver
from .service_config import CONTINUITY_SESSION_KEY, NAVIGATION_TIMEOUT_MS, RESUME_SETTLE_MS
from .service_models import ReplayNotice, ReplayState, Storyboard, TerminalSignal
from .timeline_loader import load_storyboard, prepare_timeline

logger = logging.getLogger("replay")


class ReplayEngine:
    """
    One replay session bound to one host document.

    The engine owns everything mutable about a run (state, cursor, timers,
    notices). Register it with the adapter and it bootstraps itself on every
    document load: a fresh snapshot is resumed, anything else leaves it idle.
    """

    def __init__(
        self,
        adapter: PlatformAdapter,
        store: Optional[ContinuityStore] = None,
        *,
        session_key: str = CONTINUITY_SESSION_KEY,
        owner_id: Optional[str] = None,
        voiceover_resolver: Optional[VoiceoverResolver] = None,
        rng: Optional[random.Random] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.adapter = adapter
        self.log = log or logger
        self.continuity = ContinuityManager(
            store or MemoryContinuityStore(),
            adapter.clock,
            session_key=session_key,
            owner_id=owner_id,
            log=self.log,
        )
        self.overlay = OverlayTrackPlayer(adapter, voiceover_resolver, self.log)
        self.cursor = CursorState()
        self.notices: list[ReplayNotice] = []
        self.state: Optional[ReplayState] = None
        self.executor: Optional[EventExecutor] = None
        self.scheduler: Optional[PlaybackScheduler] = None
        self._rng = rng
        self._terminal: Optional[asyncio.Future] = None
        self._bootstrapping = False
        self._ready_at: Optional[float] = None
        self._ready_navigation = 0
        adapter.on_document_ready(self.on_document_ready)

    # -------------------------------------------------------------------
    # Public control
    # -------------------------------------------------------------------
    @property
    def is_active(self) -> bool:
        return self.scheduler is not None and self.scheduler.terminal is None and self.scheduler.status != "idle"

    async def start(
        self,
        storyboard: Union[Storyboard, dict, str],
        speed: float = 1.0,
        recording_mode: bool = False,
        start_index: int = 0,
    ) -> ReplayState:
        if speed <= 0:
            raise ValueError("speed multiplier must be positive")
        if not isinstance(storyboard, Storyboard):
            storyboard = load_storyboard(storyboard)
        if self.is_active:
            raise ReplayAlreadyActiveError(self.continuity.session_key, self.continuity.owner_id)
        await self.continuity.claim()

        storyboard = prepare_timeline(storyboard, recording_mode, self.adapter.capture_survives_navigation)
        state = ReplayState(
            timeline=storyboard,
            speed_multiplier=speed,
            recording_mode=recording_mode,
            session_key=self.continuity.session_key,
        )
        self.notices.clear()
        self._build(storyboard)
        self.state = state
        self.scheduler.start(state, start_index)
        self._arm_overlays(state)
        self.log.info(
            "[replay] started %r: %s event(s), %s subtitle(s), speed=%sx, recording=%s",
            storyboard.meta.title or "Untitled",
            len(state.events),
            len(storyboard.subtitles),
            speed,
            recording_mode,
        )
        return state

    async def stop(self) -> None:
        if self.scheduler is not None and self.scheduler.terminal is None:
            await self.scheduler.stop()
            return
        await self.overlay.stop()
        if self.scheduler is None:
            # never stepped; leave the shared snapshot alone
            return
        await self.continuity.clear()

    def pause(self) -> bool:
        return self.scheduler.pause() if self.scheduler is not None else False

    def resume(self) -> bool:
        return self.scheduler.resume() if self.scheduler is not None else False

    async def wait_terminal(self, timeout: Optional[float] = None) -> TerminalSignal:
        return await asyncio.wait_for(asyncio.shield(self._terminal_future()), timeout)

    def status(self) -> dict[str, Any]:
        sched = self.scheduler
        state = self.state
        return {
            "state": sched.status if sched else "idle",
            "awaitingDocument": bool(sched and sched.awaiting_document),
            "currentEventIndex": state.current_event_index if state else 0,
            "totalEvents": len(state.events) if state else 0,
            "eventsExecuted": state.events_executed if state else 0,
            "captureLost": bool(state and state.capture_lost),
            "notices": [n.model_dump(by_alias=True) for n in self.notices],
        }

    # -------------------------------------------------------------------
    # Document bootstrap
    # -------------------------------------------------------------------
    def _wants_document(self) -> bool:
        sched = self.scheduler
        if sched is None:
            return True
        if sched.terminal is not None:
            return False
        # a load caused by an action mid-step (e.g. a submit click) is not ours to handle
        return sched.awaiting_document or not sched.is_stepping

    async def on_document_ready(self) -> None:
        """
        Bootstrap after a document load.

        Resumption waits until ``RESUME_SETTLE_MS`` have passed since the
        newest load, so a load arriving while an earlier one is settling
        restarts the settle instead of being dropped. When stepping ended on
        a navigate, only a load seen after that navigate began counts.
        """
        self._ready_at = self.adapter.now_ms()
        self._ready_navigation = self.scheduler.navigations_started if self.scheduler else 0
        if self._bootstrapping or not self._wants_document():
            return
        self._bootstrapping = True
        try:
            await self._settle()
            if not self._wants_document():
                return
            sched = self.scheduler
            if sched is not None:
                await sched.wait_idle()
                if sched.terminal is not None:
                    return
                if sched.awaiting_document and self._ready_navigation < sched.navigations_started:
                    self.log.debug("[replay/nav] waiting for the navigated document to load")
                    return
                await self._settle()
            await self._restore_and_resume()
        finally:
            self._bootstrapping = False

    async def _settle(self) -> None:
        while True:
            remaining = self._ready_at + RESUME_SETTLE_MS - self.adapter.now_ms()
            if remaining <= 0:
                return
            await self.adapter.sleep(remaining)

    async def _on_document_timeout(self) -> None:
        sched = self.scheduler
        if self._bootstrapping or sched is None or self.state is None:
            return
        self.log.warning(
            "[replay/nav] NavigationTimeout: no document ready %sms after navigating; resuming in place",
            NAVIGATION_TIMEOUT_MS,
        )
        await self._record_notice(ReplayNoticeCode.NAVIGATION_TIMEOUT, "Page did not finish loading; continuing")
        self._bootstrapping = True
        try:
            if not await self.continuity.has_snapshot():
                await sched.stop()
                return
            try:
                await self.continuity.claim()
            except ReplayAlreadyActiveError as exc:
                self.log.warning("[replay/continuity] not resuming: %s", exc)
                return
            await self.continuity.snapshot(self.state)
            await self._restore_and_resume()
        finally:
            self._bootstrapping = False

    async def _restore_and_resume(self) -> None:
        sched = self.scheduler
        try:
            state = await self.continuity.restore(
                capture_survives_navigation=self.adapter.capture_survives_navigation
            )
        except ReplayAlreadyActiveError as exc:
            self.log.warning("[replay/continuity] not resuming: %s", exc)
            return

        if state is None:
            if sched is not None and sched.awaiting_document:
                await self._record_notice(ReplayNoticeCode.STALE_CONTINUITY, "Saved replay state expired; replay stopped")
                await sched.stop()
            return

        had_lost = bool(self.state and self.state.capture_lost)
        fresh = sched is None
        if fresh:
            self._build(state.timeline)
        self.state = state
        if state.capture_lost and not had_lost:
            await self._record_notice(
                ReplayNoticeCode.CAPTURED_STREAM_LOST,
                "Recording stopped: capture did not survive navigation",
            )
        self.scheduler.resume_from(state)
        if fresh:
            self._arm_overlays(state)
        else:
            await self.overlay.refresh()

    # -------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------
    def _build(self, storyboard: Storyboard) -> None:
        self.executor = EventExecutor(
            self.adapter,
            storyboard.settings,
            SelectorResolver(self.log),
            rng=self._rng,
            notice_sink=self._record_notice,
            log=self.log,
        )
        self.scheduler = PlaybackScheduler(
            self.executor,
            self.continuity,
            self.adapter,
            self.cursor,
            on_terminal=self._on_terminal,
            on_document_timeout=self._on_document_timeout,
            log=self.log,
        )
        self._ready_navigation = 0
        if self._terminal is not None and self._terminal.done():
            self._terminal = None

    def _arm_overlays(self, state: ReplayState) -> None:
        sb = state.timeline
        self.overlay.schedule(sb.subtitles, state.started_at_wall_clock, sb.original_audio, sb.webcam_video)

    def _terminal_future(self) -> asyncio.Future:
        if self._terminal is None:
            self._terminal = asyncio.get_running_loop().create_future()
        return self._terminal

    async def _record_notice(self, code: ReplayNoticeCode, message: str) -> None:
        state = self.state
        notice = ReplayNotice(
            code=code.value,
            message=message,
            event_index=(state.current_event_index - 1) if state and state.current_event_index else None,
            at=self.adapter.now_ms(),
        )
        self.notices.append(notice)
        with contextlib.suppress(Exception):
            await self.adapter.show_status(message, is_error=False)

    async def _on_terminal(self, signal: TerminalSignal) -> None:
        await self.overlay.stop()
        await self.continuity.release()
        with contextlib.suppress(Exception):
            await self.adapter.show_status("Replay completed" if signal.completed else "Replay stopped")
        self.log.info(
            "[replay] terminal: completed=%s executed=%s capture_lost=%s",
            signal.completed,
            signal.events_executed,
            signal.capture_lost,
        )
        fut = self._terminal_future()
        if not fut.done():
            fut.set_result(signal)
