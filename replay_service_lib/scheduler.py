from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Literal, Optional

from .adapters import CursorState, PlatformAdapter
from .continuity import ContinuityManager
from .executor import EventExecutor
from .service_config import COMPLETION_SETTLE_MS, DEFAULT_FINAL_HOLD_MS, MAX_STEP_WAIT_MS, NAVIGATION_TIMEOUT_MS
from .service_models import ReplayState, TerminalSignal

logger = logging.getLogger("replay")

SchedulerStatus = Literal["idle", "running", "paused", "completed", "stopped"]
TerminalCallback = Callable[[TerminalSignal], Awaitable[None]]
DocumentTimeoutCallback = Callable[[], Awaitable[None]]


def clamp_delay(ms: float) -> float:
    return max(0.0, min(float(ms), MAX_STEP_WAIT_MS))


class PlaybackScheduler:
    """
    Steps a timeline strictly in array order on one owned task.

    Every entry is preceded by a continuity snapshot whose index already
    points past it, so a document teardown mid-event never replays that
    event. A navigate ends local stepping; whoever boots on the next document
    calls :meth:`resume_from` with the restored state. If no document reports
    within ``NAVIGATION_TIMEOUT_MS`` the ``on_document_timeout`` hook fires.
    """

    def __init__(
        self,
        executor: EventExecutor,
        continuity: ContinuityManager,
        adapter: PlatformAdapter,
        cursor: Optional[CursorState] = None,
        *,
        on_terminal: Optional[TerminalCallback] = None,
        on_document_timeout: Optional[DocumentTimeoutCallback] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.executor = executor
        self.continuity = continuity
        self.adapter = adapter
        self.cursor = cursor or CursorState()
        self.on_terminal = on_terminal
        self.on_document_timeout = on_document_timeout
        self.log = log or logger

        self.status: SchedulerStatus = "idle"
        self.replay: Optional[ReplayState] = None
        self.awaiting_document = False
        self.terminal: Optional[TerminalSignal] = None
        self.navigations_started = 0

        self._task: Optional[asyncio.Task] = None
        self._deadline: Optional[asyncio.Task] = None
        self._paused = asyncio.Event()
        self._unpaused = asyncio.Event()
        self._unpaused.set()

    # -------------------------------------------------------------------
    # Control
    # -------------------------------------------------------------------
    @property
    def is_stepping(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, state: ReplayState, start_index: int = 0) -> None:
        if self.is_stepping:
            raise RuntimeError("scheduler is already stepping")
        self.terminal = None
        state.current_event_index = start_index
        state.events_executed = 0
        offset = state.events[start_index].t if start_index < len(state.events) else 0
        state.started_at_wall_clock = self.adapter.now_ms() - offset
        self.resume_from(state)

    def resume_from(self, state: ReplayState) -> None:
        if self.is_stepping:
            raise RuntimeError("scheduler is already stepping")
        if self.terminal is not None:
            raise RuntimeError("scheduler already finished; create a new one")
        state.is_replaying = True
        self.replay = state
        self.status = "running"
        self.awaiting_document = False
        self._disarm_deadline()
        self._paused.clear()
        self._unpaused.set()
        self.executor.reset()
        self.log.info(
            "[replay/sched] stepping from index %s/%s at %sx",
            state.current_event_index,
            len(state.events),
            state.speed_multiplier,
        )
        self._task = asyncio.create_task(self._guarded_run())

    def pause(self) -> bool:
        if self.status != "running":
            return False
        self.status = "paused"
        self._unpaused.clear()
        self._paused.set()
        self.log.info("[replay/sched] paused")
        return True

    def resume(self) -> bool:
        if self.status != "paused":
            return False
        self.status = "running"
        self._paused.clear()
        self._unpaused.set()
        self.log.info("[replay/sched] resumed")
        return True

    async def stop(self) -> bool:
        if self.terminal is not None:
            return False
        self.status = "stopped"
        self.executor.cancel()
        self._unpaused.set()
        self._disarm_deadline()
        await self._cancel_task()
        if self.replay is not None:
            self.replay.is_replaying = False
        await self.continuity.clear()
        self.log.info("[replay/sched] stopped")
        await self._emit(completed=False)
        return True

    async def wait_idle(self) -> None:
        """Let the current step task run to its natural end."""
        task = self._task
        if task is not None and task is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.shield(task)

    # -------------------------------------------------------------------
    # Stepping
    # -------------------------------------------------------------------
    async def _guarded_run(self) -> None:
        try:
            await self._run()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.log.exception("[replay/sched] stepping aborted")
            self.status = "stopped"
            if self.replay is not None:
                self.replay.is_replaying = False
            await self._emit(completed=False)

    async def _run(self) -> None:
        replay = self.replay
        events = replay.events
        speed = replay.speed_multiplier

        while replay.current_event_index < len(events):
            await self._unpaused.wait()
            k = replay.current_event_index
            event = events[k]
            navigating = event.type == "navigate"

            replay.current_event_index = k + 1
            if navigating:
                replay.events_executed += 1
                self.navigations_started += 1
                self.awaiting_document = True
            await self.continuity.snapshot(replay, handoff=navigating)

            self.log.debug("[replay/sched] event %s/%s: %s", k + 1, len(events), event.type)
            outcome = await self.executor.execute(event, self.cursor, speed)

            if outcome.status == "navigated":
                self.log.info("[replay/sched] waiting for next document (resume at %s)", k + 1)
                self._deadline = asyncio.create_task(self._document_deadline())
                return
            if navigating:
                # no new document is coming; carry on in this one
                self.awaiting_document = False
                if outcome.status != "executed":
                    replay.events_executed -= 1
                await self.continuity.snapshot(replay)
            elif outcome.status == "executed":
                replay.events_executed += 1

            if k + 1 < len(events):
                delay = (events[k + 1].t - event.t) / speed
            else:
                hold = event.duration_ms if event.duration_ms is not None else DEFAULT_FINAL_HOLD_MS
                delay = hold / speed
            await self._pausable_sleep(clamp_delay(delay))

        await self._complete()

    async def _pausable_sleep(self, ms: float) -> None:
        remaining = ms
        while remaining > 0:
            await self._unpaused.wait()
            began = self.adapter.now_ms()
            sleeper = asyncio.ensure_future(self.adapter.sleep(remaining))
            pauser = asyncio.ensure_future(self._paused.wait())
            try:
                done, _ = await asyncio.wait({sleeper, pauser}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                pauser.cancel()
                if not sleeper.done():
                    sleeper.cancel()
            if sleeper in done:
                return
            remaining -= self.adapter.now_ms() - began

    async def _complete(self) -> None:
        replay = self.replay
        self.status = "completed"
        replay.is_replaying = False
        await self.continuity.clear()
        self.log.info("[replay/sched] completed: %s event(s) executed", replay.events_executed)
        await self.adapter.sleep(COMPLETION_SETTLE_MS)
        await self._emit(completed=True)

    async def _emit(self, completed: bool) -> None:
        if self.terminal is not None:
            return
        replay = self.replay
        self.terminal = TerminalSignal(
            completed=completed,
            events_executed=replay.events_executed if replay else 0,
            capture_lost=replay.capture_lost if replay else False,
        )
        if self.on_terminal is not None:
            await self.on_terminal(self.terminal)

    async def _cancel_task(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _document_deadline(self) -> None:
        await self.adapter.sleep(NAVIGATION_TIMEOUT_MS)
        if not self.awaiting_document or self.terminal is not None:
            return
        self.log.debug("[replay/sched] no document ready within %sms of navigating", NAVIGATION_TIMEOUT_MS)
        if self.on_document_timeout is not None:
            await self.on_document_timeout()

    def _disarm_deadline(self) -> None:
        deadline, self._deadline = self._deadline, None
        if deadline is not None and not deadline.done() and deadline is not asyncio.current_task():
            deadline.cancel()
