from __future__ import annotations

import asyncio
import base64
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal, Optional
from urllib.parse import unquote_to_bytes, urldefrag

from .adapters import (
    CursorState,
    FilePayload,
    PlatformAdapter,
    focus_event,
    keyboard_event,
    mouse_event,
    plain_event,
)
from .errors import ReplayNoticeCode
from .motion import cursor_path, should_paste, typing_delays
from .selector_resolver import Resolution, SelectorResolver
from .service_config import (
    DATA_URL_RE,
    DEFAULT_PAUSE_MS,
    SCROLL_SETTLE_MS,
    WAIT_FOR_LOAD_TIMEOUT_MS,
    WAIT_FOR_NAVIGATION_TIMEOUT_MS,
    WAIT_FOR_SELECTOR_TIMEOUT_MS,
)
from .service_models import (
    BlurEvent,
    ClickEvent,
    FileSnapshot,
    FocusEvent,
    HoverEvent,
    KeypressEvent,
    NavigateEvent,
    PauseEvent,
    Position,
    ScrollEvent,
    StoryboardSettings,
    TargetedEvent,
    TypeEvent,
    UploadEvent,
    WaitFor,
)

logger = logging.getLogger("replay")

OutcomeStatus = Literal["executed", "skipped", "navigated"]
NoticeSink = Callable[[ReplayNoticeCode, str], Awaitable[None]]

_DEFAULT_WAIT_TIMEOUTS = {
    "selector": WAIT_FOR_SELECTOR_TIMEOUT_MS,
    "load": WAIT_FOR_LOAD_TIMEOUT_MS,
    "navigation": WAIT_FOR_NAVIGATION_TIMEOUT_MS,
}


@dataclass
class ExecutionOutcome:
    event_type: str
    status: OutcomeStatus
    strategy: Optional[str] = None
    reason: Optional[str] = None


def is_fragment_change(current: Optional[str], target: str) -> bool:
    """True when ``target`` only moves to an anchor within the ``current`` document."""
    if not current:
        return False
    base, fragment = urldefrag(target)
    return bool(fragment) and base == urldefrag(current)[0]


def decode_file_snapshot(snapshot: FileSnapshot) -> FilePayload:
    """Rebuild upload bytes from a data URL or a bare base64 string."""
    raw = snapshot.data or ""
    mime = snapshot.type
    m = DATA_URL_RE.match(raw)
    if m:
        if m.group("b64"):
            buffer = base64.b64decode(m.group("data"))
        else:
            buffer = unquote_to_bytes(m.group("data"))
        if not mime and m.group("mime"):
            mime = m.group("mime")
    else:
        buffer = base64.b64decode(raw)
    return FilePayload(
        name=snapshot.name,
        mime_type=mime or "application/octet-stream",
        last_modified=snapshot.last_modified,
        buffer=buffer,
    )


class EventExecutor:
    """Performs one timeline entry against the live document."""

    def __init__(
        self,
        adapter: PlatformAdapter,
        settings: Optional[StoryboardSettings] = None,
        resolver: Optional[SelectorResolver] = None,
        *,
        rng: Optional[random.Random] = None,
        notice_sink: Optional[NoticeSink] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.adapter = adapter
        self.settings = settings or StoryboardSettings()
        self.log = log or logger
        self.resolver = resolver or SelectorResolver(self.log)
        self._rng = rng or random.Random()
        self._notice_sink = notice_sink
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def reset(self) -> None:
        self._cancelled = False

    async def execute(self, event, cursor: CursorState, speed: float = 1.0) -> ExecutionOutcome:
        handler = getattr(self, f"_do_{event.type}", None)
        if handler is None:
            self.log.warning("[replay] unsupported event type: %s", event.type)
            return ExecutionOutcome(event.type, "skipped", reason="unsupported event type")
        try:
            return await handler(event, cursor, speed)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.log.warning("[replay/%s] action failed: %s", event.type, exc)
            await self._notice(ReplayNoticeCode.DISPATCH_FAILED, f"{event.type} failed: {exc}")
            return ExecutionOutcome(event.type, "skipped", reason=str(exc))

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------
    async def _notice(self, code: ReplayNoticeCode, message: str) -> None:
        if self._notice_sink is not None:
            await self._notice_sink(code, message)

    async def _resolve(self, event: TargetedEvent) -> Optional[Resolution]:
        res = await self.resolver.resolve(event.target, self.adapter, event.position)
        if res is not None:
            self.log.debug("[replay/locate] %s resolved via %s: %s", event.type, res.strategy, res.detail)
        return res

    async def _unresolved(self, event: TargetedEvent) -> ExecutionOutcome:
        selectors = ", ".join(event.target.selectors) or "<none>"
        self.log.warning("[replay/%s] target not found (selectors: %s)", event.type, selectors)
        await self._notice(ReplayNoticeCode.TARGET_UNRESOLVED, f"{event.type}: element not found")
        return ExecutionOutcome(event.type, "skipped", reason="target unresolved")

    async def _pointer_point(self, element, event: TargetedEvent) -> Optional[tuple[float, float]]:
        center = await self.adapter.element_center(element)
        if center is not None:
            return center
        if event.position is not None:
            return event.position.x, event.position.y
        return None

    async def _glide(self, cursor: CursorState, point: tuple[float, float]) -> None:
        for wp in cursor_path((cursor.x, cursor.y), point, self.settings.cursor):
            await self.adapter.move_cursor(wp.x, wp.y)
            cursor.x, cursor.y = wp.x, wp.y
            if wp.hold_ms:
                await self.adapter.sleep(wp.hold_ms)

    async def _await_condition(self, condition: WaitFor) -> bool:
        timeout = condition.timeout_ms if condition.timeout_ms is not None else _DEFAULT_WAIT_TIMEOUTS[condition.type]
        ok = await self.adapter.wait_for(condition, timeout)
        if not ok:
            self.log.warning(
                "[replay/wait] %s condition not met within %sms (value=%s); continuing",
                condition.type,
                timeout,
                condition.value,
            )
            await self._notice(ReplayNoticeCode.NAVIGATION_TIMEOUT, f"waited {timeout}ms for {condition.type}")
        return ok

    @staticmethod
    def _event_position(event: TargetedEvent, fallback: Optional[tuple[float, float]]) -> Optional[Position]:
        if event.position is not None:
            return event.position
        if fallback is not None:
            return Position(x=fallback[0], y=fallback[1])
        return None

    # -------------------------------------------------------------------
    # Event kinds
    # -------------------------------------------------------------------
    async def _do_navigate(self, event: NavigateEvent, cursor: CursorState, speed: float) -> ExecutionOutcome:
        same_document = is_fragment_change(self.adapter.current_url(), event.url)
        self.log.info("[replay/nav] navigating to %s", event.url)
        await self.adapter.navigate_to(event.url)
        if event.wait_for is not None:
            await self._await_condition(event.wait_for)
        if same_document:
            self.log.info("[replay/nav] anchor change only; staying in this document")
            return ExecutionOutcome(event.type, "executed", reason="same document")
        return ExecutionOutcome(event.type, "navigated")

    async def _do_click(self, event: ClickEvent, cursor: CursorState, speed: float) -> ExecutionOutcome:
        res = await self._resolve(event)
        if res is None:
            return await self._unresolved(event)
        point = await self._pointer_point(res.element, event)
        if point is not None:
            await self._glide(cursor, point)
        await self.adapter.dispatch(res.element, mouse_event("click", self._event_position(event, point)))
        self.log.info("[replay/click] clicked %s", res.detail)
        if event.wait_for is not None:
            await self._await_condition(event.wait_for)
        return ExecutionOutcome(event.type, "executed", strategy=res.strategy)

    async def _do_hover(self, event: HoverEvent, cursor: CursorState, speed: float) -> ExecutionOutcome:
        res = await self._resolve(event)
        if res is None:
            return await self._unresolved(event)
        point = await self._pointer_point(res.element, event)
        if point is not None:
            await self._glide(cursor, point)
        position = self._event_position(event, point)
        await self.adapter.dispatch(res.element, mouse_event("mouseover", position))
        enter = mouse_event("mouseenter", position)
        enter.bubbles = False
        await self.adapter.dispatch(res.element, enter)
        return ExecutionOutcome(event.type, "executed", strategy=res.strategy)

    async def _do_focus(self, event: FocusEvent, cursor: CursorState, speed: float) -> ExecutionOutcome:
        res = await self._resolve(event)
        if res is None:
            return await self._unresolved(event)
        point = await self._pointer_point(res.element, event)
        if point is not None:
            await self._glide(cursor, point)
        await self.adapter.invoke(res.element, "focus")
        await self.adapter.dispatch(res.element, focus_event("focus"))
        return ExecutionOutcome(event.type, "executed", strategy=res.strategy)

    async def _do_blur(self, event: BlurEvent, cursor: CursorState, speed: float) -> ExecutionOutcome:
        res = await self._resolve(event)
        if res is None:
            return await self._unresolved(event)
        point = await self._pointer_point(res.element, event)
        if point is not None:
            await self._glide(cursor, point)
        await self.adapter.invoke(res.element, "blur")
        await self.adapter.dispatch(res.element, focus_event("blur"))
        return ExecutionOutcome(event.type, "executed", strategy=res.strategy)

    async def _do_type(self, event: TypeEvent, cursor: CursorState, speed: float) -> ExecutionOutcome:
        res = await self._resolve(event)
        if res is None:
            return await self._unresolved(event)
        element = res.element
        info = await self.adapter.describe(element)
        if not info.is_text_entry:
            self.log.warning("[replay/type] resolved <%s type=%s> is not a text field", info.tag, info.input_type)
            await self._notice(ReplayNoticeCode.TARGET_UNRESOLVED, "type: target is not a text field")
            return ExecutionOutcome(event.type, "skipped", strategy=res.strategy, reason="not a text-entry element")

        center = await self.adapter.element_center(element)
        if center is not None:
            await self.adapter.move_cursor(*center)
            cursor.x, cursor.y = center

        typing = event.typing or self.settings.typing
        text = event.text
        await self.adapter.invoke(element, "focus")
        await self.adapter.set_value(element, "")

        if should_paste(text, typing.paste_long_text_over):
            await self.adapter.set_value(element, text)
            await self.adapter.dispatch(element, plain_event("input"))
            await self.adapter.dispatch(element, plain_event("change"))
            self.log.info("[replay/type] pasted %d chars", len(text))
            return ExecutionOutcome(event.type, "executed", strategy=res.strategy)

        typed = ""
        delays = typing_delays(text, typing.chars_per_sec, typing.randomize, self._rng)
        for ch, delay in zip(text, delays):
            await self.adapter.sleep(delay / speed)
            if self._cancelled:
                self.log.info("[replay/type] cancelled after %d/%d chars", len(typed), len(text))
                return ExecutionOutcome(event.type, "skipped", strategy=res.strategy, reason="cancelled")
            if not await self.adapter.is_connected(element):
                self.log.info("[replay/type] target detached after %d/%d chars; aborting", len(typed), len(text))
                return ExecutionOutcome(event.type, "skipped", strategy=res.strategy, reason="target detached")
            typed += ch
            await self.adapter.set_value(element, typed)
            await self.adapter.dispatch(element, plain_event("input"))

        await self.adapter.dispatch(element, plain_event("change"))
        self.log.info("[replay/type] typed %d chars", len(typed))
        return ExecutionOutcome(event.type, "executed", strategy=res.strategy)

    async def _do_scroll(self, event: ScrollEvent, cursor: CursorState, speed: float) -> ExecutionOutcome:
        await self.adapter.scroll_to(event.position.x, event.position.y, smooth=True)
        self.log.info("[replay/scroll] to x=%s y=%s", event.position.x, event.position.y)
        await self.adapter.sleep(SCROLL_SETTLE_MS)
        return ExecutionOutcome(event.type, "executed")

    async def _do_keypress(self, event: KeypressEvent, cursor: CursorState, speed: float) -> ExecutionOutcome:
        target = await self.adapter.focused_element()
        await self.adapter.dispatch(target, keyboard_event(event.key, event.modifiers))
        self.log.info("[replay/key] %s on %s", event.key, "focused element" if target is not None else "document")
        return ExecutionOutcome(event.type, "executed")

    async def _do_upload(self, event: UploadEvent, cursor: CursorState, speed: float) -> ExecutionOutcome:
        res = await self._resolve(event)
        if res is None:
            return await self._unresolved(event)
        info = await self.adapter.describe(res.element)
        if not info.is_file_input:
            self.log.warning("[replay/upload] resolved <%s type=%s> is not a file input", info.tag, info.input_type)
            await self._notice(ReplayNoticeCode.TARGET_UNRESOLVED, "upload: target is not a file input")
            return ExecutionOutcome(event.type, "skipped", strategy=res.strategy, reason="not a file input")

        if not event.files:
            missing = event.file_ref or "no files recorded"
            self.log.warning("[replay/upload] nothing to attach (%s)", missing)
            await self._notice(ReplayNoticeCode.TARGET_UNRESOLVED, f"upload: file not available ({missing})")
            return ExecutionOutcome(event.type, "skipped", strategy=res.strategy, reason="no files")

        payloads = [decode_file_snapshot(f) for f in event.files]
        await self.adapter.set_files(res.element, payloads)
        await self.adapter.dispatch(res.element, plain_event("change"))
        await self.adapter.dispatch(res.element, plain_event("input"))
        self.log.info("[replay/upload] attached %d file(s)", len(payloads))
        return ExecutionOutcome(event.type, "executed", strategy=res.strategy)

    async def _do_pause(self, event: PauseEvent, cursor: CursorState, speed: float) -> ExecutionOutcome:
        hold = event.duration_ms if event.duration_ms is not None else DEFAULT_PAUSE_MS
        await self.adapter.sleep(hold / speed)
        return ExecutionOutcome(event.type, "executed")
