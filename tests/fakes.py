from __future__ import annotations

import asyncio
import heapq
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from urllib.parse import urldefrag

from replay_service_lib.adapters import DomEvent, ElementInfo, FilePayload, PlatformAdapter
from replay_service_lib.clock import Clock
from replay_service_lib.continuity import MemoryContinuityStore
from replay_service_lib.errors import SelectorQueryError


class FakeClock(Clock):
    """Virtual milliseconds; sleeps only finish when the test advances time."""

    DRAIN_ROUNDS = 40

    def __init__(self, start: float = 1_000_000.0):
        self.now = start
        self.sleeps: list[float] = []
        self._timers: list[tuple[float, int, asyncio.Future]] = []
        self._seq = 0

    def now_ms(self) -> float:
        return self.now

    async def sleep(self, ms: float) -> None:
        ms = max(0.0, float(ms))
        self.sleeps.append(ms)
        fut = asyncio.get_running_loop().create_future()
        self._seq += 1
        heapq.heappush(self._timers, (self.now + ms, self._seq, fut))
        await fut

    @property
    def pending(self) -> int:
        return sum(1 for _, _, fut in self._timers if not fut.done())

    async def drain(self) -> None:
        for _ in range(self.DRAIN_ROUNDS):
            await asyncio.sleep(0)

    async def _fire_next(self, limit: float) -> bool:
        while self._timers:
            due, _, fut = self._timers[0]
            if fut.done():
                heapq.heappop(self._timers)
                continue
            if due > limit:
                return False
            heapq.heappop(self._timers)
            self.now = max(self.now, due)
            fut.set_result(None)
            await self.drain()
            return True
        return False

    async def advance(self, ms: float) -> None:
        target = self.now + ms
        await self.drain()
        while await self._fire_next(target):
            pass
        self.now = max(self.now, target)
        await self.drain()

    async def run_until(self, predicate: Callable[[], bool], limit_ms: float = 60_000) -> bool:
        """Fire timers in order until ``predicate`` holds or nothing is left to fire."""
        deadline = self.now + limit_ms
        await self.drain()
        while not predicate():
            if not await self._fire_next(deadline):
                break
        return predicate()


@dataclass(eq=False)
class FakeElement:
    tag: str
    text: str = ""
    input_type: str = ""
    rect: tuple[float, float, float, float] = (0.0, 0.0, 100.0, 20.0)
    value: str = ""
    connected: bool = True
    content_editable: bool = False
    files: list[FilePayload] = field(default_factory=list)

    @property
    def center(self) -> tuple[float, float]:
        x, y, w, h = self.rect
        return x + w / 2, y + h / 2

    def contains(self, x: float, y: float) -> bool:
        rx, ry, w, h = self.rect
        return rx <= x <= rx + w and ry <= y <= ry + h


class FakeDocument(PlatformAdapter):
    """In-memory document that records everything the engine does to it."""

    def __init__(
        self,
        clock: Optional[FakeClock] = None,
        *,
        capture_survives_navigation: bool = False,
        fire_on_navigate: bool = True,
    ):
        super().__init__(clock or FakeClock())
        self._capture_survives = capture_survives_navigation
        self.fire_on_navigate = fire_on_navigate
        self.url = "about:blank"
        self.selectors: dict[str, FakeElement] = {}
        self.elements: list[FakeElement] = []
        self.broken_selectors: set[str] = set()
        self.focused: Optional[FakeElement] = None
        self.wait_result = True

        self.navigations: list[str] = []
        self.dispatched: list[tuple[Optional[FakeElement], DomEvent]] = []
        self.cursor_moves: list[tuple[float, float]] = []
        self.scrolls: list[tuple[float, float, bool]] = []
        self.values: list[tuple[FakeElement, str]] = []
        self.overlay_log: list[tuple[Any, ...]] = []
        self.statuses: list[str] = []
        self.waits: list[tuple[str, int]] = []
        self._tasks: set[asyncio.Task] = set()

    # -- test setup ---------------------------------------------------
    def add(self, element: FakeElement, *selectors: str) -> FakeElement:
        self.elements.append(element)
        for sel in selectors:
            self.selectors[sel] = element
        return element

    def events_of(self, event_type: str) -> list[tuple[Optional[FakeElement], DomEvent]]:
        return [(el, ev) for el, ev in self.dispatched if ev.type == event_type]

    def overlay_calls(self, kind: str) -> list[tuple[Any, ...]]:
        return [entry for entry in self.overlay_log if entry[0] == kind]

    async def load(self) -> None:
        """Simulate the browser finishing a document load."""
        await self._fire_document_ready()

    @property
    def capture_survives_navigation(self) -> bool:
        return self._capture_survives

    # -- PlatformAdapter ----------------------------------------------
    def current_url(self) -> Optional[str]:
        return self.url

    async def navigate_to(self, url: str) -> None:
        anchor_only = urldefrag(url)[1] and urldefrag(url)[0] == urldefrag(self.url)[0]
        self.url = url
        self.navigations.append(url)
        if anchor_only:
            return
        self.focused = None
        if self.fire_on_navigate:
            task = asyncio.ensure_future(self._fire_document_ready())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def wait_for(self, condition, timeout_ms: int) -> bool:
        self.waits.append((condition.type, timeout_ms))
        return self.wait_result

    async def query_selector(self, selector: str):
        if selector in self.broken_selectors:
            raise SelectorQueryError(f"bad selector {selector!r}")
        el = self.selectors.get(selector)
        return el if el is not None and el.connected else None

    async def query_text(self, text: str):
        for el in self.elements:
            if el.connected and el.text.strip() == text:
                return el
        return None

    async def element_from_point(self, x: float, y: float):
        for el in reversed(self.elements):
            if el.connected and el.contains(x, y):
                return el
        return None

    async def describe(self, element: FakeElement) -> ElementInfo:
        return ElementInfo(tag=element.tag, input_type=element.input_type, content_editable=element.content_editable)

    async def element_center(self, element: FakeElement):
        return element.center if element.connected else None

    async def is_connected(self, element: FakeElement) -> bool:
        return element.connected

    async def focused_element(self):
        return self.focused

    async def invoke(self, element: FakeElement, method: str) -> None:
        if method == "focus":
            self.focused = element
        elif self.focused is element:
            self.focused = None

    async def dispatch(self, element, event: DomEvent) -> None:
        self.dispatched.append((element, event))

    async def set_value(self, element: FakeElement, value: str) -> None:
        element.value = value
        self.values.append((element, value))

    async def set_files(self, element: FakeElement, files: list[FilePayload]) -> None:
        element.files = list(files)

    async def scroll_to(self, x: float, y: float, smooth: bool = True) -> None:
        self.scrolls.append((x, y, smooth))

    async def move_cursor(self, x: float, y: float) -> None:
        self.cursor_moves.append((x, y))

    async def show_subtitle(self, subtitle) -> None:
        self.overlay_log.append(("show", subtitle.text, self.now_ms()))

    async def hide_subtitle(self) -> None:
        self.overlay_log.append(("hide", self.now_ms()))

    async def play_media(self, channel: str, src: str, kind: str = "audio") -> None:
        self.overlay_log.append(("play", channel, src, kind, self.now_ms()))

    async def stop_media(self, channel: str) -> None:
        self.overlay_log.append(("stop", channel, self.now_ms()))

    async def show_status(self, text: str, is_error: bool = False) -> None:
        self.statuses.append(text)


def storyboard_dict(timeline: list[dict], **extra) -> dict:
    doc = {
        "version": "1.0",
        "meta": {"title": "Demo", "baseUrl": "https://app.example.com/", "viewport": {"width": 1280, "height": 720}},
        "settings": {"typing": {"charsPerSec": 10, "randomize": 0}},
        "timeline": timeline,
    }
    doc.update(extra)
    return doc


class RecordingStore(MemoryContinuityStore):
    """Keeps every snapshot written under the session key, in order."""

    def __init__(self):
        super().__init__()
        self.snapshots: list[dict] = []

    async def set(self, key: str, value: str) -> None:
        if not key.endswith(":lease"):
            self.snapshots.append(json.loads(value))
        await super().set(key, value)
