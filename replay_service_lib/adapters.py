from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal, Optional

from .clock import Clock
from .service_models import Modifiers, Position, Subtitle, WaitFor

MediaKind = Literal["audio", "video"]
DocumentReadyCallback = Callable[[], Awaitable[None]]

_TEXT_INPUT_TYPES = {"", "text", "search", "email", "url", "tel", "password", "number"}


@dataclass
class CursorState:
    x: float = 0.0
    y: float = 0.0


@dataclass
class ElementInfo:
    tag: str
    input_type: str = ""
    content_editable: bool = False

    @property
    def is_text_entry(self) -> bool:
        if self.content_editable or self.tag == "textarea":
            return True
        return self.tag == "input" and self.input_type in _TEXT_INPUT_TYPES

    @property
    def is_file_input(self) -> bool:
        return self.tag == "input" and self.input_type == "file"


@dataclass
class FilePayload:
    name: str
    mime_type: str
    last_modified: Optional[int]
    buffer: bytes


@dataclass
class DomEvent:
    """A synthetic DOM event to construct and dispatch inside the document."""

    type: str
    interface: Literal["Event", "MouseEvent", "FocusEvent", "KeyboardEvent"] = "Event"
    bubbles: bool = True
    cancelable: bool = False
    init: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "interface": self.interface,
            "init": {"bubbles": self.bubbles, "cancelable": self.cancelable, **self.init},
        }


def mouse_event(event_type: str, position: Optional[Position]) -> DomEvent:
    return DomEvent(
        type=event_type,
        interface="MouseEvent",
        cancelable=True,
        init={"clientX": position.x if position else 0, "clientY": position.y if position else 0},
    )


def focus_event(event_type: str) -> DomEvent:
    return DomEvent(type=event_type, interface="FocusEvent")


def keyboard_event(key: str, modifiers: Modifiers) -> DomEvent:
    return DomEvent(
        type="keydown",
        interface="KeyboardEvent",
        cancelable=True,
        init={
            "key": key,
            "ctrlKey": modifiers.ctrl,
            "altKey": modifiers.alt,
            "shiftKey": modifiers.shift,
            "metaKey": modifiers.meta,
        },
    )


def plain_event(event_type: str) -> DomEvent:
    return DomEvent(type=event_type)


class PlatformAdapter(abc.ABC):
    """
    Host capabilities the engine needs from a live document.

    One implementation per host (headless automation, test double); the
    scheduler, executor and overlay player only ever talk to this interface.
    Element handles are opaque to the engine.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or Clock()
        self._document_ready_cb: Optional[DocumentReadyCallback] = None

    # -- time ---------------------------------------------------------
    def now_ms(self) -> float:
        return self.clock.now_ms()

    async def sleep(self, ms: float) -> None:
        await self.clock.sleep(ms)

    # -- lifecycle ----------------------------------------------------
    @property
    def capture_survives_navigation(self) -> bool:
        """Whether an active video capture outlives a document navigation."""
        return False

    def on_document_ready(self, callback: Optional[DocumentReadyCallback]) -> None:
        self._document_ready_cb = callback

    async def _fire_document_ready(self) -> None:
        if self._document_ready_cb is not None:
            await self._document_ready_cb()

    # -- navigation ---------------------------------------------------
    def current_url(self) -> Optional[str]:
        """URL of the live document, when the host can tell."""
        return None

    @abc.abstractmethod
    async def navigate_to(self, url: str) -> None: ...

    @abc.abstractmethod
    async def wait_for(self, condition: WaitFor, timeout_ms: int) -> bool:
        """Return False when the deadline passes first."""

    # -- element lookup -----------------------------------------------
    @abc.abstractmethod
    async def query_selector(self, selector: str) -> Optional[Any]:
        """First match or None; raises SelectorQueryError for unusable selectors."""

    @abc.abstractmethod
    async def query_text(self, text: str) -> Optional[Any]: ...

    @abc.abstractmethod
    async def element_from_point(self, x: float, y: float) -> Optional[Any]: ...

    @abc.abstractmethod
    async def describe(self, element: Any) -> ElementInfo: ...

    @abc.abstractmethod
    async def element_center(self, element: Any) -> Optional[tuple[float, float]]: ...

    @abc.abstractmethod
    async def is_connected(self, element: Any) -> bool: ...

    @abc.abstractmethod
    async def focused_element(self) -> Optional[Any]: ...

    # -- actions ------------------------------------------------------
    @abc.abstractmethod
    async def invoke(self, element: Any, method: Literal["focus", "blur"]) -> None: ...

    @abc.abstractmethod
    async def dispatch(self, element: Optional[Any], event: DomEvent) -> None:
        """Dispatch at ``element``, or at the document root when it is None."""

    @abc.abstractmethod
    async def set_value(self, element: Any, value: str) -> None: ...

    @abc.abstractmethod
    async def set_files(self, element: Any, files: list[FilePayload]) -> None: ...

    @abc.abstractmethod
    async def scroll_to(self, x: float, y: float, smooth: bool = True) -> None: ...

    @abc.abstractmethod
    async def move_cursor(self, x: float, y: float) -> None: ...

    # -- overlays -----------------------------------------------------
    @abc.abstractmethod
    async def show_subtitle(self, subtitle: Subtitle) -> None: ...

    @abc.abstractmethod
    async def hide_subtitle(self) -> None: ...

    @abc.abstractmethod
    async def play_media(self, channel: str, src: str, kind: MediaKind = "audio") -> None: ...

    @abc.abstractmethod
    async def stop_media(self, channel: str) -> None: ...

    @abc.abstractmethod
    async def show_status(self, text: str, is_error: bool = False) -> None: ...
