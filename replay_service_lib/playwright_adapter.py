from __future__ import annotations

import asyncio
import base64
import contextlib
import logging
from typing import Any, Literal, Optional

try:
    from playwright.async_api import (  # type: ignore[import-not-found]
        ElementHandle,
        Error as PlaywrightError,
        Page,
        TimeoutError as PlaywrightTimeoutError,
    )
except ImportError as exc:  # pragma: no cover
    raise ImportError(
        "Playwright is required for headless replay. Install with `pip install playwright` and run `playwright install chromium`."
    ) from exc

from .adapters import DomEvent, ElementInfo, FilePayload, MediaKind, PlatformAdapter
from .clock import Clock
from .errors import SelectorQueryError
from .service_config import NAVIGATION_TIMEOUT_MS
from .service_models import Subtitle, WaitFor, WebcamSettings

logger = logging.getLogger("replay")


# -------------------------------------------------------------------
# In-document helpers (cursor, subtitle, media, status toast)
# -------------------------------------------------------------------
OVERLAY_HELPER_SCRIPT = r"""
(() => {
  if (window.__replayHelpersInstalled) return;
  window.__replayHelpersInstalled = true;

  const STYLE_ID = '__replay_styles';
  const CURSOR_ID = '__replay_cursor';
  const SUBTITLE_ID = '__replay_subtitle';
  const STATUS_ID = '__replay_status';
  const TOP_Z = 2147483647;

  function ensureStyles() {
    if (document.getElementById(STYLE_ID)) return;
    const style = document.createElement('style');
    style.id = STYLE_ID;
    style.textContent = `
      #${CURSOR_ID} {
        position: fixed; left: 0; top: 0; width: 20px; height: 20px;
        border-radius: 9999px; border: 2px solid #2563eb;
        background: rgba(37,99,235,0.15);
        z-index: ${TOP_Z}; pointer-events: none; will-change: transform;
      }
      #${SUBTITLE_ID} {
        position: fixed; left: 50%; transform: translateX(-50%);
        max-width: 80%; padding: 8px 16px; border-radius: 6px;
        background: rgba(0,0,0,0.72); text-align: center;
        z-index: ${TOP_Z - 1}; pointer-events: none; display: none;
      }
      #${STATUS_ID} {
        position: fixed; top: 12px; right: 12px; padding: 6px 12px;
        border-radius: 6px; font: 13px sans-serif; color: #fff;
        z-index: ${TOP_Z}; pointer-events: none; display: none;
      }
    `;
    (document.head || document.documentElement).appendChild(style);
  }

  function byId(id, tag) {
    ensureStyles();
    let el = document.getElementById(id);
    if (!el) {
      el = document.createElement(tag || 'div');
      el.id = id;
      document.documentElement.appendChild(el);
    }
    return el;
  }

  function setCursorPos(x, y) {
    const cur = byId(CURSOR_ID);
    cur.style.transform = `translate3d(${x - 10}px, ${y - 10}px, 0)`;
  }

  function showSubtitle(s) {
    const el = byId(SUBTITLE_ID);
    el.textContent = s.text || '';
    el.style.top = el.style.bottom = '';
    if (s.position === 'top') el.style.top = '8%';
    else if (s.position === 'middle') el.style.top = '45%';
    else el.style.bottom = '8%';
    el.style.fontFamily = s.fontFamily || 'sans-serif';
    el.style.fontSize = `${s.fontSize || 24}px`;
    el.style.color = s.fontColor || 'white';
    el.style.display = 'block';
  }

  function hideSubtitle() {
    const el = document.getElementById(SUBTITLE_ID);
    if (el) el.style.display = 'none';
  }

  const CORNERS = {
    'bottom-right': ['bottom', 'right'], 'bottom-left': ['bottom', 'left'],
    'top-right': ['top', 'right'], 'top-left': ['top', 'left'],
  };

  function playMedia(channel, src, kind, corner) {
    stopMedia(channel);
    const el = byId('__replay_media_' + channel, kind === 'video' ? 'video' : 'audio');
    if (kind === 'video') {
      const [v, h] = CORNERS[corner] || CORNERS['bottom-right'];
      Object.assign(el.style, {
        position: 'fixed', width: '200px', height: '200px', objectFit: 'cover',
        borderRadius: '9999px', zIndex: String(TOP_Z - 2), pointerEvents: 'none',
      });
      el.style[v] = '20px';
      el.style[h] = '20px';
      el.muted = true;
    }
    el.src = src;
    const p = el.play();
    if (p && p.catch) p.catch(() => {});
  }

  function stopMedia(channel) {
    const el = document.getElementById('__replay_media_' + channel);
    if (!el) return;
    el.pause();
    el.removeAttribute('src');
    el.remove();
  }

  let statusTimer = 0;
  function showStatus(text, isError) {
    const el = byId(STATUS_ID);
    el.textContent = text;
    el.style.background = isError ? 'rgba(220,38,38,0.9)' : 'rgba(17,24,39,0.85)';
    el.style.display = 'block';
    clearTimeout(statusTimer);
    statusTimer = setTimeout(() => { el.style.display = 'none'; }, 3000);
  }

  function findByText(text) {
    const needle = text.trim().toLowerCase();
    const walker = document.createTreeWalker(document.body || document.documentElement, NodeFilter.SHOW_ELEMENT);
    let best = null;
    while (walker.nextNode()) {
      const el = walker.currentNode;
      const own = (el.innerText || el.value || el.getAttribute('aria-label') || '').trim().toLowerCase();
      if (own && own.includes(needle)) best = el;
    }
    return best;
  }

  window.__replaySetCursorPos = setCursorPos;
  window.__replayShowSubtitle = showSubtitle;
  window.__replayHideSubtitle = hideSubtitle;
  window.__replayPlayMedia = playMedia;
  window.__replayStopMedia = stopMedia;
  window.__replayShowStatus = showStatus;
  window.__replayFindByText = findByText;
})();
"""

_DISPATCH_JS = """
(el, ev) => {
  const Ctor = window[ev.interface] || Event;
  (el || document).dispatchEvent(new Ctor(ev.type, ev.init));
}
"""

_SET_VALUE_JS = """
(el, v) => {
  if (el.isContentEditable) { el.textContent = v; return; }
  const proto = el instanceof HTMLTextAreaElement ? HTMLTextAreaElement.prototype : HTMLInputElement.prototype;
  const desc = Object.getOwnPropertyDescriptor(proto, 'value');
  if (desc && desc.set) desc.set.call(el, v); else el.value = v;
}
"""

_SET_FILES_JS = """
(el, files) => {
  const dt = new DataTransfer();
  for (const f of files) {
    const bin = atob(f.b64);
    const bytes = new Uint8Array(bin.length);
    for (let i = 0; i < bin.length; i++) bytes[i] = bin.charCodeAt(i);
    dt.items.add(new File([bytes], f.name, { type: f.type, lastModified: f.lastModified || Date.now() }));
  }
  el.files = dt.files;
}
"""

_DESCRIBE_JS = """
(el) => ({
  tag: (el.tagName || '').toLowerCase(),
  type: (el.getAttribute('type') || (el.tagName === 'INPUT' ? 'text' : '')).toLowerCase(),
  editable: !!el.isContentEditable,
})
"""


class PlaywrightAdapter(PlatformAdapter):
    """Host adapter over one Playwright page; element handles are ``ElementHandle``."""

    def __init__(
        self,
        page: Page,
        clock: Optional[Clock] = None,
        *,
        capture_survives_navigation: bool = True,
        webcam: Optional[WebcamSettings] = None,
        log: Optional[logging.Logger] = None,
    ):
        super().__init__(clock)
        self.page = page
        self.log = log or logger
        self.webcam = webcam or WebcamSettings()
        self._capture_survives = capture_survives_navigation
        self._tasks: set[asyncio.Task] = set()
        page.on("load", self._on_load)

    @property
    def capture_survives_navigation(self) -> bool:
        # context-level video keeps recording across documents
        return self._capture_survives

    async def install(self) -> None:
        """Inject the overlay helpers into this and every future document."""
        await self.page.context.add_init_script(OVERLAY_HELPER_SCRIPT)
        await self._ensure_helpers()

    async def close(self) -> None:
        with contextlib.suppress(Exception):
            self.page.remove_listener("load", self._on_load)
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            with contextlib.suppress(asyncio.CancelledError):
                await task

    def _on_load(self, _page: Any = None) -> None:
        self.log.debug("[replay/nav] document ready: %s", self.page.url)
        task = asyncio.ensure_future(self._fire_document_ready())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _ensure_helpers(self) -> None:
        with contextlib.suppress(Exception):
            await self.page.evaluate(OVERLAY_HELPER_SCRIPT)

    async def _call_helper(self, expr: str, *args: Any) -> None:
        await self._ensure_helpers()
        with contextlib.suppress(Exception):
            await self.page.evaluate(expr, list(args))

    # -- navigation ---------------------------------------------------
    def current_url(self) -> Optional[str]:
        return self.page.url

    async def navigate_to(self, url: str) -> None:
        try:
            await self.page.goto(url, wait_until="domcontentloaded", timeout=NAVIGATION_TIMEOUT_MS)
        except PlaywrightTimeoutError:
            self.log.warning("[replay/nav] domcontentloaded timeout for %s", url)

    async def wait_for(self, condition: WaitFor, timeout_ms: int) -> bool:
        try:
            if condition.type == "selector":
                if not condition.value:
                    return True
                await self.page.wait_for_selector(condition.value, timeout=timeout_ms)
            elif condition.type == "load":
                await self.page.wait_for_load_state("load", timeout=timeout_ms)
            else:
                await self.page.wait_for_load_state("networkidle", timeout=timeout_ms)
        except PlaywrightTimeoutError:
            return False
        except PlaywrightError as exc:
            self.log.debug("[replay/wait] %s wait failed: %s", condition.type, exc)
            return False
        return True

    # -- element lookup -----------------------------------------------
    async def query_selector(self, selector: str) -> Optional[ElementHandle]:
        try:
            return await self.page.query_selector(selector)
        except PlaywrightError as exc:
            raise SelectorQueryError(str(exc)) from exc

    async def _element_from_js(self, expr: str, arg: Any) -> Optional[ElementHandle]:
        await self._ensure_helpers()
        try:
            handle = await self.page.evaluate_handle(expr, arg)
        except PlaywrightError as exc:
            self.log.debug("[replay/locate] lookup failed: %s", exc)
            return None
        element = handle.as_element()
        if element is None:
            with contextlib.suppress(Exception):
                await handle.dispose()
        return element

    async def query_text(self, text: str) -> Optional[ElementHandle]:
        return await self._element_from_js("(t) => window.__replayFindByText ? window.__replayFindByText(t) : null", text)

    async def element_from_point(self, x: float, y: float) -> Optional[ElementHandle]:
        return await self._element_from_js("([x, y]) => document.elementFromPoint(x, y)", [x, y])

    async def describe(self, element: ElementHandle) -> ElementInfo:
        info = await element.evaluate(_DESCRIBE_JS)
        return ElementInfo(tag=info["tag"], input_type=info["type"], content_editable=bool(info["editable"]))

    async def element_center(self, element: ElementHandle) -> Optional[tuple[float, float]]:
        with contextlib.suppress(PlaywrightError):
            await element.scroll_into_view_if_needed(timeout=2000)
        box = None
        with contextlib.suppress(PlaywrightError):
            box = await element.bounding_box()
        if not box:
            return None
        return box["x"] + box["width"] / 2, box["y"] + box["height"] / 2

    async def is_connected(self, element: ElementHandle) -> bool:
        try:
            return bool(await element.evaluate("(el) => el.isConnected"))
        except PlaywrightError:
            return False

    async def focused_element(self) -> Optional[ElementHandle]:
        return await self._element_from_js(
            "() => (document.activeElement && document.activeElement !== document.body) ? document.activeElement : null",
            None,
        )

    # -- actions ------------------------------------------------------
    async def invoke(self, element: ElementHandle, method: Literal["focus", "blur"]) -> None:
        await element.evaluate("(el, m) => el[m]()", method)

    async def dispatch(self, element: Optional[ElementHandle], event: DomEvent) -> None:
        payload = event.to_payload()
        if element is None:
            await self.page.evaluate(f"(ev) => ({_DISPATCH_JS})(null, ev)", payload)
        else:
            await element.evaluate(_DISPATCH_JS, payload)

    async def set_value(self, element: ElementHandle, value: str) -> None:
        await element.evaluate(_SET_VALUE_JS, value)

    async def set_files(self, element: ElementHandle, files: list[FilePayload]) -> None:
        await element.evaluate(
            _SET_FILES_JS,
            [
                {
                    "name": f.name,
                    "type": f.mime_type,
                    "lastModified": f.last_modified,
                    "b64": base64.b64encode(f.buffer).decode("ascii"),
                }
                for f in files
            ],
        )

    async def scroll_to(self, x: float, y: float, smooth: bool = True) -> None:
        await self.page.evaluate(
            "([x, y, smooth]) => window.scrollTo({ left: x, top: y, behavior: smooth ? 'smooth' : 'auto' })",
            [x, y, smooth],
        )

    async def move_cursor(self, x: float, y: float) -> None:
        with contextlib.suppress(PlaywrightError):
            await self.page.mouse.move(x, y)
        await self._call_helper("([x, y]) => window.__replaySetCursorPos && window.__replaySetCursorPos(x, y)", x, y)

    # -- overlays -----------------------------------------------------
    async def show_subtitle(self, subtitle: Subtitle) -> None:
        await self._call_helper(
            "([s]) => window.__replayShowSubtitle && window.__replayShowSubtitle(s)",
            subtitle.model_dump(by_alias=True, exclude={"voiceover"}),
        )

    async def hide_subtitle(self) -> None:
        await self._call_helper("() => window.__replayHideSubtitle && window.__replayHideSubtitle()")

    async def play_media(self, channel: str, src: str, kind: MediaKind = "audio") -> None:
        await self._call_helper(
            "([c, s, k, corner]) => window.__replayPlayMedia && window.__replayPlayMedia(c, s, k, corner)",
            channel,
            src,
            kind,
            self.webcam.position,
        )

    async def stop_media(self, channel: str) -> None:
        await self._call_helper("([c]) => window.__replayStopMedia && window.__replayStopMedia(c)", channel)

    async def show_status(self, text: str, is_error: bool = False) -> None:
        await self._call_helper("([t, e]) => window.__replayShowStatus && window.__replayShowStatus(t, e)", text, is_error)
