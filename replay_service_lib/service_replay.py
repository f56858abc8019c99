from __future__ import annotations

import asyncio
import contextlib
import logging
import shutil
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

try:
    from playwright.async_api import async_playwright  # type: ignore[import-not-found]
except ImportError as exc:  # pragma: no cover
    raise ImportError(
        "Playwright is required for headless replay. Install with `pip install playwright` and run `playwright install chromium`."
    ) from exc

from .continuity import ContinuityStore
from .engine import ReplayEngine
from .playwright_adapter import PlaywrightAdapter
from .service_config import CHROME_BIN, CONTINUITY_SESSION_KEY, MAX_CHROME_CONCURRENCY
from .service_models import ReplayNotice, Storyboard, TerminalSignal
from .service_video import convert_webm_to_mp4, ensure_ffmpeg_available
from .timeline_loader import attach_local_assets, initial_url

logger = logging.getLogger("replay")

_CHROME_SEMAPHORE = asyncio.Semaphore(MAX_CHROME_CONCURRENCY)


@dataclass
class ReplayOutcome:
    terminal: TerminalSignal
    video_path: Optional[Path] = None
    notices: list[ReplayNotice] = field(default_factory=list)
    conversion_error: Optional[str] = None


def _resolve_viewport(storyboard: Storyboard, width: Optional[int], height: Optional[int]) -> dict:
    vp = storyboard.meta.viewport
    return {"width": int(width or vp.width), "height": int(height or vp.height)}


async def replay_storyboard(
    storyboard: Storyboard,
    *,
    speed: float = 1.0,
    record_video: bool = False,
    video_dir: Optional[Path] = None,
    headless: bool = True,
    viewport_width: Optional[int] = None,
    viewport_height: Optional[int] = None,
    store: Optional[ContinuityStore] = None,
    session_key: str = CONTINUITY_SESSION_KEY,
    assets_dir: Optional[Path] = None,
    webcam: Optional[Path] = None,
    webcam_position: Optional[str] = None,
    on_engine: Optional[Callable[[ReplayEngine], None]] = None,
    logger_instance: Optional[logging.Logger] = None,
) -> ReplayOutcome:
    """
    Run one timeline in Playwright Chromium until its terminal signal.

    With ``record_video`` the browser context records to webm, which is
    converted to mp4 under ``video_dir`` once the browser has closed. Local
    files under ``assets_dir`` (and a ``webcam`` override) are inlined first.
    """
    log = logger_instance or logger
    if assets_dir is not None or webcam is not None or webcam_position:
        storyboard = attach_local_assets(storyboard, assets_dir, webcam=webcam, webcam_position=webcam_position)
    viewport = _resolve_viewport(storyboard, viewport_width, viewport_height)

    temp_dir: Optional[Path] = None
    final_mp4: Optional[Path] = None
    if record_video:
        ensure_ffmpeg_available()
        out_dir = Path(video_dir or ".")
        run_id = uuid.uuid4().hex[:10]
        temp_dir = out_dir / f"{run_id}_tmp"
        temp_dir.mkdir(parents=True, exist_ok=True)
        final_mp4 = out_dir / f"{run_id}.mp4"

    page_video = None
    engine: Optional[ReplayEngine] = None

    async with _CHROME_SEMAPHORE:
        log.info("[replay] acquired chromium slot (max=%s)", MAX_CHROME_CONCURRENCY)
        playwright = None
        browser = None
        context = None
        adapter: Optional[PlaywrightAdapter] = None

        try:
            playwright = await async_playwright().start()
            browser = await playwright.chromium.launch(
                headless=headless,
                executable_path=CHROME_BIN if CHROME_BIN else None,
                args=["--no-sandbox", "--disable-dev-shm-usage", "--autoplay-policy=no-user-gesture-required"],
            )
            context_kwargs = {
                "viewport": viewport,
                "device_scale_factor": storyboard.meta.viewport.device_scale_factor,
            }
            if temp_dir is not None:
                context_kwargs["record_video_dir"] = str(temp_dir)
                context_kwargs["record_video_size"] = viewport
            context = await browser.new_context(**context_kwargs)
            page = await context.new_page()

            adapter = PlaywrightAdapter(
                page,
                capture_survives_navigation=True,
                webcam=storyboard.settings.webcam,
                log=log,
            )
            await adapter.install()
            engine = ReplayEngine(adapter, store, session_key=session_key, log=log)
            if on_engine is not None:
                on_engine(engine)

            start_url = initial_url(storyboard)
            if start_url:
                log.info("[replay/nav] opening %s", start_url)
                await adapter.navigate_to(start_url)

            await engine.start(storyboard, speed=speed, recording_mode=record_video)
            try:
                terminal = await engine.wait_terminal()
            except asyncio.CancelledError:
                with contextlib.suppress(Exception):
                    await engine.stop()
                raise

            page_video = page.video if temp_dir is not None else None
        finally:
            if adapter is not None:
                await adapter.close()
            with contextlib.suppress(Exception):
                if context:
                    await context.close()
            with contextlib.suppress(Exception):
                if browser:
                    await browser.close()
            with contextlib.suppress(Exception):
                if playwright:
                    await playwright.stop()

    outcome = ReplayOutcome(terminal=terminal, notices=list(engine.notices) if engine else [])

    if page_video is not None and final_mp4 is not None:
        webm_path = Path(await page_video.path())
        try:
            convert_webm_to_mp4(webm_path, final_mp4)
            outcome.video_path = final_mp4
            log.info("[replay/video] converted %s -> %s", webm_path, final_mp4)
        except (OSError, RuntimeError) as exc:
            log.error("[replay/video] ffmpeg conversion failed: %s", exc)
            outcome.conversion_error = str(exc)
        with contextlib.suppress(OSError):
            webm_path.unlink()
    if temp_dir is not None:
        shutil.rmtree(temp_dir, ignore_errors=True)

    return outcome
