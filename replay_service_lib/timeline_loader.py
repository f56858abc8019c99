from __future__ import annotations

import base64
import json
import logging
import mimetypes
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import ValidationError

from .errors import MalformedTimelineError
from .service_models import EVENT_TYPES, FileSnapshot, MediaTrack, Storyboard

logger = logging.getLogger("replay")

_TARGETED = {"click", "hover", "focus", "blur", "type", "upload"}
_WAIT_TYPES = {"selector", "load", "navigation"}


@dataclass
class ValidationReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def _is_number(v: Any) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _check_position(pos: Any) -> bool:
    return isinstance(pos, dict) and _is_number(pos.get("x")) and _is_number(pos.get("y"))


def _check_event(idx: int, ev: dict, report: ValidationReport) -> None:
    kind = ev.get("type")
    where = f"Event {idx} ({kind})"

    if kind == "navigate":
        if not isinstance(ev.get("url"), str) or not ev.get("url"):
            report.errors.append(f"{where}: missing 'url'")
    elif kind == "scroll":
        if not _check_position(ev.get("position")):
            report.errors.append(f"{where}: 'position' must have numeric x and y")
    elif kind == "keypress":
        if not isinstance(ev.get("key"), str) or not ev.get("key"):
            report.errors.append(f"{where}: missing 'key'")
    elif kind == "type":
        if not isinstance(ev.get("text"), str):
            report.errors.append(f"{where}: 'text' must be a string")
    elif kind == "upload":
        file_ref = ev.get("fileRef")
        if file_ref is not None and (not isinstance(file_ref, str) or not file_ref.strip()):
            report.errors.append(f"{where}: 'fileRef' must be a non-empty string")
        elif file_ref is None and not isinstance(ev.get("files"), list):
            report.errors.append(f"{where}: needs a 'files' array or a 'fileRef'")

    wait_for = ev.get("waitFor")
    if wait_for is not None and (not isinstance(wait_for, dict) or wait_for.get("type") not in _WAIT_TYPES):
        report.errors.append(f"{where}: waitFor.type must be one of {sorted(_WAIT_TYPES)}")

    if kind not in _TARGETED:
        return
    position = ev.get("position")
    if position is not None and not _check_position(position):
        report.errors.append(f"{where}: 'position' must have numeric x and y")
    target = ev.get("target") or {}
    if not isinstance(target, dict):
        report.errors.append(f"{where}: 'target' must be an object")
        return
    selectors = target.get("selectors") or []
    if not isinstance(selectors, list):
        report.errors.append(f"{where}: target.selectors must be an array")
        return
    selectors = [s for s in selectors if isinstance(s, str) and s.strip()]
    has_fallback = bool((target.get("textHint") or "").strip()) or position is not None
    if not selectors and not has_fallback:
        report.errors.append(f"{where}: target has no selectors, textHint or position")
    elif not selectors:
        report.warnings.append(f"Event {idx}: no selectors defined")
    elif len(selectors) == 1:
        report.warnings.append(f"Event {idx}: only one selector (recommend multiple fallbacks)")


def validate_storyboard(raw: Any) -> ValidationReport:
    """Structural checks on a raw timeline document; never raises."""
    report = ValidationReport()
    if not isinstance(raw, dict):
        report.errors.append("Storyboard must be a JSON object")
        return report

    if not raw.get("version"):
        report.warnings.append("Missing version field")
    if not raw.get("meta"):
        report.warnings.append("Missing meta field")

    if "timeline" not in raw:
        report.errors.append("Missing timeline field")
        return report
    timeline = raw["timeline"]
    if not isinstance(timeline, list):
        report.errors.append("Timeline must be an array")
        return report

    prev_t = None
    for idx, ev in enumerate(timeline):
        if not isinstance(ev, dict):
            report.errors.append(f"Event {idx}: must be an object")
            continue
        t = ev.get("t")
        if not _is_number(t) or t < 0:
            report.errors.append(f"Event {idx}: missing or invalid 't' (timestamp)")
        else:
            if prev_t is not None and t < prev_t:
                report.errors.append(f"Event {idx}: 't' decreases ({t} < {prev_t})")
            prev_t = t
        kind = ev.get("type")
        if not kind:
            report.errors.append(f"Event {idx}: missing 'type' field")
            continue
        if kind not in EVENT_TYPES:
            report.errors.append(f"Event {idx}: unknown type {kind!r}")
            continue
        _check_event(idx, ev, report)

    subtitles = raw.get("subtitles")
    if subtitles is not None:
        if not isinstance(subtitles, list):
            report.errors.append("Subtitles must be an array")
        else:
            for idx, sub in enumerate(subtitles):
                if not isinstance(sub, dict) or not _is_number(sub.get("time")) or not _is_number(sub.get("duration")):
                    report.errors.append(f"Subtitle {idx}: needs numeric 'time' and 'duration'")

    return report


def _read_source(source: Union[dict, str, Path]) -> Any:
    if isinstance(source, dict):
        return source
    if isinstance(source, str) and source.lstrip().startswith("{"):
        text = source
    else:
        path = Path(source)
        if not path.is_file():
            raise MalformedTimelineError([f"File not found: {path}"])
        text = path.read_text(encoding="utf-8")
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedTimelineError([f"Invalid JSON: {exc}"]) from exc


def load_storyboard(source: Union[dict, str, Path]) -> Storyboard:
    """Parse and validate a timeline document (dict, JSON text or file path)."""
    raw = _read_source(source)
    report = validate_storyboard(raw)
    if report.errors:
        raise MalformedTimelineError(report.errors)
    try:
        return Storyboard.model_validate(raw)
    except ValidationError as exc:
        errors = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        ]
        raise MalformedTimelineError(errors) from exc


def describe_storyboard(storyboard: Storyboard) -> dict[str, Any]:
    events = storyboard.timeline
    duration_ms = max((e.t for e in events), default=0)
    vp = storyboard.meta.viewport
    return {
        "title": storyboard.meta.title or "Untitled",
        "createdAt": storyboard.meta.created_at,
        "baseUrl": storyboard.meta.base_url,
        "viewport": f"{vp.width}x{vp.height}",
        "events": len(events),
        "durationMs": duration_ms,
        "eventTypes": dict(Counter(e.type for e in events)),
        "subtitles": len(storyboard.subtitles),
        "voiceovers": sum(1 for s in storyboard.subtitles if s.voiceover is not None),
        "originalAudio": storyboard.original_audio is not None,
        "webcamVideo": storyboard.webcam_video is not None,
    }


def prepare_timeline(
    storyboard: Storyboard,
    recording_mode: bool = False,
    capture_survives_navigation: bool = False,
) -> Storyboard:
    """Drop navigations that would kill an in-progress capture; otherwise return as-is."""
    if not recording_mode or capture_survives_navigation:
        return storyboard
    kept = [e for e in storyboard.timeline if e.type != "navigate"]
    if len(kept) == len(storyboard.timeline):
        return storyboard
    return storyboard.model_copy(update={"timeline": kept})


def initial_url(storyboard: Storyboard) -> str | None:
    if storyboard.meta.base_url:
        return storyboard.meta.base_url
    for e in storyboard.timeline:
        if e.type == "navigate":
            return e.url
    return None


# -------------------------------------------------------------------
# Local assets
# -------------------------------------------------------------------
_REMOTE_PREFIXES = ("http:", "https:", "data:", "blob:", "file:")


def _data_url(path: Path, fallback_mime: str) -> str:
    mime = mimetypes.guess_type(path.name)[0] or fallback_mime
    return f"data:{mime};base64,{base64.b64encode(path.read_bytes()).decode('ascii')}"


def _local_file(ref: str, assets_dir: Path) -> Optional[Path]:
    if not ref or ref.lower().startswith(_REMOTE_PREFIXES):
        return None
    path = Path(ref)
    if not path.is_absolute():
        path = assets_dir / path
    return path if path.is_file() else None


def _inline_media(src: Optional[str], assets_dir: Path, fallback_mime: str) -> Optional[str]:
    path = _local_file(src or "", assets_dir)
    if path is None:
        return src
    logger.info("[replay/assets] inlining %s", path)
    return _data_url(path, fallback_mime)


def attach_local_assets(
    storyboard: Storyboard,
    assets_dir: Union[str, Path, None] = None,
    *,
    webcam: Union[str, Path, None] = None,
    webcam_position: Optional[str] = None,
) -> Storyboard:
    """
    Inline files a browser page cannot open by path.

    Uploads that only name a ``fileRef`` are read from ``assets_dir``; local
    voiceover, original-audio and webcam paths become data URLs. ``webcam``
    replaces the webcam track with a local video. Returns a copy.
    """
    base = Path(assets_dir or ".")
    sb = storyboard.model_copy(deep=True)

    for event in sb.timeline:
        if event.type != "upload" or event.files or not event.file_ref:
            continue
        path = base / event.file_ref
        if not path.is_file():
            logger.warning("[replay/assets] upload file not found: %s", path)
            continue
        mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        event.files = [
            FileSnapshot(
                name=path.name,
                type=mime,
                last_modified=int(path.stat().st_mtime * 1000),
                data=_data_url(path, mime),
            )
        ]

    for sub in sb.subtitles:
        if sub.voiceover is not None and sub.voiceover.audio_source:
            sub.voiceover.audio_source = _inline_media(sub.voiceover.audio_source, base, "audio/mpeg")
    if sb.original_audio is not None:
        sb.original_audio.src = _inline_media(sb.original_audio.src, base, "audio/webm")
    if sb.webcam_video is not None:
        sb.webcam_video.src = _inline_media(sb.webcam_video.src, base, "video/webm")

    if webcam:
        path = Path(webcam)
        if path.is_file():
            sb.webcam_video = MediaTrack(src=_data_url(path, "video/webm"), offset=0)
            logger.info("[replay/assets] webcam overlay from %s", path)
        else:
            logger.warning("[replay/assets] webcam video not found: %s", path)
    if webcam_position:
        sb.settings.webcam.position = webcam_position
    return sb
