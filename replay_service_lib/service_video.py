from __future__ import annotations

import logging
import subprocess
from pathlib import Path

import imageio_ffmpeg

logger = logging.getLogger("replay")


def ensure_ffmpeg_available() -> str:
    """Return the ffmpeg binary path, raising RuntimeError when none can be provisioned."""
    try:
        return imageio_ffmpeg.get_ffmpeg_exe()
    except RuntimeError as exc:
        raise RuntimeError(f"ffmpeg is not available for video conversion: {exc}") from exc


def convert_webm_to_mp4(webm_path: Path, mp4_path: Path) -> Path:
    """Re-encode a Playwright webm capture to H.264 mp4 (even dimensions, faststart)."""
    command = [
        ensure_ffmpeg_available(),
        "-y",
        "-i",
        str(webm_path),
        "-vf",
        "pad=ceil(iw/2)*2:ceil(ih/2)*2",
        "-c:v",
        "libx264",
        "-preset",
        "veryfast",
        "-pix_fmt",
        "yuv420p",
        "-movflags",
        "+faststart",
        "-an",
        str(mp4_path),
    ]
    proc = subprocess.run(command, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    if proc.returncode != 0:
        err_msg = proc.stderr.decode(errors="ignore").strip().splitlines()
        raise OSError(f"ffmpeg conversion failed: {err_msg[-1] if err_msg else proc.returncode}")
    logger.debug("[replay/video] wrote %s (%s bytes)", mp4_path, mp4_path.stat().st_size)
    return mp4_path
