from __future__ import annotations
"""
Command-line entrypoint: validate, describe or replay a recorded timeline file.

  python replay_cli.py validate demo.json
  python replay_cli.py info demo.json
  python replay_cli.py replay demo.json --speed 1.5 --record-video --video-dir ./out
  python replay_cli.py replay demo.json --assets-dir ./assets --webcam cam.webm --webcam-position top-left
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from replay_service_lib.errors import MalformedTimelineError
from replay_service_lib.service_logging import configure_logging
from replay_service_lib.timeline_loader import describe_storyboard, load_storyboard, validate_storyboard

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_STOPPED = 2
EXIT_FAILED = 3


def _read_json(path: str):
    p = Path(path)
    if not p.is_file():
        raise MalformedTimelineError([f"File not found: {path}"])
    try:
        return json.loads(p.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise MalformedTimelineError([f"Invalid JSON: {exc}"]) from exc


def cmd_validate(args: argparse.Namespace) -> int:
    try:
        raw = _read_json(args.file)
    except MalformedTimelineError as exc:
        for err in exc.errors:
            print(f"ERROR: {err}")
        return EXIT_INVALID

    report = validate_storyboard(raw)
    for err in report.errors:
        print(f"ERROR: {err}")
    for warn in report.warnings:
        print(f"WARNING: {warn}")
    if report.valid:
        print(f"OK: {args.file} ({len(raw.get('timeline') or [])} events)")
        return EXIT_OK
    return EXIT_INVALID


def cmd_info(args: argparse.Namespace) -> int:
    try:
        storyboard = load_storyboard(Path(args.file))
    except MalformedTimelineError as exc:
        for err in exc.errors:
            print(f"ERROR: {err}")
        return EXIT_INVALID

    info = describe_storyboard(storyboard)
    if args.json:
        print(json.dumps(info, indent=2, default=str))
        return EXIT_OK
    width = max(len(k) for k in info)
    for key, value in info.items():
        if key == "eventTypes":
            value = ", ".join(f"{k}={v}" for k, v in sorted(value.items())) or "-"
        print(f"{key.ljust(width)}  {value}")
    return EXIT_OK


def cmd_replay(args: argparse.Namespace) -> int:
    from replay_service_lib.service_replay import replay_storyboard

    try:
        storyboard = load_storyboard(Path(args.file))
    except MalformedTimelineError as exc:
        for err in exc.errors:
            print(f"ERROR: {err}")
        return EXIT_INVALID

    configure_logging(level=logging.DEBUG if args.verbose else logging.INFO)
    log = logging.getLogger("replay")

    try:
        outcome = asyncio.run(
            replay_storyboard(
                storyboard,
                speed=args.speed,
                record_video=args.record_video,
                video_dir=Path(args.video_dir),
                headless=not args.headed,
                assets_dir=Path(args.assets_dir),
                webcam=Path(args.webcam) if args.webcam else None,
                webcam_position=args.webcam_position,
            )
        )
    except KeyboardInterrupt:
        log.warning("[cli] interrupted")
        return EXIT_STOPPED
    except Exception as exc:
        log.error("[cli] replay failed: %r", exc)
        return EXIT_FAILED

    for notice in outcome.notices:
        print(f"NOTICE [{notice.code}] {notice.message}")
    if outcome.video_path:
        print(f"Video: {outcome.video_path}")
    if outcome.conversion_error:
        print(f"Video conversion failed: {outcome.conversion_error}")
    print(
        f"{'Completed' if outcome.terminal.completed else 'Stopped'}: "
        f"{outcome.terminal.events_executed} event(s) executed"
        + (" (capture lost)" if outcome.terminal.capture_lost else "")
    )
    return EXIT_OK if outcome.terminal.completed else EXIT_STOPPED


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="replay", description="Replay recorded web-interaction timelines")
    sub = parser.add_subparsers(dest="command", required=True)

    p_validate = sub.add_parser("validate", help="Check a timeline file for errors and warnings")
    p_validate.add_argument("file")
    p_validate.set_defaults(func=cmd_validate)

    p_info = sub.add_parser("info", help="Summarize a timeline file")
    p_info.add_argument("file")
    p_info.add_argument("--json", action="store_true", help="Print the summary as JSON")
    p_info.set_defaults(func=cmd_info)

    p_replay = sub.add_parser("replay", help="Replay a timeline in Chromium")
    p_replay.add_argument("file")
    p_replay.add_argument("--speed", type=float, default=1.0, help="Playback speed multiplier")
    p_replay.add_argument("--record-video", action="store_true", help="Capture the replay to mp4")
    p_replay.add_argument("--video-dir", default="./recordings", help="Output directory for captured video")
    p_replay.add_argument("--headed", action="store_true", help="Show the browser window")
    p_replay.add_argument("--assets-dir", default=".", help="Directory holding upload fileRefs and local media")
    p_replay.add_argument("--webcam", help="Local webcam video to overlay")
    p_replay.add_argument(
        "--webcam-position",
        choices=["bottom-right", "bottom-left", "top-right", "top-left"],
        help="Corner for the webcam overlay (default: from the timeline settings)",
    )
    p_replay.add_argument("-v", "--verbose", action="store_true")
    p_replay.set_defaults(func=cmd_replay)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if getattr(args, "speed", 1.0) <= 0:
        print("ERROR: --speed must be positive")
        return EXIT_INVALID
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
