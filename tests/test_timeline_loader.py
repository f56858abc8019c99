import base64
import json

import pytest

from fakes import storyboard_dict
from replay_service_lib.errors import MalformedTimelineError
from replay_service_lib.timeline_loader import (
    attach_local_assets,
    describe_storyboard,
    initial_url,
    load_storyboard,
    prepare_timeline,
    validate_storyboard,
)

GOOD = storyboard_dict(
    [
        {"t": 0, "type": "navigate", "url": "https://app.example.com/login"},
        {"t": 400, "type": "click", "target": {"selectors": ["#email", "input[name=email]"]}},
        {"t": 900, "type": "type", "target": {"selectors": ["#email"]}, "text": "me@example.com"},
        {"t": 2_000, "type": "keypress", "key": "Enter"},
    ],
    subtitles=[
        {"time": 0, "duration": 1_500, "text": "Sign in", "voiceover": {"audioSource": "a.mp3"}},
        {"time": 2_000, "duration": 800, "text": "Done"},
    ],
)


class TestValidate:
    def test_good_document(self):
        report = validate_storyboard(GOOD)
        assert report.valid
        assert report.errors == []
        assert report.warnings == ["Event 2: only one selector (recommend multiple fallbacks)"]

    def test_missing_or_bad_timeline(self):
        assert validate_storyboard({}).errors == ["Missing timeline field"]
        assert validate_storyboard({"timeline": {}}).errors == ["Timeline must be an array"]
        assert validate_storyboard([]).errors == ["Storyboard must be a JSON object"]

    def test_missing_version_and_meta_are_warnings(self):
        report = validate_storyboard({"timeline": []})
        assert report.valid
        assert report.warnings == ["Missing version field", "Missing meta field"]

    def test_event_errors(self):
        report = validate_storyboard(
            {
                "timeline": [
                    {"type": "click", "target": {"selectors": ["#a", "#b"]}},
                    {"t": 10, "type": "warp"},
                    {"t": 20},
                    {"t": 30, "type": "navigate"},
                    {"t": 25, "type": "scroll", "position": {"x": "0"}},
                    {"t": 40, "type": "click", "target": {}},
                    {"t": 50, "type": "click", "target": {"selectors": ["#x", "#y"]}, "waitFor": {"type": "forever"}},
                ]
            }
        )
        assert not report.valid
        joined = "\n".join(report.errors)
        assert "Event 0: missing or invalid 't' (timestamp)" in joined
        assert "Event 1: unknown type 'warp'" in joined
        assert "Event 2: missing 'type' field" in joined
        assert "Event 3 (navigate): missing 'url'" in joined
        assert "Event 4: 't' decreases" in joined
        assert "Event 4 (scroll): 'position' must have numeric x and y" in joined
        assert "Event 5 (click): target has no selectors, textHint or position" in joined
        assert "Event 6 (click): waitFor.type must be one of" in joined

    def test_fallback_only_target_warns(self):
        report = validate_storyboard(
            {"version": 1, "meta": {}, "timeline": [{"t": 0, "type": "click", "target": {"textHint": "OK"}}]}
        )
        assert report.valid
        assert "Event 0: no selectors defined" in report.warnings

    def test_subtitle_checks(self):
        report = validate_storyboard({"timeline": [], "subtitles": [{"time": "soon", "duration": 5}]})
        assert report.errors == ["Subtitle 0: needs numeric 'time' and 'duration'"]

    def test_upload_accepts_file_ref(self):
        ok = validate_storyboard({"timeline": [{"t": 0, "type": "upload", "target": {"selectors": ["#f", "input[type=file]"]}, "fileRef": "cv.pdf"}]})
        assert ok.errors == []
        neither = validate_storyboard({"timeline": [{"t": 0, "type": "upload", "target": {"selectors": ["#f", "#g"]}}]})
        assert neither.errors == ["Event 0 (upload): needs a 'files' array or a 'fileRef'"]
        blank = validate_storyboard({"timeline": [{"t": 0, "type": "upload", "target": {"selectors": ["#f", "#g"]}, "fileRef": " "}]})
        assert blank.errors == ["Event 0 (upload): 'fileRef' must be a non-empty string"]


class TestLoad:
    def test_load_from_dict_text_and_file(self, tmp_path):
        path = tmp_path / "demo.json"
        path.write_text(json.dumps(GOOD), encoding="utf-8")
        for source in (GOOD, json.dumps(GOOD), path, str(path)):
            sb = load_storyboard(source)
            assert [e.type for e in sb.timeline] == ["navigate", "click", "type", "keypress"]
            assert sb.settings.typing.chars_per_sec == 10

    def test_malformed_raises_with_errors(self, tmp_path):
        with pytest.raises(MalformedTimelineError) as info:
            load_storyboard({"timeline": [{"t": 0, "type": "teleport"}]})
        assert info.value.errors == ["Event 0: unknown type 'teleport'"]

        with pytest.raises(MalformedTimelineError) as info:
            load_storyboard(tmp_path / "missing.json")
        assert info.value.errors[0].startswith("File not found")

        bad = tmp_path / "bad.json"
        bad.write_text("{nope", encoding="utf-8")
        with pytest.raises(MalformedTimelineError) as info:
            load_storyboard(bad)
        assert info.value.errors[0].startswith("Invalid JSON")

    def test_null_subtitles_become_empty(self):
        sb = load_storyboard({"timeline": [], "subtitles": None})
        assert sb.subtitles == []


class TestDescribeAndPrepare:
    def test_describe(self):
        info = describe_storyboard(load_storyboard(GOOD))
        assert info["title"] == "Demo"
        assert info["viewport"] == "1280x720"
        assert info["events"] == 4
        assert info["durationMs"] == 2_000
        assert info["eventTypes"] == {"navigate": 1, "click": 1, "type": 1, "keypress": 1}
        assert info["subtitles"] == 2
        assert info["voiceovers"] == 1
        assert info["originalAudio"] is False

    def test_prepare_drops_navigations_only_for_fragile_recordings(self):
        sb = load_storyboard(GOOD)
        assert prepare_timeline(sb) is sb
        assert prepare_timeline(sb, recording_mode=True, capture_survives_navigation=True) is sb
        trimmed = prepare_timeline(sb, recording_mode=True)
        assert [e.type for e in trimmed.timeline] == ["click", "type", "keypress"]
        assert len(sb.timeline) == 4

    def test_initial_url(self):
        sb = load_storyboard(GOOD)
        assert initial_url(sb) == "https://app.example.com/"
        no_base = load_storyboard({"timeline": [{"t": 0, "type": "navigate", "url": "https://x.example/"}]})
        assert initial_url(no_base) == "https://x.example/"
        assert initial_url(load_storyboard({"timeline": []})) is None


class TestLocalAssets:
    def _storyboard(self, **extra):
        return load_storyboard(
            storyboard_dict(
                [{"t": 0, "type": "upload", "target": {"selectors": ["#f", "input[type=file]"]}, "fileRef": "docs/cv.txt"}],
                **extra,
            )
        )

    def test_file_ref_is_read_from_assets_dir(self, tmp_path):
        (tmp_path / "docs").mkdir()
        (tmp_path / "docs" / "cv.txt").write_bytes(b"resume")
        sb = self._storyboard()

        inlined = attach_local_assets(sb, tmp_path)
        snap = inlined.timeline[0].files[0]
        assert snap.name == "cv.txt"
        assert snap.type == "text/plain"
        assert snap.data == "data:text/plain;base64," + base64.b64encode(b"resume").decode()
        assert sb.timeline[0].files == []

    def test_missing_file_ref_is_left_empty(self, tmp_path):
        inlined = attach_local_assets(self._storyboard(), tmp_path)
        assert inlined.timeline[0].files == []

    def test_local_media_become_data_urls_and_remote_pass_through(self, tmp_path):
        (tmp_path / "cam.webm").write_bytes(b"\x1a\x45")
        (tmp_path / "line1.mp3").write_bytes(b"ID3")
        sb = self._storyboard(
            webcamVideo={"src": "cam.webm"},
            originalAudio={"src": "https://cdn.example.com/a.webm"},
            subtitles=[{"time": 0, "duration": 500, "text": "Hi", "voiceover": {"audioSource": "line1.mp3"}}],
        )

        inlined = attach_local_assets(sb, tmp_path)
        assert inlined.webcam_video.src.startswith("data:video/")
        assert inlined.webcam_video.src.endswith(";base64," + base64.b64encode(b"\x1a\x45").decode())
        assert inlined.subtitles[0].voiceover.audio_source.startswith("data:audio/mpeg;base64,")
        assert inlined.original_audio.src == "https://cdn.example.com/a.webm"

    def test_webcam_override_and_position(self, tmp_path):
        cam = tmp_path / "me.webm"
        cam.write_bytes(b"cam")
        sb = self._storyboard(webcamVideo={"src": "https://cdn.example.com/old.webm", "offset": 300})

        inlined = attach_local_assets(sb, tmp_path, webcam=cam, webcam_position="top-left")
        assert inlined.webcam_video.src.startswith("data:video/")
        assert inlined.webcam_video.src.endswith(";base64," + base64.b64encode(b"cam").decode())
        assert inlined.webcam_video.offset == 0
        assert inlined.settings.webcam.position == "top-left"
        assert sb.settings.webcam.position == "bottom-right"

    def test_missing_webcam_keeps_recorded_track(self, tmp_path):
        sb = self._storyboard(webcamVideo={"src": "https://cdn.example.com/old.webm"})
        inlined = attach_local_assets(sb, tmp_path, webcam=tmp_path / "nope.webm")
        assert inlined.webcam_video.src == "https://cdn.example.com/old.webm"
