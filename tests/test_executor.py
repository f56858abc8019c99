import asyncio
import base64

from fakes import FakeDocument, FakeElement
from replay_service_lib.adapters import CursorState
from replay_service_lib.executor import EventExecutor, decode_file_snapshot, is_fragment_change
from replay_service_lib.service_models import FileSnapshot, Storyboard, StoryboardSettings

SETTINGS = StoryboardSettings.model_validate({"typing": {"charsPerSec": 10, "randomize": 0}})


def _event(raw: dict):
    return Storyboard.model_validate({"timeline": [raw]}).timeline[0]


def _run(doc, raw, notices=None, speed=1.0):
    async def sink(code, message):
        notices.append((code.value, message))

    async def main():
        executor = EventExecutor(doc, SETTINGS, notice_sink=sink if notices is not None else None)
        task = asyncio.ensure_future(executor.execute(_event(raw), CursorState(), speed))
        while not task.done():
            await doc.clock.advance(1_000)
        return task.result()

    return asyncio.run(main())


class TestClickAndPointer:
    def test_click_dispatches_one_bubbling_click_at_recorded_position(self):
        doc = FakeDocument()
        btn = doc.add(FakeElement("button", rect=(200, 100, 80, 30)), "#go")
        out = _run(doc, {"t": 0, "type": "click", "target": {"selectors": ["#go"]}, "position": {"x": 230, "y": 110}})

        assert out.status == "executed"
        clicks = doc.events_of("click")
        assert len(clicks) == 1
        el, ev = clicks[0]
        assert el is btn
        assert ev.interface == "MouseEvent"
        assert ev.bubbles is True
        assert ev.init == {"clientX": 230, "clientY": 110}
        assert doc.cursor_moves[-1] == btn.center

    def test_click_without_position_uses_cursor_point(self):
        doc = FakeDocument()
        btn = doc.add(FakeElement("button", rect=(0, 0, 40, 40)), "#go")
        _run(doc, {"t": 0, "type": "click", "target": {"selectors": ["#go"]}})
        _, ev = doc.events_of("click")[0]
        assert (ev.init["clientX"], ev.init["clientY"]) == btn.center

    def test_unresolved_target_is_skipped_with_notice(self):
        doc = FakeDocument()
        notices = []
        out = _run(doc, {"t": 0, "type": "click", "target": {"selectors": ["#nope"]}}, notices)
        assert out.status == "skipped"
        assert doc.dispatched == []
        assert notices[0][0] == "target_unresolved"

    def test_click_wait_for_timeout_is_not_fatal(self):
        doc = FakeDocument()
        doc.wait_result = False
        doc.add(FakeElement("button"), "#go")
        notices = []
        raw = {"t": 0, "type": "click", "target": {"selectors": ["#go"]}, "waitFor": {"type": "selector", "value": "#x"}}
        out = _run(doc, raw, notices)
        assert out.status == "executed"
        assert doc.waits == [("selector", 30_000)]
        assert notices[0][0] == "navigation_timeout"

    def test_hover_dispatches_mouseover_then_non_bubbling_mouseenter(self):
        doc = FakeDocument()
        doc.add(FakeElement("a"), "a.menu")
        _run(doc, {"t": 0, "type": "hover", "target": {"selectors": ["a.menu"]}})
        types = [(ev.type, ev.bubbles) for _, ev in doc.dispatched]
        assert types == [("mouseover", True), ("mouseenter", False)]

    def test_focus_and_blur(self):
        doc = FakeDocument()
        field = doc.add(FakeElement("input"), "#email")
        _run(doc, {"t": 0, "type": "focus", "target": {"selectors": ["#email"]}})
        assert doc.focused is field
        _run(doc, {"t": 0, "type": "blur", "target": {"selectors": ["#email"]}})
        assert doc.focused is None
        assert [ev.type for _, ev in doc.dispatched] == ["focus", "blur"]


class TestTyping:
    def test_types_char_by_char_at_configured_rate(self):
        doc = FakeDocument()
        field = doc.add(FakeElement("input", input_type="text"), "#name")
        out = _run(doc, {"t": 0, "type": "type", "target": {"selectors": ["#name"]}, "text": "hi"})

        assert out.status == "executed"
        assert field.value == "hi"
        assert doc.clock.sleeps == [100.0, 100.0]
        assert len(doc.events_of("input")) == 2
        assert len(doc.events_of("change")) == 1
        assert [v for _, v in doc.values] == ["", "h", "hi"]

    def test_speed_scales_typing_delays(self):
        doc = FakeDocument()
        doc.add(FakeElement("textarea"), "#bio")
        _run(doc, {"t": 0, "type": "type", "target": {"selectors": ["#bio"]}, "text": "ab"}, speed=2.0)
        assert doc.clock.sleeps == [50.0, 50.0]

    def test_long_text_is_pasted(self):
        doc = FakeDocument()
        field = doc.add(FakeElement("input"), "#q")
        text = "x" * 120
        _run(doc, {"t": 0, "type": "type", "target": {"selectors": ["#q"]}, "text": text})
        assert field.value == text
        assert doc.clock.sleeps == []
        assert len(doc.events_of("input")) == 1

    def test_non_text_target_is_skipped(self):
        doc = FakeDocument()
        doc.add(FakeElement("input", input_type="checkbox"), "#agree")
        out = _run(doc, {"t": 0, "type": "type", "target": {"selectors": ["#agree"]}, "text": "x"})
        assert out.status == "skipped"
        assert doc.values == []

    def test_detached_target_aborts_typing(self):
        doc = FakeDocument()
        field = doc.add(FakeElement("input"), "#name")

        async def main():
            executor = EventExecutor(doc, SETTINGS)
            ev = _event({"t": 0, "type": "type", "target": {"selectors": ["#name"]}, "text": "hello"})
            task = asyncio.ensure_future(executor.execute(ev, CursorState()))
            await doc.clock.advance(150)
            field.connected = False
            await doc.clock.advance(1_000)
            return await task

        out = asyncio.run(main())
        assert out.reason == "target detached"
        assert field.value == "h"
        assert len(doc.events_of("change")) == 0

    def test_cancel_stops_typing(self):
        doc = FakeDocument()
        field = doc.add(FakeElement("input"), "#name")

        async def main():
            executor = EventExecutor(doc, SETTINGS)
            ev = _event({"t": 0, "type": "type", "target": {"selectors": ["#name"]}, "text": "hello"})
            task = asyncio.ensure_future(executor.execute(ev, CursorState()))
            await doc.clock.advance(250)
            executor.cancel()
            await doc.clock.advance(1_000)
            return await task

        out = asyncio.run(main())
        assert out.reason == "cancelled"
        assert field.value == "he"


class TestOtherKinds:
    def test_scroll_is_smooth_then_settles(self):
        doc = FakeDocument()
        _run(doc, {"t": 0, "type": "scroll", "position": {"x": 0, "y": 640}})
        assert doc.scrolls == [(0, 640, True)]
        assert doc.clock.sleeps == [300.0]

    def test_keypress_goes_to_focused_element_or_document(self):
        doc = FakeDocument()
        _run(doc, {"t": 0, "type": "keypress", "key": "Enter", "modifiers": {"ctrl": True}})
        el, ev = doc.dispatched[0]
        assert el is None
        assert ev.type == "keydown"
        assert ev.init["key"] == "Enter" and ev.init["ctrlKey"] is True

        field = doc.add(FakeElement("input"))
        doc.focused = field
        _run(doc, {"t": 0, "type": "keypress", "key": "a"})
        assert doc.dispatched[-1][0] is field

    def test_upload_rebuilds_files(self):
        doc = FakeDocument()
        inp = doc.add(FakeElement("input", input_type="file"), "#file")
        payload = base64.b64encode(b"hello").decode()
        raw = {
            "t": 0,
            "type": "upload",
            "target": {"selectors": ["#file"]},
            "files": [{"name": "a.txt", "type": "text/plain", "lastModified": 5, "data": f"data:text/plain;base64,{payload}"}],
        }
        out = _run(doc, raw)
        assert out.status == "executed"
        assert inp.files[0].name == "a.txt"
        assert inp.files[0].buffer == b"hello"
        assert inp.files[0].last_modified == 5
        assert [ev.type for _, ev in doc.dispatched] == ["change", "input"]

    def test_upload_without_files_is_skipped_with_notice(self):
        doc = FakeDocument()
        inp = doc.add(FakeElement("input", input_type="file"), "#file")
        notices = []
        raw = {"t": 0, "type": "upload", "target": {"selectors": ["#file"]}, "fileRef": "missing.pdf"}
        out = _run(doc, raw, notices)
        assert out.status == "skipped"
        assert inp.files == []
        assert doc.dispatched == []
        assert notices == [("target_unresolved", "upload: file not available (missing.pdf)")]

    def test_decode_bare_base64(self):
        fp = decode_file_snapshot(FileSnapshot(name="b.bin", data=base64.b64encode(b"\x00\x01").decode()))
        assert fp.buffer == b"\x00\x01"
        assert fp.mime_type == "application/octet-stream"

    def test_pause_holds_duration_scaled_by_speed(self):
        doc = FakeDocument()
        _run(doc, {"t": 0, "type": "pause", "durationMs": 800}, speed=2.0)
        assert doc.clock.sleeps == [400.0]

    def test_navigate_reports_navigated(self):
        doc = FakeDocument(fire_on_navigate=False)
        out = _run(doc, {"t": 0, "type": "navigate", "url": "https://app.example.com/next"})
        assert out.status == "navigated"
        assert doc.navigations == ["https://app.example.com/next"]

    def test_anchor_navigation_stays_in_document(self):
        doc = FakeDocument()
        doc.url = "https://app.example.com/guide"
        out = _run(doc, {"t": 0, "type": "navigate", "url": "https://app.example.com/guide#step2"})
        assert out.status == "executed"
        assert doc.navigations == ["https://app.example.com/guide#step2"]

    def test_fragment_change_detection(self):
        assert is_fragment_change("https://a.example/x", "https://a.example/x#s2")
        assert is_fragment_change("https://a.example/x#s1", "https://a.example/x#s2")
        assert not is_fragment_change("https://a.example/x#s1", "https://a.example/x")
        assert not is_fragment_change("https://a.example/x", "https://a.example/y#s2")
        assert not is_fragment_change(None, "https://a.example/x#s2")
