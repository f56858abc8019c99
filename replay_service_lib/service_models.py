from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

SessionState = Literal["queued", "starting", "running", "completed", "stopped", "error"]
EventType = Literal["navigate", "click", "hover", "focus", "blur", "type", "scroll", "keypress", "upload", "pause"]
EVENT_TYPES: tuple[str, ...] = ("navigate", "click", "hover", "focus", "blur", "type", "scroll", "keypress", "upload", "pause")


class _CamelModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# -------------------------------------------------------------------
# Timeline building blocks
# -------------------------------------------------------------------
class Position(_CamelModel):
    x: float
    y: float


class WaitFor(_CamelModel):
    """Advisory readiness condition attached to navigate/click entries."""

    type: Literal["selector", "load", "navigation"]
    value: Optional[str] = None
    timeout_ms: Optional[int] = Field(default=None, alias="timeoutMs", ge=0)


class Modifiers(_CamelModel):
    ctrl: bool = False
    alt: bool = False
    shift: bool = False
    meta: bool = False


class TypingSettings(_CamelModel):
    chars_per_sec: float = Field(default=10.0, alias="charsPerSec", gt=0)
    randomize: float = Field(default=0.15, ge=0)
    paste_long_text_over: Optional[int] = Field(default=80, alias="pasteLongTextOver")


class CursorSettings(_CamelModel):
    max_speed_px_per_sec: float = Field(default=1600.0, alias="maxSpeedPxPerSec", gt=0)
    min_move_duration_ms: float = Field(default=120.0, alias="minMoveDurationMs", ge=0)


class Target(_CamelModel):
    """Serializable descriptor used to re-find an element; selectors are tried left to right."""

    selectors: list[str] = Field(default_factory=list)
    text_hint: Optional[str] = Field(default=None, alias="textHint")
    tag: Optional[str] = None
    type: Optional[str] = None
    placeholder: Optional[str] = None


class FileSnapshot(_CamelModel):
    """Recording-time copy of an uploaded file; ``data`` is a data URL or bare base64."""

    name: str
    type: str = "application/octet-stream"
    last_modified: Optional[int] = Field(default=None, alias="lastModified")
    data: str = ""


# -------------------------------------------------------------------
# Events
# -------------------------------------------------------------------
class BaseEvent(_CamelModel):
    t: int = Field(ge=0)
    duration_ms: Optional[int] = Field(default=None, alias="durationMs", ge=0)


class NavigateEvent(BaseEvent):
    type: Literal["navigate"] = "navigate"
    url: str
    wait_for: Optional[WaitFor] = Field(default=None, alias="waitFor")


class _PointerEvent(BaseEvent):
    target: Target = Field(default_factory=Target)
    position: Optional[Position] = None


class ClickEvent(_PointerEvent):
    type: Literal["click"] = "click"
    wait_for: Optional[WaitFor] = Field(default=None, alias="waitFor")


class HoverEvent(_PointerEvent):
    type: Literal["hover"] = "hover"


class FocusEvent(_PointerEvent):
    type: Literal["focus"] = "focus"


class BlurEvent(_PointerEvent):
    type: Literal["blur"] = "blur"


class TypeEvent(BaseEvent):
    type: Literal["type"] = "type"
    target: Target = Field(default_factory=Target)
    position: Optional[Position] = None
    text: str = ""
    typing: Optional[TypingSettings] = None


class ScrollEvent(BaseEvent):
    type: Literal["scroll"] = "scroll"
    position: Position


class KeypressEvent(BaseEvent):
    type: Literal["keypress"] = "keypress"
    key: str
    modifiers: Modifiers = Field(default_factory=Modifiers)


class UploadEvent(BaseEvent):
    type: Literal["upload"] = "upload"
    target: Target = Field(default_factory=Target)
    position: Optional[Position] = None
    files: list[FileSnapshot] = Field(default_factory=list)
    file_ref: Optional[str] = Field(default=None, alias="fileRef")


class PauseEvent(BaseEvent):
    type: Literal["pause"] = "pause"


Event = Annotated[
    Union[
        NavigateEvent,
        ClickEvent,
        HoverEvent,
        FocusEvent,
        BlurEvent,
        TypeEvent,
        ScrollEvent,
        KeypressEvent,
        UploadEvent,
        PauseEvent,
    ],
    Field(discriminator="type"),
]

TargetedEvent = Union[ClickEvent, HoverEvent, FocusEvent, BlurEvent, TypeEvent, UploadEvent]


# -------------------------------------------------------------------
# Overlay tracks
# -------------------------------------------------------------------
class Voiceover(_CamelModel):
    offset: int = 0
    duration: Optional[int] = None
    audio_source: Optional[str] = Field(default=None, alias="audioSource")
    audio_base64: Optional[str] = Field(default=None, alias="audioBase64")
    audio_type: str = Field(default="audio/mpeg", alias="audioType")
    blob_id: Optional[str] = Field(default=None, alias="blobId")


class Subtitle(_CamelModel):
    time: int = Field(ge=0)
    duration: int = Field(ge=0)
    text: str
    position: Literal["top", "middle", "bottom"] = "bottom"
    font_family: Optional[str] = Field(default=None, alias="fontFamily")
    font_size: int = Field(default=24, alias="fontSize")
    font_color: str = Field(default="white", alias="fontColor")
    voiceover: Optional[Voiceover] = None


class MediaTrack(_CamelModel):
    """Original audio or webcam video recorded alongside the timeline."""

    src: str
    offset: int = 0


# -------------------------------------------------------------------
# Timeline document
# -------------------------------------------------------------------
class Viewport(_CamelModel):
    width: int = 1440
    height: int = 900
    device_scale_factor: float = Field(default=1.0, alias="deviceScaleFactor")


class StoryboardMeta(_CamelModel):
    title: Optional[str] = None
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    base_url: Optional[str] = Field(default=None, alias="baseUrl")
    viewport: Viewport = Field(default_factory=Viewport)


class RenderSettings(_CamelModel):
    resolution: Optional[Viewport] = None


class WebcamSettings(_CamelModel):
    position: Literal["bottom-right", "bottom-left", "top-right", "top-left"] = "bottom-right"


class StoryboardSettings(_CamelModel):
    cursor: CursorSettings = Field(default_factory=CursorSettings)
    typing: TypingSettings = Field(default_factory=TypingSettings)
    render: RenderSettings = Field(default_factory=RenderSettings)
    webcam: WebcamSettings = Field(default_factory=WebcamSettings)


class Storyboard(_CamelModel):
    """The timeline document: ordered events plus auxiliary tracks."""

    version: Optional[Union[str, int, float]] = None
    meta: StoryboardMeta = Field(default_factory=StoryboardMeta)
    settings: StoryboardSettings = Field(default_factory=StoryboardSettings)
    timeline: list[Event] = Field(default_factory=list)
    subtitles: list[Subtitle] = Field(default_factory=list)
    original_audio: Optional[MediaTrack] = Field(default=None, alias="originalAudio")
    webcam_video: Optional[MediaTrack] = Field(default=None, alias="webcamVideo")

    @field_validator("subtitles", mode="before")
    @classmethod
    def _null_subtitles(cls, v: Any) -> Any:
        return [] if v is None else v


# -------------------------------------------------------------------
# Engine state
# -------------------------------------------------------------------
class ReplayState(_CamelModel):
    """Mutable playback cursor; serialized whole before anything that may unload the document."""

    timeline: Storyboard
    current_event_index: int = Field(default=0, alias="currentEventIndex", ge=0)
    is_replaying: bool = Field(default=False, alias="isReplaying")
    started_at_wall_clock: float = Field(default=0.0, alias="startedAtWallClock")
    speed_multiplier: float = Field(default=1.0, alias="speedMultiplier", gt=0)
    recording_mode: bool = Field(default=False, alias="recordingMode")
    saved_at_wall_clock: Optional[float] = Field(default=None, alias="savedAtWallClock")
    session_key: str = Field(default="", alias="sessionKey")
    owner_id: Optional[str] = Field(default=None, alias="ownerId")
    capture_lost: bool = Field(default=False, alias="captureLost")
    events_executed: int = Field(default=0, alias="eventsExecuted", ge=0)

    @property
    def events(self) -> list[Any]:
        return self.timeline.timeline


class TerminalSignal(_CamelModel):
    completed: bool
    events_executed: int = Field(default=0, alias="eventsExecuted")
    capture_lost: bool = Field(default=False, alias="captureLost")


class ReplayNotice(_CamelModel):
    code: str
    message: str
    event_index: Optional[int] = Field(default=None, alias="eventIndex")
    at: float = 0.0


# -------------------------------------------------------------------
# HTTP payloads
# -------------------------------------------------------------------
class ReplayStartReq(BaseModel):
    storyboard: dict[str, Any]
    speed: float = Field(default=1.0, gt=0)
    record_video: bool = False
    headless: bool = True
    viewport_width: Optional[int] = None
    viewport_height: Optional[int] = None
    session_key: Optional[str] = Field(default=None, alias="sessionKey", max_length=128)

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ReplayStatus(BaseModel):
    session_id: str
    state: SessionState
    title: Optional[str] = None
    total_events: int = 0
    current_event_index: int = 0
    events_executed: int = 0
    capture_lost: bool = False
    error: Optional[str] = None
    video_path: Optional[str] = None
    notices: list[dict[str, Any]] = Field(default_factory=list)
    queue_position: Optional[int] = None


class ValidateResp(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
