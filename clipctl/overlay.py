"""Overlay integration (JSON lines over the overlay process's stdio).

Every message is one JSON object per line with a ``type`` tag. Commands go to
the overlay on its stdin, responses come back on its stdout. The protocol is
blocking by nature: the overlay answers one request at a time, so readers are
expected to run on worker threads when used from asyncio.
"""

import json
import logging
import subprocess
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any, Optional, Union, List

from .progress import Stage

logger = logging.getLogger(__name__)


class TransportError(RuntimeError):
    """Raised when the overlay cannot be written to or read from."""


class ProtocolError(TransportError):
    """Raised when the overlay sends something we cannot decode."""


# -----------------------
# Payloads
# -----------------------

@dataclass
class FailedUploadEntry:
    id: str
    display_name: str

    def to_dict(self) -> dict:
        return {"id": self.id, "display_name": self.display_name}


@dataclass
class CaptureStatusPayload:
    """Everything the capture panel renders."""
    running: bool
    buffer_seconds: int
    bitrate: int
    fps: int
    target: str
    audio_tracks: List[str]
    last_saved: Optional[str]
    hotkey: str
    message: Optional[str]
    is_saving: bool = False
    failed_uploads: List[FailedUploadEntry] = field(default_factory=list)
    replay_mode: str = "manual"

    def to_dict(self) -> dict:
        return {
            "running": self.running,
            "buffer_seconds": self.buffer_seconds,
            "bitrate": self.bitrate,
            "fps": self.fps,
            "target": self.target,
            "audio_tracks": list(self.audio_tracks),
            "last_saved": self.last_saved,
            "hotkey": self.hotkey,
            "message": self.message,
            "is_saving": self.is_saving,
            "failed_uploads": [entry.to_dict() for entry in self.failed_uploads],
            "replay_mode": self.replay_mode,
        }


@dataclass
class CaptureSettingsPayload:
    buffer_seconds: int = 0
    bitrate: int = 0
    fps: int = 0
    target: str = ""
    audio_tracks: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "CaptureSettingsPayload":
        return cls(
            buffer_seconds=int(data.get("buffer_seconds", 0)),
            bitrate=int(data.get("bitrate", 0)),
            fps=int(data.get("fps", 0)),
            target=str(data.get("target", "")),
            audio_tracks=[str(t) for t in data.get("audio_tracks", [])],
        )


# -----------------------
# Outbound commands
# -----------------------

@dataclass
class ProgressCommand:
    stage: str
    fraction: float
    detail: str

    def to_dict(self) -> dict:
        return {"type": "progress", "stage": self.stage, "fraction": self.fraction, "detail": self.detail}


@dataclass
class ShowPickerCommand:
    preview_path: Optional[str]
    default_title: str
    default_game: str
    available_channels: List[str]

    def to_dict(self) -> dict:
        return {
            "type": "show_picker",
            "preview_path": self.preview_path,
            "default_title": self.default_title,
            "default_game": self.default_game,
            "available_channels": list(self.available_channels),
        }


@dataclass
class ShowTrimmerCommand:
    video_path: str
    duration: float

    def to_dict(self) -> dict:
        return {"type": "show_trimmer", "video_path": self.video_path, "duration": self.duration}


@dataclass
class ShowCaptureCommand:
    status: CaptureStatusPayload

    def to_dict(self) -> dict:
        return {"type": "show_capture", "status": self.status.to_dict()}


@dataclass
class CaptureStatusCommand:
    status: CaptureStatusPayload

    def to_dict(self) -> dict:
        return {"type": "capture_status", "status": self.status.to_dict()}


@dataclass
class SetVisibilityCommand:
    visible: bool

    def to_dict(self) -> dict:
        return {"type": "set_visibility", "visible": self.visible}


@dataclass
class QuitCommand:
    def to_dict(self) -> dict:
        return {"type": "quit"}


OverlayCommand = Union[
    ProgressCommand,
    ShowPickerCommand,
    ShowTrimmerCommand,
    ShowCaptureCommand,
    CaptureStatusCommand,
    SetVisibilityCommand,
    QuitCommand,
]


# -----------------------
# Capture actions
# -----------------------

@dataclass
class ToggleAction:
    enable: bool


@dataclass
class SaveAction:
    duration_secs: int  # 0 saves the whole buffer


@dataclass
class UpdateSettingsAction:
    settings: CaptureSettingsPayload


@dataclass
class UpdateModeAction:
    mode: str


@dataclass
class FailedUploadAction:
    upload_action: str  # retry | ignore | discard
    id: str


CaptureAction = Union[ToggleAction, SaveAction, UpdateSettingsAction, UpdateModeAction, FailedUploadAction]


def decode_capture_action(data: Any) -> CaptureAction:
    if not isinstance(data, dict):
        raise ProtocolError(f"capture action must be an object, got {data!r}")
    kind = data.get("action")
    try:
        if kind == "toggle":
            return ToggleAction(enable=bool(data["enable"]))
        if kind == "save":
            return SaveAction(duration_secs=int(data.get("duration_secs", 0)))
        if kind == "update_settings":
            return UpdateSettingsAction(settings=CaptureSettingsPayload.from_dict(data["settings"]))
        if kind == "update_mode":
            return UpdateModeAction(mode=str(data["mode"]))
        if kind == "failed_upload":
            return FailedUploadAction(upload_action=str(data["upload_action"]), id=str(data["id"]))
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise ProtocolError(f"malformed {kind} capture action: {e}") from e
    raise ProtocolError(f"unknown capture action: {kind!r}")


# -----------------------
# Inbound responses
# -----------------------

class ActionChoice(Enum):
    UPLOAD = "upload"
    MOVE = "move"
    DISCARD = "discard"


@dataclass
class PickerResult:
    title: str
    game: str
    action: ActionChoice
    channels: List[str]


@dataclass
class TrimmerResult:
    start_time: float
    end_time: float


@dataclass
class CaptureActionResponse:
    action: CaptureAction


@dataclass
class Cancelled:
    pass


OverlayResponse = Union[PickerResult, TrimmerResult, CaptureActionResponse, Cancelled]


def decode_response(line: str) -> OverlayResponse:
    """Decode one inbound line into a typed response."""
    try:
        data = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"overlay returned invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError(f"overlay returned non-object message: {line.strip()}")

    kind = data.get("type")
    try:
        if kind == "picker_result":
            try:
                action = ActionChoice(data["action"])
            except ValueError:
                raise ProtocolError(f"overlay returned unknown picker action: {data['action']}")
            return PickerResult(
                title=str(data["title"]),
                game=str(data.get("game", "")),
                action=action,
                channels=[str(c) for c in data.get("channels", [])],
            )
        if kind == "trimmer_result":
            return TrimmerResult(start_time=float(data["start_time"]), end_time=float(data["end_time"]))
        if kind == "capture_action":
            return CaptureActionResponse(action=decode_capture_action(data["action"]))
        if kind == "cancelled":
            return Cancelled()
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"malformed {kind} response: {e}") from e
    raise ProtocolError(f"unknown overlay response type: {kind!r}")


# -----------------------
# Channel
# -----------------------

class OverlayChannel:
    """
    Thread-safe line channel to the overlay.

    Writers and readers are serialized independently, so a thread blocked
    waiting for input never stops another thread from sending. A response that
    was read on behalf of a reader that no longer wants it can be pushed back
    and is handed to the next ``receive`` call.
    """

    def __init__(self, writer: Optional[IO[bytes]], reader: Optional[IO[bytes]]):
        self._writer = writer
        self._reader = reader
        self._write_lock = threading.Lock()
        self._read_lock = threading.Lock()
        self._pushed_back: deque = deque()

    def send(self, command: OverlayCommand):
        data = json.dumps(command.to_dict())
        with self._write_lock:
            if self._writer is None:
                raise TransportError("overlay stdin is no longer available")
            logger.debug(f"Sending overlay command: {data}")
            try:
                self._writer.write(data.encode("utf-8") + b"\n")
                self._writer.flush()
            except (BrokenPipeError, ValueError, OSError) as e:
                self._writer = None
                raise TransportError(f"overlay stdin is no longer available: {e}") from e

    def receive(self, abandoned: Optional[threading.Event] = None) -> Optional[OverlayResponse]:
        """
        Block for the next response. None means the overlay closed its stdout.

        If ``abandoned`` is set by the time a response arrives, the response is
        kept for the next reader and None is returned. This happens under the
        read lock, so the next reader cannot miss it.
        """
        with self._read_lock:
            if self._pushed_back:
                if abandoned is not None and abandoned.is_set():
                    return None
                return self._pushed_back.popleft()
            if self._reader is None:
                raise TransportError("overlay stdout is no longer available")
            try:
                raw = self._reader.readline()
            except (ValueError, OSError) as e:
                raise TransportError(f"failed to read from overlay: {e}") from e
            if not raw:
                return None
            line = raw.decode("utf-8", errors="replace")
            logger.debug(f"Received overlay response: {line.rstrip()}")
            response = decode_response(line)
            if abandoned is not None and abandoned.is_set():
                logger.debug("Reader was abandoned, keeping response for the next reader")
                self._pushed_back.append(response)
                return None
            return response

    def push_back(self, response: OverlayResponse):
        with self._read_lock:
            self._pushed_back.appendleft(response)

    def close_writer(self):
        with self._write_lock:
            writer, self._writer = self._writer, None
        if writer is not None:
            try:
                writer.close()
            except OSError:
                pass


class CaptureSession:
    """One exchange opened by ``show_capture``."""

    def __init__(self, channel: OverlayChannel):
        self._channel = channel

    def wait_for_action(self, abandoned: Optional[threading.Event] = None) -> Optional[CaptureAction]:
        """
        Block until the overlay sends a capture action.

        Returns None when the user cancelled or the overlay went away. Responses
        that belong to other exchanges are skipped. If ``abandoned`` is set by
        the time a response arrives, the response is left on the channel for
        the next reader and None is returned.
        """
        while True:
            response = self._channel.receive(abandoned)
            if abandoned is not None and abandoned.is_set():
                return None
            if response is None or isinstance(response, Cancelled):
                return None
            if isinstance(response, CaptureActionResponse):
                return response.action
            logger.warning(f"Ignoring unexpected overlay response: {response!r}")

    def update_status(self, status: CaptureStatusPayload):
        self._channel.send(CaptureStatusCommand(status=status))


class OverlayHandle:
    """Commands understood by the overlay. Shareable between threads."""

    def __init__(self, channel: OverlayChannel):
        self.channel = channel

    def update(self, stage: Stage, fraction: float, detail: str):
        self.channel.send(ProgressCommand(stage=stage.label, fraction=fraction, detail=detail))

    def show_picker(
        self,
        preview_path: Optional[Path],
        default_title: str,
        default_game: str,
        available_channels: List[str],
    ) -> Optional[PickerResult]:
        self.channel.send(ShowPickerCommand(
            preview_path=str(preview_path) if preview_path else None,
            default_title=default_title,
            default_game=default_game,
            available_channels=list(available_channels),
        ))
        logger.info("Waiting for picker response...")
        response = self.channel.receive()
        if response is None:
            raise TransportError("overlay closed while waiting for picker response")
        if isinstance(response, PickerResult):
            return response
        if isinstance(response, Cancelled):
            return None
        raise ProtocolError(f"overlay returned unexpected picker response: {response!r}")

    def show_trimmer(self, video_path: Path, duration: float) -> Optional[TrimmerResult]:
        self.channel.send(ShowTrimmerCommand(video_path=str(video_path), duration=duration))
        logger.info("Waiting for trimmer response...")
        response = self.channel.receive()
        if response is None:
            raise TransportError("overlay closed while waiting for trimmer response")
        if isinstance(response, TrimmerResult):
            return response
        if isinstance(response, Cancelled):
            return None
        raise ProtocolError(f"overlay returned unexpected trimmer response: {response!r}")

    def show_capture(self, status: CaptureStatusPayload) -> CaptureSession:
        self.channel.send(ShowCaptureCommand(status=status))
        return CaptureSession(self.channel)

    def send_capture_status(self, status: CaptureStatusPayload):
        self.channel.send(CaptureStatusCommand(status=status))

    def set_visibility(self, visible: bool):
        self.channel.send(SetVisibilityCommand(visible=visible))


class OverlayVisibility:
    """Remembers what the overlay was last told so redundant commands are skipped."""

    def __init__(self, handle: OverlayHandle, visible: bool = False):
        self._handle = handle
        self._visible = visible
        self._lock = threading.Lock()

    @property
    def visible(self) -> bool:
        with self._lock:
            return self._visible

    def set(self, visible: bool):
        with self._lock:
            if self._visible == visible:
                return
            self._handle.set_visibility(visible)
            self._visible = visible

    def toggle(self) -> bool:
        with self._lock:
            desired = not self._visible
            self._handle.set_visibility(desired)
            self._visible = desired
        logger.info(f"Toggled overlay to: {desired}")
        return desired


class Overlay:
    """The overlay process."""

    def __init__(self, process: subprocess.Popen):
        self._process = process
        self._channel = OverlayChannel(process.stdin, process.stdout)

    @classmethod
    def spawn(cls, binary: Path, initial_message: str) -> "Overlay":
        if not Path(binary).is_file():
            raise TransportError(f"overlay binary {binary} does not exist or is not a file")

        logger.info(f"Spawning overlay: {binary}")
        try:
            process = subprocess.Popen(
                [str(binary), initial_message],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
            )
        except OSError as e:
            raise TransportError(f"failed to spawn overlay binary at {binary}: {e}") from e
        logger.info(f"Overlay spawned with PID: {process.pid}")
        return cls(process)

    def handle(self) -> OverlayHandle:
        return OverlayHandle(self._channel)

    def close(self, timeout: float = 5.0):
        """Ask the overlay to quit and wait for it."""
        try:
            self._channel.send(QuitCommand())
        except TransportError as e:
            logger.debug(f"Overlay already gone while sending quit: {e}")
        self._channel.close_writer()
        try:
            self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning("Overlay did not quit in time, terminating")
            self._process.terminate()
            self._process.wait()
