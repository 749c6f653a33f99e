"""Data models for clipctl."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, List


DEFAULT_AUDIO_TRACK = "default_input"
DEFAULT_BUFFER_SECONDS = 60
DEFAULT_BITRATE = 60_000
DEFAULT_FPS = 60


class ReplayStorage(Enum):
    """Where the recorder keeps its rolling buffer."""
    RAM = "ram"
    DISK = "disk"

    @classmethod
    def parse(cls, value: str) -> "ReplayStorage":
        normalized = (value or "").strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        raise ValueError(f"unsupported replay storage '{value}', expected 'ram' or 'disk'")


class ReplayMode(Enum):
    """How recording is started and stopped."""
    MANUAL = "manual"  # User toggles the recorder
    AUTO_WITH_GAME = "auto"  # Recorder follows detected game presence

    @classmethod
    def parse(cls, value: Optional[str]) -> "ReplayMode":
        """Parse a mode string. Unknown values mean manual."""
        if value in ("auto", "AutoWithGame", "auto_with_game"):
            return cls.AUTO_WITH_GAME
        return cls.MANUAL


@dataclass
class ReplaySettings:
    """Recorder configuration. Normalized before every spawn."""
    binary: Path
    output_dir: Path
    target: str = "portal"
    buffer_seconds: int = 300
    bitrate: int = DEFAULT_BITRATE
    fps: int = DEFAULT_FPS
    audio_tracks: List[str] = field(default_factory=lambda: [DEFAULT_AUDIO_TRACK])
    restore_portal_session: bool = True
    replay_storage: ReplayStorage = ReplayStorage.RAM

    def normalize(self) -> "ReplaySettings":
        """Replace non-positive numbers and empty track lists with defaults (in place)."""
        if self.buffer_seconds <= 0:
            self.buffer_seconds = DEFAULT_BUFFER_SECONDS
        if self.bitrate <= 0:
            self.bitrate = DEFAULT_BITRATE
        if self.fps <= 0:
            self.fps = DEFAULT_FPS
        self.audio_tracks = [track for track in self.audio_tracks if track.strip()]
        if not self.audio_tracks:
            self.audio_tracks = [DEFAULT_AUDIO_TRACK]
        return self

    def copy(self) -> "ReplaySettings":
        return ReplaySettings(
            binary=self.binary,
            output_dir=self.output_dir,
            target=self.target,
            buffer_seconds=self.buffer_seconds,
            bitrate=self.bitrate,
            fps=self.fps,
            audio_tracks=list(self.audio_tracks),
            restore_portal_session=self.restore_portal_session,
            replay_storage=self.replay_storage,
        )


@dataclass(frozen=True)
class ReplayStatus:
    """Point-in-time view of the replay controller."""
    running: bool
    buffer_seconds: int
    bitrate: int
    fps: int
    target: str
    audio_tracks: List[str]
    last_saved: Optional[Path] = None
    message: Optional[str] = None


@dataclass
class PersistedSettings:
    """The part of the session configuration that survives restarts."""
    buffer_seconds: int
    bitrate: int
    fps: int
    target: str
    audio_tracks: List[str]
    replay_mode: ReplayMode = ReplayMode.MANUAL
    replay_enabled: bool = False

    @classmethod
    def from_replay_settings(
        cls,
        settings: ReplaySettings,
        replay_mode: ReplayMode,
        replay_enabled: bool,
    ) -> "PersistedSettings":
        return cls(
            buffer_seconds=settings.buffer_seconds,
            bitrate=settings.bitrate,
            fps=settings.fps,
            target=settings.target,
            audio_tracks=list(settings.audio_tracks),
            replay_mode=replay_mode,
            replay_enabled=replay_enabled,
        )

    def apply_to(self, settings: ReplaySettings):
        """Overwrite the persisted fields of ``settings``."""
        settings.buffer_seconds = self.buffer_seconds
        settings.bitrate = self.bitrate
        settings.fps = self.fps
        settings.target = self.target
        settings.audio_tracks = list(self.audio_tracks)

    def to_dict(self) -> dict:
        return {
            "buffer_seconds": self.buffer_seconds,
            "bitrate": self.bitrate,
            "fps": self.fps,
            "target": self.target,
            "audio_tracks": list(self.audio_tracks),
            "replay_mode": self.replay_mode.value,
            "replay_enabled": self.replay_enabled,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PersistedSettings":
        return cls(
            buffer_seconds=int(data["buffer_seconds"]),
            bitrate=int(data["bitrate"]),
            fps=int(data["fps"]),
            target=data["target"],
            audio_tracks=list(data["audio_tracks"]),
            replay_mode=ReplayMode.parse(data.get("replay_mode")),
            replay_enabled=bool(data.get("replay_enabled", False)),
        )


@dataclass
class FailedUpload:
    """A finished clip whose upload did not complete."""
    id: str
    title: str
    game: str
    processed_path: Path  # Mixed/trimmed clip that should be uploaded
    full_path: Path  # Original capture
    timestamp: int  # Unix seconds

    @classmethod
    def create(
        cls,
        title: str,
        game: str,
        processed_path: Path,
        full_path: Path,
        now: Optional[datetime] = None,
    ) -> "FailedUpload":
        timestamp = int((now or datetime.now()).timestamp())
        return cls(
            id=f"{timestamp}-{title[:20]}",
            title=title,
            game=game,
            processed_path=Path(processed_path),
            full_path=Path(full_path),
            timestamp=timestamp,
        )

    @property
    def display_name(self) -> str:
        if not self.game:
            return self.title
        return f"{self.title} [{self.game}]"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "game": self.game,
            "processed_path": str(self.processed_path),
            "full_path": str(self.full_path),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FailedUpload":
        return cls(
            id=data["id"],
            title=data["title"],
            game=data.get("game", ""),
            processed_path=Path(data["processed_path"]),
            full_path=Path(data["full_path"]),
            timestamp=int(data.get("timestamp", 0)),
        )


@dataclass
class FailedUploadsList:
    """Ordered retry queue of failed uploads. Ids are unique."""
    uploads: List[FailedUpload] = field(default_factory=list)

    def add(self, upload: FailedUpload):
        self.remove(upload.id)
        self.uploads.append(upload)

    def remove(self, upload_id: str) -> Optional[FailedUpload]:
        for index, upload in enumerate(self.uploads):
            if upload.id == upload_id:
                return self.uploads.pop(index)
        return None

    def get(self, upload_id: str) -> Optional[FailedUpload]:
        return next((u for u in self.uploads if u.id == upload_id), None)

    def __len__(self) -> int:
        return len(self.uploads)

    def to_list(self) -> list[dict]:
        return [u.to_dict() for u in self.uploads]

    @classmethod
    def from_list(cls, data: list) -> "FailedUploadsList":
        result = cls()
        for item in data:
            result.add(FailedUpload.from_dict(item))
        return result
