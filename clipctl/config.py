"""Command line and YAML configuration."""

import argparse
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional

import yaml

from .models import ReplaySettings, ReplayStorage
from .settings_store import DEFAULT_CONFIG_DIR

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "~/.config/clipctl/config.yaml"
DEFAULT_AUDIO_TRACKS = ["default_input", "app:discord", "app-inverse:discord"]
DEFAULT_UNPROCESSED_DIR = "~/Videos/clips/unprocessed"
DEFAULT_PROCESSED_DIR = "~/Videos/clips/processed"


class ConfigError(ValueError):
    """Raised when the configuration cannot be used."""


def load_config(config_path: str = DEFAULT_CONFIG_FILE) -> dict:
    """Load configuration from YAML file."""
    path = Path(config_path).expanduser()

    if not path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return {}

    try:
        with open(path) as f:
            config = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e
    if not isinstance(config, dict):
        raise ConfigError(f"config file {path} must contain a mapping")
    return config


def resolve_log_level(args: argparse.Namespace, file_config: dict) -> int:
    """``--verbose`` wins; otherwise ``logging.level`` from YAML; otherwise INFO."""
    if getattr(args, "verbose", False):
        return logging.DEBUG
    section = file_config.get("logging") or {}
    if not isinstance(section, dict):
        raise ConfigError("the logging section must be a mapping")
    name = section.get("level")
    if name is None:
        return logging.INFO
    level = logging.getLevelName(str(name).upper())
    if not isinstance(level, int):
        raise ConfigError(f"unknown log level: {name}")
    return level


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clipctl",
        description="Replay capture and clip processing",
    )
    parser.add_argument("--config", default=DEFAULT_CONFIG_FILE, help="YAML config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--unprocessed-dir", help="Directory the recorder saves replays into")
    parser.add_argument("--processed-dir", help="Directory finished clips are filed into")
    parser.add_argument("--overlay-bin", help="Overlay binary")
    parser.add_argument("--uploader-bin", help="youtubeuploader binary")
    parser.add_argument("--secrets-path", help="youtubeuploader client secrets file")
    parser.add_argument("--config-dir", help=f"Directory for persisted state (default: {DEFAULT_CONFIG_DIR})")

    subparsers = parser.add_subparsers(dest="command", required=True)

    capture = subparsers.add_parser("capture", help="Run the replay capture panel")
    capture.add_argument("--recorder-bin", help="gpu-screen-recorder binary")
    capture.add_argument("--target", help="Capture target (default: portal)")
    capture.add_argument("--buffer-seconds", type=int, help="Replay buffer length (default: 300)")
    capture.add_argument("--bitrate", type=int, help="Constant bitrate in kbps (default: 60000)")
    capture.add_argument("--fps", type=int, help="Frame rate (default: 60)")
    capture.add_argument(
        "--audio",
        action="append",
        dest="audio_tracks",
        metavar="TRACK",
        help="Audio track, repeatable (default: default_input, app:discord, app-inverse:discord)",
    )
    capture.add_argument("--restore-portal", action=argparse.BooleanOptionalAction, default=None)
    capture.add_argument("--storage", help="Replay storage: ram or disk (default: ram)")
    capture.add_argument("--hotkey", help="Hotkey label shown in the panel (default: Alt+X)")
    capture.add_argument("--auto-start", action=argparse.BooleanOptionalAction, default=None)

    process = subparsers.add_parser("process", help="Finish a single saved clip")
    process.add_argument("source", help="Clip file to process")

    return parser


def _pick(cli_value: Any, section: dict, key: str, default: Any) -> Any:
    if cli_value is not None:
        return cli_value
    value = section.get(key)
    if value is not None:
        return value
    return default


def resolve_binary(value: str, what: str) -> Path:
    """Absolute path of an executable, looked up on PATH for bare names."""
    if "/" not in value:
        found = shutil.which(value)
        if found is None:
            raise ConfigError(f"{what} binary '{value}' not found on PATH")
        return Path(found).resolve()
    path = Path(value).expanduser().resolve()
    if not path.is_file():
        raise ConfigError(f"{what} binary {path} does not exist or is not a file")
    return path


def resolve_dir(value: str) -> Path:
    return Path(value).expanduser().resolve()


@dataclass
class UploaderConfig:
    binary: Path
    secrets_path: Path


@dataclass
class CommonConfig:
    overlay_bin: Path
    unprocessed_dir: Path
    processed_dir: Path
    config_dir: Path
    uploader: Optional[UploaderConfig] = None


@dataclass
class CaptureConfig(CommonConfig):
    recorder_bin: Path = Path("gpu-screen-recorder")
    target: str = "portal"
    buffer_seconds: int = 300
    bitrate: int = 60_000
    fps: int = 60
    audio_tracks: List[str] = field(default_factory=lambda: list(DEFAULT_AUDIO_TRACKS))
    restore_portal_session: bool = True
    replay_storage: ReplayStorage = ReplayStorage.RAM
    hotkey: str = "Alt+X"
    auto_start: bool = False
    detection_interval: float = 5.0
    save_grace: float = 2.0

    def replay_settings(self) -> ReplaySettings:
        return ReplaySettings(
            binary=self.recorder_bin,
            output_dir=self.unprocessed_dir,
            target=self.target,
            buffer_seconds=self.buffer_seconds,
            bitrate=self.bitrate,
            fps=self.fps,
            audio_tracks=list(self.audio_tracks),
            restore_portal_session=self.restore_portal_session,
            replay_storage=self.replay_storage,
        )


@dataclass
class ProcessConfig(CommonConfig):
    source: Path = Path()


def _common(args: argparse.Namespace, file_config: dict) -> dict:
    binaries = file_config.get("binaries", {}) or {}
    paths = file_config.get("paths", {}) or {}

    uploader = None
    uploader_bin = _pick(args.uploader_bin, binaries, "uploader", None)
    if uploader_bin:
        secrets = _pick(args.secrets_path, paths, "secrets", None)
        if not secrets:
            raise ConfigError("an uploader secrets path is required when an uploader is configured")
        secrets_path = Path(secrets).expanduser().resolve()
        if not secrets_path.is_file():
            raise ConfigError(f"uploader secrets file {secrets_path} does not exist")
        uploader = UploaderConfig(binary=resolve_binary(uploader_bin, "uploader"), secrets_path=secrets_path)
    else:
        logger.info("No uploader configured, uploads will be kept for retry")

    return dict(
        overlay_bin=resolve_binary(_pick(args.overlay_bin, binaries, "overlay", "clipctl-overlay"), "overlay"),
        unprocessed_dir=resolve_dir(_pick(args.unprocessed_dir, paths, "unprocessed_dir", DEFAULT_UNPROCESSED_DIR)),
        processed_dir=resolve_dir(_pick(args.processed_dir, paths, "processed_dir", DEFAULT_PROCESSED_DIR)),
        config_dir=resolve_dir(_pick(args.config_dir, paths, "config_dir", DEFAULT_CONFIG_DIR)),
        uploader=uploader,
    )


def build_capture_config(args: argparse.Namespace, file_config: dict) -> CaptureConfig:
    """Merge CLI flags over the YAML ``capture`` section over built-in defaults."""
    binaries = file_config.get("binaries", {}) or {}
    capture = file_config.get("capture", {}) or {}

    storage = _pick(args.storage, capture, "storage", "ram")
    try:
        replay_storage = ReplayStorage.parse(str(storage))
    except ValueError as e:
        raise ConfigError(str(e)) from e

    common = _common(args, file_config)
    recorder_bin = resolve_binary(_pick(args.recorder_bin, binaries, "recorder", "gpu-screen-recorder"), "recorder")
    audio_tracks = _pick(args.audio_tracks, capture, "audio_tracks", DEFAULT_AUDIO_TRACKS)

    try:
        buffer_seconds = int(_pick(args.buffer_seconds, capture, "buffer_seconds", 300))
        bitrate = int(_pick(args.bitrate, capture, "bitrate", 60_000))
        fps = int(_pick(args.fps, capture, "fps", 60))
        detection_interval = float(capture.get("detection_interval", 5.0))
        save_grace = float(capture.get("save_grace", 2.0))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid capture option: {e}") from e

    return CaptureConfig(
        **common,
        recorder_bin=recorder_bin,
        target=str(_pick(args.target, capture, "target", "portal")),
        buffer_seconds=buffer_seconds,
        bitrate=bitrate,
        fps=fps,
        audio_tracks=[str(t) for t in audio_tracks],
        restore_portal_session=bool(_pick(args.restore_portal, capture, "restore_portal_session", True)),
        replay_storage=replay_storage,
        hotkey=str(_pick(args.hotkey, capture, "hotkey", "Alt+X")),
        auto_start=bool(_pick(args.auto_start, capture, "auto_start", False)),
        detection_interval=detection_interval,
        save_grace=save_grace,
    )


def build_process_config(args: argparse.Namespace, file_config: dict) -> ProcessConfig:
    source = Path(args.source).expanduser().resolve()
    if not source.is_file():
        raise ConfigError(f"source file {source} does not exist")
    return ProcessConfig(**_common(args, file_config), source=source)
