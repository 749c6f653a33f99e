"""Supervision of the external replay recorder process."""

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

from .models import ReplaySettings, ReplayStatus
from .trigger_signals import STOP_SIGNAL, signal_for_duration

logger = logging.getLogger(__name__)
recorder_logger = logging.getLogger("clipctl.recorder")

# Passed through explicitly so the recorder can reach the compositor / portal
DISPLAY_ENV_VARS = ("WAYLAND_DISPLAY", "DISPLAY", "XDG_RUNTIME_DIR")


class ReplayError(RuntimeError):
    """Raised when the recorder cannot be started, stopped or triggered."""


class ReplayNotRunningError(ReplayError):
    """Raised when a save is requested while no recorder is running."""


class ReplayOutputDirError(ReplayError):
    """Raised when the replay output directory cannot be created."""


def build_recorder_args(settings: ReplaySettings) -> list[str]:
    """Command line for the recorder. ``settings`` should already be normalized."""
    output_dir = str(settings.output_dir)
    args = [
        str(settings.binary),
        "-w", settings.target,
        "-c", "mp4",
        "-f", str(settings.fps),
        "-bm", "cbr",
        "-q", str(settings.bitrate),
        "-r", str(settings.buffer_seconds),
        "-o", output_dir,
        "-ro", output_dir,
        "-replay-storage", settings.replay_storage.value,
        "-v", "no",
    ]
    if settings.restore_portal_session:
        args += ["-restore-portal-session", "yes"]
    for track in settings.audio_tracks:
        if track.strip():
            args += ["-a", track]
    return args


def build_recorder_env() -> dict[str, str]:
    env = dict(os.environ)
    for name in DISPLAY_ENV_VARS:
        value = os.environ.get(name)
        if value is not None:
            env[name] = value
            logger.debug(f"Passing {name}={value} to recorder")
    return env


def find_latest_file(directory: Path) -> Optional[Path]:
    """Most recently modified regular file directly inside ``directory``."""
    newest: Optional[tuple[float, Path]] = None
    try:
        entries = list(directory.iterdir())
    except OSError as e:
        raise ReplayError(f"reading replay output directory {directory}: {e}") from e

    for path in entries:
        try:
            if not path.is_file():
                continue
            modified = path.stat().st_mtime
        except OSError:
            continue
        if newest is None or modified > newest[0]:
            newest = (modified, path)
    return newest[1] if newest else None


class ReplayController:
    """
    Owns the recorder process. At most one recorder runs per controller.

    Every public method refreshes the process state first, so a recorder that
    exited on its own is noticed before any decision is made on it.
    """

    def __init__(
        self,
        settings: ReplaySettings,
        save_grace_seconds: float = 2.0,
        stop_timeout_seconds: float = 10.0,
    ):
        self._settings = settings.copy().normalize()
        self.save_grace_seconds = save_grace_seconds
        self.stop_timeout_seconds = stop_timeout_seconds

        self._proc: Optional[asyncio.subprocess.Process] = None
        self._stdout_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._last_saved: Optional[Path] = None
        self._last_message: Optional[str] = None

    @property
    def settings(self) -> ReplaySettings:
        return self._settings

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    def is_running(self) -> bool:
        self.refresh()
        return self._proc is not None

    def refresh(self):
        """Forget the recorder handle if the process has exited."""
        if self._proc is None or self._proc.returncode is None:
            return
        returncode = self._proc.returncode
        self._proc = None
        self._last_message = f"Replay recorder exited (code {returncode})"
        logger.warning(f"Replay recorder exited on its own with code {returncode}")

    async def ensure_running(self):
        """Start the recorder unless it is already running."""
        self.refresh()
        if self._proc is not None:
            return

        output_dir = self._settings.output_dir
        try:
            output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self._last_message = f"Failed to create output directory: {e}"
            raise ReplayOutputDirError(f"creating replay output directory {output_dir}: {e}") from e

        self._settings = self._settings.copy().normalize()
        args = build_recorder_args(self._settings.copy())
        logger.info(f"Spawning replay recorder: {' '.join(args)}")

        try:
            self._proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=build_recorder_env(),
                start_new_session=True,
            )
        except OSError as e:
            self._proc = None
            self._last_message = f"Failed to start replay recorder: {e}"
            logger.error(f"Failed to spawn replay recorder: {e}")
            raise ReplayError(f"failed to spawn replay recorder: {e}") from e

        self._stdout_task = asyncio.create_task(self._drain(self._proc.stdout, "stdout"))
        self._stderr_task = asyncio.create_task(self._drain(self._proc.stderr, "stderr"))
        self._last_message = "Replay recorder started"
        logger.info(f"Replay recorder started (pid={self._proc.pid})")

    async def stop(self):
        """Interrupt the recorder and wait for it to exit. No-op when stopped."""
        self.refresh()
        proc = self._proc
        if proc is None:
            return

        try:
            os.kill(proc.pid, STOP_SIGNAL)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.warning(f"Failed to interrupt replay recorder (pid={proc.pid}): {e}")

        try:
            await asyncio.wait_for(proc.wait(), timeout=self.stop_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Replay recorder did not exit after {self.stop_timeout_seconds}s, killing")
            try:
                proc.kill()
                await proc.wait()
            except ProcessLookupError:
                pass
        finally:
            self._proc = None

        await self._finish_drains()
        self._last_message = "Replay recorder stopped"
        logger.info("Replay recorder stopped")

    async def apply_settings(self, settings: ReplaySettings):
        """Store new settings, restarting a running recorder so it picks them up."""
        self._settings = settings.copy().normalize()
        self.refresh()
        if self._proc is not None:
            await self.stop()
            await self.ensure_running()

    async def save_recent(self, duration_secs: Optional[int] = None) -> Optional[Path]:
        """
        Ask the recorder to write the last ``duration_secs`` seconds to disk.

        Returns:
            Newest file in the output directory after the flush, or None.

        Raises:
            ReplayNotRunningError: no recorder is running
            ReplayError: the signal could not be delivered
        """
        self.refresh()
        if self._proc is None:
            raise ReplayNotRunningError("replay recorder is not running")

        pid = self.pid
        try:
            raw_signal = signal_for_duration(duration_secs)
            logger.info(f"Triggering replay save (duration={duration_secs}, signal={raw_signal}, pid={pid})")
            os.kill(pid, raw_signal)
        except OSError as e:
            raise ReplayError(f"failed to signal replay recorder: {e}") from e

        # Give the encoder a moment to flush the file
        await asyncio.sleep(self.save_grace_seconds)

        self._last_saved = find_latest_file(self._settings.output_dir)
        if self._last_saved is not None:
            self._last_message = "Replay saved"
            logger.info(f"Replay saved to {self._last_saved}")
        return self._last_saved

    def status(self) -> ReplayStatus:
        self.refresh()
        return ReplayStatus(
            running=self._proc is not None,
            buffer_seconds=self._settings.buffer_seconds,
            bitrate=self._settings.bitrate,
            fps=self._settings.fps,
            target=self._settings.target,
            audio_tracks=list(self._settings.audio_tracks),
            last_saved=self._last_saved,
            message=self._last_message,
        )

    def set_message(self, message: str):
        self._last_message = message

    def clear_last_saved(self):
        self._last_saved = None

    async def _drain(self, stream: Optional[asyncio.StreamReader], name: str):
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            recorder_logger.info(f"[{name}] {line.decode('utf-8', errors='replace').rstrip()}")

    async def _finish_drains(self):
        tasks = [t for t in (self._stdout_task, self._stderr_task) if t is not None]
        self._stdout_task = None
        self._stderr_task = None
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=1.0)
        for task in pending:
            task.cancel()
