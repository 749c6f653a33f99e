"""The capture session loop: overlay actions, game detection and the recorder."""

import asyncio
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

from .clip_library import ClipLibrary
from .game_detector import detect_running_game
from .models import FailedUploadsList, PersistedSettings, ReplayMode, ReplayStatus
from .overlay import (
    CaptureAction,
    CaptureSession,
    CaptureStatusPayload,
    FailedUploadAction,
    FailedUploadEntry,
    OverlayVisibility,
    ProtocolError,
    SaveAction,
    ToggleAction,
    TransportError,
    UpdateModeAction,
    UpdateSettingsAction,
)
from .replay_controller import ReplayController, ReplayError
from .settings_store import SettingsStore
from .uploader import ProgressCallback, UploadError, YouTubeUploader

logger = logging.getLogger(__name__)

DETECTION_INTERVAL_SECONDS = 5.0


@dataclass
class Saved:
    """The user saved a clip; the file goes to the clip pipeline."""
    path: Path


@dataclass
class Exit:
    """The overlay closed or the user cancelled the capture panel."""


CaptureOutcome = Union[Saved, Exit]


class ModeCell:
    """Replay mode shared between the loop and the rest of the app."""

    def __init__(self, mode: ReplayMode):
        self._mode = mode
        self._lock = threading.Lock()

    def get(self) -> ReplayMode:
        with self._lock:
            return self._mode

    def swap(self, mode: ReplayMode) -> ReplayMode:
        """Set ``mode`` and return the previous value."""
        with self._lock:
            old, self._mode = self._mode, mode
            return old


def build_capture_status(
    status: ReplayStatus,
    hotkey: str,
    failed_uploads: FailedUploadsList,
    mode: ReplayMode,
    is_saving: bool = False,
) -> CaptureStatusPayload:
    return CaptureStatusPayload(
        running=status.running,
        buffer_seconds=status.buffer_seconds,
        bitrate=status.bitrate,
        fps=status.fps,
        target=status.target,
        audio_tracks=list(status.audio_tracks),
        last_saved=str(status.last_saved) if status.last_saved else None,
        hotkey=hotkey,
        message=status.message,
        is_saving=is_saving,
        failed_uploads=[FailedUploadEntry(id=u.id, display_name=u.display_name) for u in failed_uploads.uploads],
        replay_mode=mode.value,
    )


class CaptureLoop:
    """
    Runs one capture panel session until a clip is saved or the overlay goes away.

    Two event sources are raced: the next overlay action (read on a worker
    thread, since the overlay protocol is blocking) and a periodic game
    detection tick. Each event is handled to completion before the next one
    is looked at.
    """

    def __init__(
        self,
        controller: ReplayController,
        session: CaptureSession,
        mode: ModeCell,
        failed_uploads: FailedUploadsList,
        store: SettingsStore,
        library: ClipLibrary,
        uploader: Optional[YouTubeUploader] = None,
        hotkey: str = "",
        visibility: Optional[OverlayVisibility] = None,
        detect_game: Callable[[], str] = detect_running_game,
        on_progress: Optional[ProgressCallback] = None,
        detection_interval: float = DETECTION_INTERVAL_SECONDS,
    ):
        self.controller = controller
        self.session = session
        self.mode = mode
        self.failed_uploads = failed_uploads
        self.store = store
        self.library = library
        self.uploader = uploader
        self.hotkey = hotkey
        self.visibility = visibility
        self.detect_game = detect_game
        self.on_progress = on_progress
        self.detection_interval = detection_interval

        self.game_was_running = False
        self._abandon_worker: Optional[threading.Event] = None

    async def run(self) -> CaptureOutcome:
        loop = asyncio.get_running_loop()

        if self.mode.get() is ReplayMode.AUTO_WITH_GAME and await self.check_game():
            self.push_status()

        action_task = self._start_action_worker()
        next_tick = loop.time() + self.detection_interval
        outcome: Optional[CaptureOutcome] = None

        try:
            while outcome is None:
                timeout = max(0.0, next_tick - loop.time())
                done, _ = await asyncio.wait({action_task}, timeout=timeout)

                if action_task in done:
                    outcome = await self._on_action_ready(action_task)
                    if outcome is None:
                        action_task = self._start_action_worker()
                    continue

                await self.on_detection_tick()

                # Ticks missed while busy are dropped, not queued
                now = loop.time()
                next_tick += self.detection_interval
                if next_tick <= now:
                    missed = int((now - next_tick) // self.detection_interval) + 1
                    next_tick += missed * self.detection_interval
        finally:
            if not action_task.done():
                self._abandon(action_task)

        logger.info(f"Capture loop finished: {outcome}")
        return outcome

    # -----------------------
    # Event sources
    # -----------------------

    def _start_action_worker(self) -> asyncio.Future:
        abandoned = threading.Event()
        self._abandon_worker = abandoned
        return asyncio.ensure_future(asyncio.to_thread(self.session.wait_for_action, abandoned))

    def _abandon(self, action_task: asyncio.Future):
        # The worker thread stays blocked on the overlay until its next line;
        # whatever it reads then is pushed back for the next reader.
        if self._abandon_worker is not None:
            self._abandon_worker.set()
        action_task.cancel()

    async def _on_action_ready(self, action_task: asyncio.Future) -> Optional[CaptureOutcome]:
        try:
            action = action_task.result()
        except ProtocolError as e:
            logger.error(f"Invalid overlay message: {e}")
            self.controller.set_message(f"Overlay sent an invalid message: {e}")
            self.push_status()
            return None
        except TransportError as e:
            logger.error(f"Overlay connection failed: {e}")
            return Exit()

        if action is None:
            return Exit()

        outcome = await self.handle_action(action)
        if outcome is None:
            self.push_status()
        return outcome

    async def on_detection_tick(self):
        if self.mode.get() is ReplayMode.AUTO_WITH_GAME:
            if await self.check_game():
                self.push_status()
        elif self.game_was_running:
            self.game_was_running = False

    async def check_game(self) -> bool:
        """
        Start or stop the recorder when game presence changes.

        Returns:
            True if a transition was acted on.
        """
        try:
            game_name = await asyncio.to_thread(self.detect_game)
        except Exception as e:
            logger.error(f"Game detection error: {e}")
            game_name = ""
        game_running = bool(game_name)
        logger.debug(f"Game detection check: '{game_name}' (running: {game_running})")

        if game_running and not self.game_was_running:
            logger.info("Game detected, ensuring replay is running")
            try:
                await self.controller.ensure_running()
            except ReplayError as e:
                logger.error(f"Failed to start replay: {e}")
                self.controller.set_message(f"Failed to start replay: {e}")
            else:
                self.controller.set_message(f"Replay started ({game_name})")
                self.game_was_running = True
            return True

        if not game_running and self.game_was_running:
            logger.info("Game exited, stopping replay")
            try:
                await self.controller.stop()
            except ReplayError as e:
                logger.error(f"Failed to stop replay: {e}")
                self.controller.set_message(f"Failed to stop replay: {e}")
            else:
                self.controller.set_message("Replay stopped (game exited)")
            self.game_was_running = False
            return True

        return False

    # -----------------------
    # Action dispatch
    # -----------------------

    async def handle_action(self, action: CaptureAction) -> Optional[CaptureOutcome]:
        logger.info(f"Handling capture action: {action}")
        if isinstance(action, ToggleAction):
            await self._handle_toggle(action)
        elif isinstance(action, SaveAction):
            return await self._handle_save(action)
        elif isinstance(action, UpdateSettingsAction):
            await self._handle_update_settings(action)
        elif isinstance(action, UpdateModeAction):
            await self._handle_update_mode(action)
        elif isinstance(action, FailedUploadAction):
            await self._handle_failed_upload(action)
        else:
            logger.warning(f"Unhandled capture action: {action!r}")
        return None

    async def _handle_toggle(self, action: ToggleAction):
        mode = self.mode.get()
        if mode is not ReplayMode.MANUAL:
            self.controller.set_message("Toggle disabled in auto mode")
            return

        if action.enable:
            try:
                await self.controller.ensure_running()
            except ReplayError as e:
                logger.error(f"Failed to enable replay: {e}")
                self.controller.set_message(f"Failed to enable replay: {e}")
            else:
                self.controller.set_message("Replay recorder started")
        else:
            try:
                await self.controller.stop()
            except ReplayError as e:
                logger.error(f"Failed to stop replay: {e}")
                self.controller.set_message(f"Failed to stop replay: {e}")
            else:
                self.controller.set_message("Replay recorder stopped")

        self._persist(mode, action.enable)

    async def _handle_save(self, action: SaveAction) -> Optional[CaptureOutcome]:
        self.controller.set_message("Saving replay clip...")
        self.push_status(is_saving=True)

        duration = action.duration_secs or None
        try:
            path = await self.controller.save_recent(duration)
        except ReplayError as e:
            logger.error(f"Save failed: {e}")
            self.controller.set_message(f"Save failed: {e}")
            return None

        if path is None:
            self.controller.set_message("No new replay file generated")
            return None

        if self.visibility is not None:
            try:
                self.visibility.set(True)
            except TransportError as e:
                logger.warning(f"Failed to show overlay: {e}")
        self.controller.set_message("Processing clip…")
        self.push_status()
        return Saved(path=path)

    async def _handle_update_settings(self, action: UpdateSettingsAction):
        requested = action.settings
        new_settings = self.controller.settings.copy()
        if requested.target.strip():
            new_settings.target = requested.target
        if requested.buffer_seconds > 0:
            new_settings.buffer_seconds = requested.buffer_seconds
        if requested.bitrate > 0:
            new_settings.bitrate = requested.bitrate
        if requested.fps > 0:
            new_settings.fps = requested.fps
        if requested.audio_tracks:
            new_settings.audio_tracks = list(requested.audio_tracks)

        try:
            await self.controller.apply_settings(new_settings)
        except ReplayError as e:
            logger.error(f"Applying settings failed: {e}")
            self.controller.set_message(f"Apply failed: {e}")
            return

        self.controller.set_message("Settings updated")
        self._persist(self.mode.get(), self.controller.is_running())

    async def _handle_update_mode(self, action: UpdateModeAction):
        new_mode = ReplayMode.parse(action.mode)
        old_mode = self.mode.swap(new_mode)
        if new_mode is old_mode:
            return

        logger.info(f"Replay mode changed: {old_mode.value} -> {new_mode.value}")
        self.game_was_running = False
        if new_mode is ReplayMode.MANUAL:
            try:
                await self.controller.stop()
            except ReplayError as e:
                logger.error(f"Failed to stop replay: {e}")
                self.controller.set_message(f"Failed to stop replay: {e}")
            else:
                self.controller.set_message("Manual mode enabled")
        else:
            self.controller.set_message("Auto mode enabled")
            await self.check_game()

        self._persist(new_mode, self.controller.is_running())

    async def _handle_failed_upload(self, action: FailedUploadAction):
        if action.upload_action == "retry":
            await self._retry_upload(action.id)
        elif action.upload_action == "ignore":
            logger.info(f"Ignoring failed upload: {action.id}")
            if self.failed_uploads.remove(action.id) is not None:
                self.store.save_failed_uploads(self.failed_uploads)
            self.controller.set_message("Upload removed from list")
        elif action.upload_action == "discard":
            upload = self.failed_uploads.remove(action.id)
            if upload is None:
                self.controller.set_message("Upload not found")
                return
            logger.info(f"Discarding failed upload: {upload.display_name}")
            self.library.discard(upload.processed_path, upload.full_path)
            self.store.save_failed_uploads(self.failed_uploads)
            self.controller.set_message("Upload discarded")
        else:
            logger.warning(f"Unknown failed upload action: {action.upload_action}")

    async def _retry_upload(self, upload_id: str):
        upload = self.failed_uploads.get(upload_id)
        if upload is None:
            self.controller.set_message("Upload not found")
            return
        if self.uploader is None:
            self.controller.set_message("Retry failed: uploads are not configured")
            return

        logger.info(f"Retrying upload for: {upload.display_name}")
        self.controller.set_message("Retrying upload...")
        self.push_status()

        try:
            video_id = await self.uploader.upload(
                upload.processed_path,
                upload.display_name,
                upload.game,
                on_progress=self.on_progress,
            )
        except UploadError as e:
            logger.error(f"Retry upload failed: {e}")
            self.controller.set_message(f"Retry failed: {e}")
            return

        if not video_id:
            self.controller.set_message("Retry failed: no video id")
            return

        logger.info(f"Retry successful, video ID: {video_id}")
        try:
            self.library.file_as_uploaded(
                upload.full_path,
                upload.processed_path,
                upload.display_name,
                upload.title,
                video_id,
            )
        except OSError as e:
            logger.error(f"Failed to move files: {e}")

        self.failed_uploads.remove(upload_id)
        self.store.save_failed_uploads(self.failed_uploads)
        self.controller.set_message("Retry successful!")

    # -----------------------
    # Helpers
    # -----------------------

    def push_status(self, is_saving: bool = False):
        status = build_capture_status(
            self.controller.status(),
            self.hotkey,
            self.failed_uploads,
            self.mode.get(),
            is_saving=is_saving,
        )
        try:
            self.session.update_status(status)
        except TransportError as e:
            logger.warning(f"Failed to update capture status: {e}")

    def _persist(self, mode: ReplayMode, enabled: bool):
        persisted = PersistedSettings.from_replay_settings(self.controller.settings, mode, enabled)
        if not self.store.save_settings(persisted):
            logger.error("Failed to save settings")
