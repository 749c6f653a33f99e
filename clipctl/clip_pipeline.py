"""Finishing a saved replay: picker, file placement and optional upload."""

import asyncio
import logging
from pathlib import Path
from typing import Callable, Optional

from .clip_library import ClipLibrary, FiledClip, sanitize_text, title_with_game
from .game_detector import detect_game_name
from .models import FailedUpload, FailedUploadsList
from .overlay import ActionChoice, OverlayHandle, TransportError
from .progress import Stage
from .settings_store import SettingsStore
from .uploader import UploadError, YouTubeUploader

logger = logging.getLogger(__name__)

CHANNEL_OPTIONS = ["voice", "discord", "game"]


class ClipPipeline:
    """Walks one saved replay file through the overlay's picker to its final place."""

    def __init__(
        self,
        handle: OverlayHandle,
        library: ClipLibrary,
        store: SettingsStore,
        failed_uploads: FailedUploadsList,
        uploader: Optional[YouTubeUploader] = None,
        detect_game: Callable[[], str] = detect_game_name,
    ):
        self.handle = handle
        self.library = library
        self.store = store
        self.failed_uploads = failed_uploads
        self.uploader = uploader
        self.detect_game = detect_game

    async def process(self, source: Path) -> Optional[FiledClip]:
        """
        Process one clip.

        Returns:
            Where the clip ended up, or None if it was cancelled or discarded.

        Raises:
            TransportError: the overlay went away mid-exchange
            OSError: the clip could not be moved into the library
        """
        source = Path(source)
        self.handle.update(Stage.DETECTED, 0.0, f"Detected {source.name}")

        detected_game = await asyncio.to_thread(self.detect_game)
        picked = await asyncio.to_thread(
            self.handle.show_picker,
            source,
            source.stem,
            detected_game,
            CHANNEL_OPTIONS,
        )

        if picked is None:
            logger.info(f"Picker cancelled, deleting {source}")
            self.library.discard(source)
            self.handle.update(Stage.DONE, 1.0, "Cancelled")
            return None

        if picked.action is ActionChoice.DISCARD:
            logger.info(f"Discarding {source}")
            self.library.discard(source)
            self.handle.update(Stage.DONE, 1.0, "Discarded")
            return None

        safe_title = sanitize_text(picked.title)
        safe_game = sanitize_text(picked.game) if picked.game.strip() else ""
        title_game = title_with_game(safe_title, safe_game)

        self.handle.update(Stage.FINALISE, 0.0, "Finalising files…")
        full_path, processed_path = self.library.finalise(source, safe_title)
        self.handle.update(Stage.FINALISE, 1.0, "Files ready")

        if picked.action is ActionChoice.MOVE:
            filed = self.library.file_as_moved(full_path, processed_path, title_game, safe_title)
            self.handle.update(Stage.DONE, 1.0, "Saved (no upload)")
            logger.info(f"Saved clip to {filed.directory}")
            return filed

        video_id = await self._upload(processed_path, title_game, safe_game)
        if video_id:
            filed = self.library.file_as_uploaded(full_path, processed_path, title_game, safe_title, video_id)
            self.handle.update(Stage.DONE, 1.0, "Upload complete")
            logger.info(f"Uploaded video id: {video_id} (stored at {filed.directory})")
            return filed

        filed = self.library.file_as_moved(full_path, processed_path, title_game, safe_title)
        self.handle.update(Stage.DONE, 1.0, "Upload failed - saved locally")
        logger.warning(f"Upload failed, saved clip to {filed.directory}")
        self._record_failed_upload(safe_title, safe_game, filed)
        return filed

    async def _upload(self, path: Path, title: str, game: str) -> Optional[str]:
        if self.uploader is None:
            logger.warning("No uploader configured, keeping clip for a later retry")
            return None
        try:
            return await self.uploader.upload(path, title, game, on_progress=self._report)
        except UploadError as e:
            logger.error(f"Upload failed: {e}")
            return None

    def _report(self, stage: Stage, fraction: float, detail: str):
        try:
            self.handle.update(stage, fraction, detail)
        except TransportError as e:
            logger.debug(f"Dropping progress update: {e}")

    def _record_failed_upload(self, safe_title: str, safe_game: str, filed: FiledClip):
        title_game = title_with_game(safe_title, safe_game)
        upload = FailedUpload.create(
            title=safe_title,
            game=safe_game,
            processed_path=filed.processed_path or filed.directory / f"{title_game}.mp4",
            full_path=filed.full_path or filed.directory / f"{safe_title}_raw.mp4",
        )
        self.failed_uploads.add(upload)
        if not self.store.save_failed_uploads(self.failed_uploads):
            logger.error("Failed to save failed uploads list")
