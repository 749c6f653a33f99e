"""Main entry point - wires the capture session together."""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from .capture_loop import CaptureLoop, Exit, ModeCell, build_capture_status
from .clip_library import ClipLibrary
from .clip_pipeline import ClipPipeline
from .config import (
    CaptureConfig,
    CommonConfig,
    ConfigError,
    ProcessConfig,
    build_capture_config,
    build_parser,
    build_process_config,
    load_config,
    resolve_log_level,
)
from .models import ReplayMode
from .overlay import Overlay, OverlayHandle, OverlayVisibility, TransportError
from .progress import Stage
from .replay_controller import ReplayController, ReplayError, ReplayOutputDirError
from .settings_store import SettingsStore
from .uploader import YouTubeUploader

logger = logging.getLogger(__name__)

READY_MESSAGE = "Replay recorder ready"
PIPELINE_ERROR_DISPLAY_SECONDS = 5.0


def build_uploader(config: CommonConfig) -> Optional[YouTubeUploader]:
    if config.uploader is None:
        return None
    return YouTubeUploader(
        binary=config.uploader.binary,
        secrets_path=config.uploader.secrets_path,
        token_cache=config.config_dir / "request.token",
    )


class CaptureApp:
    """Capture mode: recorder control through the overlay's capture panel."""

    def __init__(self, config: CaptureConfig):
        self.config = config
        self.store = SettingsStore(str(config.config_dir))

        settings = config.replay_settings()
        persisted = self.store.load_settings()
        if persisted is not None:
            persisted.apply_to(settings)
            self.mode = ModeCell(persisted.replay_mode)
            self.start_enabled = persisted.replay_enabled
            logger.info(
                f"Restored settings (mode: {persisted.replay_mode.value}, enabled: {persisted.replay_enabled})"
            )
        else:
            self.mode = ModeCell(ReplayMode.MANUAL)
            self.start_enabled = config.auto_start

        self.controller = ReplayController(settings, save_grace_seconds=config.save_grace)
        self.failed_uploads = self.store.load_failed_uploads()
        self.library = ClipLibrary(config.processed_dir)
        self.uploader = build_uploader(config)

        self.overlay: Optional[Overlay] = None
        self.handle: Optional[OverlayHandle] = None
        self.visibility: Optional[OverlayVisibility] = None

    async def run(self) -> int:
        logger.info("Starting clipctl capture...")

        if self.mode.get() is ReplayMode.MANUAL and self.start_enabled:
            # Only a missing output directory is fatal here
            try:
                await self.controller.ensure_running()
            except ReplayOutputDirError:
                raise
            except ReplayError as e:
                logger.error(f"Failed to start replay: {e}")
                self.controller.set_message(f"Failed to start replay: {e}")

        self.overlay = Overlay.spawn(self.config.overlay_bin, READY_MESSAGE)
        self.handle = self.overlay.handle()
        self.visibility = OverlayVisibility(self.handle)

        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGUSR2, self._toggle_visibility)
        try:
            await self._serve()
        finally:
            loop.remove_signal_handler(signal.SIGUSR2)
            await self.shutdown()
        return 0

    async def _serve(self):
        while True:
            try:
                session = self.handle.show_capture(self._capture_status())
            except TransportError as e:
                logger.error(f"Failed to show capture panel: {e}")
                return

            capture_loop = CaptureLoop(
                controller=self.controller,
                session=session,
                mode=self.mode,
                failed_uploads=self.failed_uploads,
                store=self.store,
                library=self.library,
                uploader=self.uploader,
                hotkey=self.config.hotkey,
                visibility=self.visibility,
                on_progress=self._report_progress,
                detection_interval=self.config.detection_interval,
            )
            outcome = await capture_loop.run()
            if isinstance(outcome, Exit):
                logger.info("Capture panel closed")
                return

            await self._finish_clip(outcome.path)

    async def _finish_clip(self, path: Path):
        pipeline = ClipPipeline(
            handle=self.handle,
            library=self.library,
            store=self.store,
            failed_uploads=self.failed_uploads,
            uploader=self.uploader,
        )
        try:
            await pipeline.process(path)
        except (TransportError, OSError) as e:
            logger.error(f"Clip processing failed: {e}")
            self._report_progress(Stage.DONE, 1.0, f"Error: {e}")
            await asyncio.sleep(PIPELINE_ERROR_DISPLAY_SECONDS)

        try:
            self.visibility.set(False)
        except TransportError as e:
            logger.warning(f"Failed to hide overlay: {e}")
        self.controller.clear_last_saved()
        self.controller.set_message(READY_MESSAGE)
        try:
            self.handle.send_capture_status(self._capture_status())
        except TransportError as e:
            logger.warning(f"Failed to refresh capture status: {e}")

    def _capture_status(self):
        return build_capture_status(
            self.controller.status(),
            self.config.hotkey,
            self.failed_uploads,
            self.mode.get(),
        )

    def _toggle_visibility(self):
        try:
            self.visibility.toggle()
        except TransportError as e:
            logger.warning(f"Failed to toggle overlay visibility: {e}")

    def _report_progress(self, stage: Stage, fraction: float, detail: str):
        try:
            self.handle.update(stage, fraction, detail)
        except TransportError as e:
            logger.debug(f"Dropping progress update: {e}")

    async def shutdown(self):
        logger.info("Stopping clipctl capture...")
        try:
            await self.controller.stop()
        except ReplayError as e:
            logger.error(f"Failed to stop replay recorder: {e}")
        if self.overlay is not None:
            await asyncio.to_thread(self.overlay.close)
        logger.info("Shutdown complete")


async def process_clip(config: ProcessConfig) -> int:
    """Process mode: run the clip pipeline once on an existing file."""
    store = SettingsStore(str(config.config_dir))
    overlay = Overlay.spawn(config.overlay_bin, "Processing clip…")
    pipeline = ClipPipeline(
        handle=overlay.handle(),
        library=ClipLibrary(config.processed_dir),
        store=store,
        failed_uploads=store.load_failed_uploads(),
        uploader=build_uploader(config),
    )
    try:
        filed = await pipeline.process(config.source)
    except (TransportError, OSError) as e:
        logger.error(f"Clip processing failed: {e}")
        return 1
    finally:
        await asyncio.to_thread(overlay.close)

    if filed is not None:
        logger.info(f"Clip stored in {filed.directory}")
    return 0


async def run_app(config: CommonConfig) -> int:
    if isinstance(config, CaptureConfig):
        app = CaptureApp(config)
        task = asyncio.current_task()
        asyncio.get_running_loop().add_signal_handler(signal.SIGTERM, task.cancel)
        try:
            return await app.run()
        except asyncio.CancelledError:
            logger.info("Received SIGTERM, shutting down...")
            return 0
    return await process_clip(config)


def main(argv: Optional[list] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        file_config = load_config(args.config)
        logging.getLogger().setLevel(resolve_log_level(args, file_config))
        if args.command == "capture":
            config = build_capture_config(args, file_config)
        else:
            config = build_process_config(args, file_config)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    try:
        return asyncio.run(run_app(config))
    except (ReplayError, TransportError) as e:
        logger.error(f"Fatal: {e}")
        return 1
    except KeyboardInterrupt:
        return 130


def run():
    """Entry point for console script."""
    sys.exit(main())


if __name__ == "__main__":
    run()
