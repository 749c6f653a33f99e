"""YouTube uploads through the external ``youtubeuploader`` tool."""

import asyncio
import logging
import re
from pathlib import Path
from typing import Callable, Optional

from .progress import Stage, format_stage_detail

logger = logging.getLogger(__name__)

_percent_re = re.compile(r"(\d{1,3}(?:\.\d+)?)%")
_line_split_re = re.compile(r"[\r\n]")

ProgressCallback = Callable[[Stage, float, str], None]


class UploadError(RuntimeError):
    """Raised when the uploader exits unsuccessfully."""


def parse_video_id(output: str) -> Optional[str]:
    for line in reversed(output.splitlines()):
        _, sep, rest = line.partition("Video ID:")
        if sep:
            return rest.strip() or None
    return None


class YouTubeUploader:
    """Runs the uploader binary and reports its progress."""

    def __init__(self, binary: Path, secrets_path: Path, token_cache: Path):
        self.binary = Path(binary)
        self.secrets_path = Path(secrets_path)
        self.token_cache = Path(token_cache)

    def build_args(self, path: Path, title: str, game: str) -> list[str]:
        return [
            str(self.binary),
            "-filename", str(path),
            "-title", title,
            "-privacy", "unlisted",
            "-description", f"Game: {game}",
            "-secrets", str(self.secrets_path),
            "-cache", str(self.token_cache),
        ]

    async def upload(
        self,
        path: Path,
        title: str,
        game: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Optional[str]:
        """
        Upload ``path``.

        Returns:
            The YouTube video id, or None if the tool did not print one.

        Raises:
            UploadError: the tool could not be started or exited non-zero
        """
        def report(fraction: float, detail: str):
            if on_progress is None:
                return
            try:
                on_progress(Stage.UPLOAD, fraction, detail)
            except Exception as e:
                logger.debug(f"Upload progress callback failed: {e}")

        report(0.0, "Starting upload…")
        try:
            self.token_cache.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise UploadError(f"cannot create token cache directory: {e}") from e
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.build_args(path, title, game),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise UploadError(f"failed to spawn uploader: {e}") from e

        output_lines: list[str] = []
        last_fraction = 0.0
        pending = ""

        def handle_line(line: str):
            nonlocal last_fraction
            line = line.strip()
            if not line:
                return
            output_lines.append(line)
            match = _percent_re.search(line)
            if match:
                last_fraction = min(max(float(match.group(1)) / 100.0, 0.0), 1.0)
                report(last_fraction, format_stage_detail(last_fraction, "uploaded"))
            else:
                report(last_fraction, f"Upload: {line}")

        assert proc.stdout
        while True:
            chunk = await proc.stdout.read(4096)
            if not chunk:
                break
            pending += chunk.decode("utf-8", errors="replace")
            *complete, pending = _line_split_re.split(pending)
            for line in complete:
                handle_line(line)
        handle_line(pending)

        returncode = await proc.wait()
        output = "\n".join(output_lines)
        if returncode != 0:
            failure_line = output_lines[-1] if output_lines else f"exit code {returncode}"
            report(last_fraction, f"Upload failed: {failure_line}")
            logger.error(f"Uploader failed ({returncode}): {output}")
            raise UploadError(f"youtubeuploader failed: {failure_line}")

        video_id = parse_video_id(output)
        report(1.0, "Upload complete")
        logger.info(f"Upload of {path.name} finished (video id: {video_id})")
        return video_id
