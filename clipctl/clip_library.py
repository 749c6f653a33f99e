"""Naming and placement of finished clips in the processed directory."""

import logging
import shutil
from pathlib import Path
from typing import NamedTuple, Optional

logger = logging.getLogger(__name__)

MAX_UNIQUE_ATTEMPTS = 9999
FORBIDDEN_CHARS = set('/\\:*?"<>|\0')


class FiledClip(NamedTuple):
    directory: Path
    processed_path: Optional[Path]
    full_path: Optional[Path]


def sanitize_text(value: str) -> str:
    """Make ``value`` safe to use as a file or directory name."""
    cleaned = "".join(c for c in value if c not in FORBIDDEN_CHARS)
    cleaned = " ".join(cleaned.split())
    return cleaned or "clip"


def title_with_game(title: str, game: str) -> str:
    if not game:
        return title
    return f"{title} [{game}]"


def unique_path(path: Path) -> Path:
    """``path`` if free, else ``stem-N.ext`` for the first free N."""
    if not path.exists():
        return path

    for idx in range(1, MAX_UNIQUE_ATTEMPTS + 1):
        candidate = path.with_name(f"{path.stem}-{idx}{path.suffix}")
        if not candidate.exists():
            return candidate
    raise FileExistsError(f"failed to find unique path after {MAX_UNIQUE_ATTEMPTS} attempts")


class ClipLibrary:
    """Moves clips into ``processed_dir`` using the library's folder layout."""

    def __init__(self, processed_dir: Path):
        self.processed_dir = Path(processed_dir)

    def finalise(self, source: Path, safe_title: str) -> tuple[Path, Path]:
        """
        Move the raw capture next to a copy that is handed to the upload step.

        Returns:
            (full_path, processed_path)
        """
        self.processed_dir.mkdir(parents=True, exist_ok=True)
        ext = source.suffix or ".mp4"
        out_full = unique_path(self.processed_dir / f"{safe_title}_full{ext}")
        out_processed = unique_path(self.processed_dir / f"{safe_title}{ext}")

        shutil.move(str(source), out_full)
        shutil.copy2(out_full, out_processed)
        logger.info(f"Finalised {source.name} -> {out_full.name}, {out_processed.name}")
        return out_full, out_processed

    def file_as_moved(self, full_path: Path, processed_path: Path, title_game: str, safe_title: str) -> FiledClip:
        """File a clip that was kept locally."""
        dest_dir = self.processed_dir / title_game
        return self._relocate(dest_dir, full_path, processed_path, f"{title_game}.mp4", f"{safe_title}_raw.mp4")

    def file_as_uploaded(
        self,
        full_path: Path,
        processed_path: Path,
        title_game: str,
        safe_title: str,
        video_id: str,
    ) -> FiledClip:
        """File a clip that made it to YouTube."""
        dest_dir = self.processed_dir / f"{title_game} [{video_id}]"
        return self._relocate(
            dest_dir,
            full_path,
            processed_path,
            f"{title_game} [{video_id}].mp4",
            f"{safe_title}_raw.mp4",
        )

    def discard(self, *paths: Optional[Path]):
        for path in paths:
            if path is None or not path.exists():
                continue
            try:
                path.unlink()
                logger.info(f"Deleted {path}")
            except OSError as e:
                logger.error(f"Failed to delete {path}: {e}")

    def _relocate(
        self,
        dest_dir: Path,
        full_path: Path,
        processed_path: Path,
        processed_name: str,
        full_name: str,
    ) -> FiledClip:
        dest_dir.mkdir(parents=True, exist_ok=True)
        new_processed = new_full = None
        if processed_path.exists():
            new_processed = unique_path(dest_dir / processed_name)
            shutil.move(str(processed_path), new_processed)
        if full_path.exists():
            new_full = unique_path(dest_dir / full_name)
            shutil.move(str(full_path), new_full)
        logger.info(f"Filed clip into {dest_dir}")
        return FiledClip(dest_dir, new_processed, new_full)
