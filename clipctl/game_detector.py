"""Detect a running Steam game from process environments."""

import logging
import os
from pathlib import Path
from typing import Iterable, Optional

import psutil

logger = logging.getLogger(__name__)

STEAM_APP_ENV_VARS = ("SteamAppId", "SteamGameId")


def steam_base_dir(home: Optional[Path] = None) -> Path:
    home = home or Path.home()
    legacy = home / ".steam" / "steam"
    if legacy.exists():
        return legacy
    return home / ".local" / "share" / "Steam"


def parse_acf_name_line(line: str) -> Optional[str]:
    """Value of a ``"name"  "Game Name"`` line from an app manifest."""
    parts = line.strip().split('"')
    # ['', 'name', '\t\t', 'Game Name', '']
    if len(parts) >= 4 and parts[0] == "" and parts[1] == "name":
        return parts[3]
    return None


def read_manifest_name(manifest: Path) -> Optional[str]:
    try:
        contents = manifest.read_text(errors="replace")
    except OSError:
        return None
    for line in contents.splitlines():
        name = parse_acf_name_line(line)
        if name is not None:
            return name
    return None


def _app_ids(environ: Optional[dict]) -> Iterable[int]:
    if not environ:
        return
    for key in STEAM_APP_ENV_VARS:
        value = environ.get(key)
        if value and value.isdigit():
            yield int(value)


def detect_steam_game(steam_dir: Optional[Path] = None) -> str:
    """
    Name of a Steam game run by the current user, or "" when none is running.

    Only processes owned by this user are inspected; processes whose
    environment cannot be read are skipped.
    """
    steam_dir = steam_dir or steam_base_dir()
    uid = os.getuid()

    for proc in psutil.process_iter(["pid", "uids", "environ"]):
        info = proc.info
        uids = info.get("uids")
        if uids is None or uids.real != uid:
            continue
        for app_id in _app_ids(info.get("environ")):
            name = read_manifest_name(steam_dir / "steamapps" / f"appmanifest_{app_id}.acf")
            if name:
                return name
    return ""


def detect_running_game() -> str:
    """``detect_steam_game`` for polling: failures are logged and mean no game."""
    try:
        return detect_steam_game()
    except Exception as e:
        logger.error(f"Game detection error: {e}")
        return ""


def detect_game_name() -> str:
    """Default game label for a new clip. ``CLIPS_DEFAULT_GAME`` takes precedence."""
    override = os.environ.get("CLIPS_DEFAULT_GAME")
    if override:
        return override
    game = detect_running_game()
    if game:
        logger.info(f"Detected game: {game}")
    return game
