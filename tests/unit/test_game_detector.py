"""Unit tests for Steam game detection."""

import os
from collections import namedtuple
from unittest.mock import MagicMock, patch

import pytest

from clipctl import game_detector
from clipctl.game_detector import (
    detect_game_name,
    detect_running_game,
    detect_steam_game,
    parse_acf_name_line,
    read_manifest_name,
    steam_base_dir,
)

Uids = namedtuple("Uids", "real effective saved")

MANIFEST = '''"AppState"
{
\t"appid"\t\t"1145360"
\t"name"\t\t"Hades"
\t"StateFlags"\t\t"4"
}
'''


def make_proc(environ, uid=None):
    proc = MagicMock()
    uid = os.getuid() if uid is None else uid
    proc.info = {"pid": 100, "uids": Uids(uid, uid, uid), "environ": environ}
    return proc


@pytest.fixture
def steam_dir(tmp_path):
    apps = tmp_path / "steamapps"
    apps.mkdir()
    (apps / "appmanifest_1145360.acf").write_text(MANIFEST)
    return tmp_path


def test_parse_acf_name_line():
    assert parse_acf_name_line('\t"name"\t\t"Hades"') == "Hades"
    assert parse_acf_name_line('"appid"  "1"') is None
    assert parse_acf_name_line("{") is None


def test_read_manifest_name(steam_dir, tmp_path):
    assert read_manifest_name(steam_dir / "steamapps" / "appmanifest_1145360.acf") == "Hades"
    assert read_manifest_name(tmp_path / "missing.acf") is None


def test_steam_base_dir_prefers_legacy_link(tmp_path):
    assert steam_base_dir(tmp_path) == tmp_path / ".local" / "share" / "Steam"
    (tmp_path / ".steam" / "steam").mkdir(parents=True)
    assert steam_base_dir(tmp_path) == tmp_path / ".steam" / "steam"


def test_detects_game_from_environment(steam_dir):
    procs = [
        make_proc({"PATH": "/usr/bin"}),
        make_proc(None),
        make_proc({"SteamAppId": "1145360"}),
    ]
    with patch.object(game_detector.psutil, "process_iter", return_value=procs):
        assert detect_steam_game(steam_dir) == "Hades"


def test_steam_game_id_fallback(steam_dir):
    procs = [make_proc({"SteamAppId": "0", "SteamGameId": "1145360"})]
    with patch.object(game_detector.psutil, "process_iter", return_value=procs):
        assert detect_steam_game(steam_dir) == "Hades"


def test_ignores_other_users_and_unknown_apps(steam_dir):
    procs = [
        make_proc({"SteamAppId": "1145360"}, uid=os.getuid() + 1),
        make_proc({"SteamAppId": "999"}),
        make_proc({"SteamAppId": "not-a-number"}),
    ]
    with patch.object(game_detector.psutil, "process_iter", return_value=procs):
        assert detect_steam_game(steam_dir) == ""


def test_detect_running_game_swallows_errors():
    with patch.object(game_detector, "detect_steam_game", side_effect=PermissionError("denied")):
        assert detect_running_game() == ""


def test_default_game_override(monkeypatch):
    monkeypatch.setenv("CLIPS_DEFAULT_GAME", "Celeste")
    with patch.object(game_detector, "detect_steam_game") as detect:
        assert detect_game_name() == "Celeste"
    detect.assert_not_called()


def test_default_game_detected(monkeypatch):
    monkeypatch.delenv("CLIPS_DEFAULT_GAME", raising=False)
    with patch.object(game_detector, "detect_steam_game", return_value="Hades"):
        assert detect_game_name() == "Hades"
