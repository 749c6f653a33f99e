"""Unit tests for clipctl data models."""

from datetime import datetime
from pathlib import Path

import pytest

from clipctl.models import (
    FailedUpload,
    FailedUploadsList,
    PersistedSettings,
    ReplayMode,
    ReplaySettings,
    ReplayStorage,
)


def make_settings(**overrides) -> ReplaySettings:
    values = dict(binary=Path("/bin/recorder"), output_dir=Path("/tmp/replays"))
    values.update(overrides)
    return ReplaySettings(**values)


class TestReplaySettings:
    """Tests for ReplaySettings normalization."""

    def test_normalize_zero_values_to_defaults(self):
        settings = make_settings(buffer_seconds=0, bitrate=0, fps=0, audio_tracks=[])

        settings.normalize()

        assert settings.buffer_seconds == 60
        assert settings.bitrate == 60000
        assert settings.fps == 60
        assert settings.audio_tracks == ["default_input"]

    def test_normalize_negative_values(self):
        settings = make_settings(buffer_seconds=-5, bitrate=-1, fps=-30).normalize()
        assert (settings.buffer_seconds, settings.bitrate, settings.fps) == (60, 60000, 60)

    def test_normalize_drops_blank_tracks(self):
        settings = make_settings(audio_tracks=["  ", ""]).normalize()
        assert settings.audio_tracks == ["default_input"]

        settings = make_settings(audio_tracks=["app:discord", " "]).normalize()
        assert settings.audio_tracks == ["app:discord"]

    def test_normalize_keeps_valid_values(self):
        settings = make_settings(buffer_seconds=120, bitrate=20000, fps=30, audio_tracks=["a", "b"])
        settings.normalize()
        assert (settings.buffer_seconds, settings.bitrate, settings.fps) == (120, 20000, 30)
        assert settings.audio_tracks == ["a", "b"]

    def test_copy_is_independent(self):
        original = make_settings(audio_tracks=["a"])
        clone = original.copy()
        clone.audio_tracks.append("b")
        clone.fps = 144
        assert original.audio_tracks == ["a"]
        assert original.fps == 60


class TestEnums:
    """Tests for enum parsing."""

    @pytest.mark.parametrize("value", ["auto", "AutoWithGame", "auto_with_game"])
    def test_auto_mode_aliases(self, value):
        assert ReplayMode.parse(value) is ReplayMode.AUTO_WITH_GAME

    @pytest.mark.parametrize("value", ["manual", "Manual", "", None, "bogus"])
    def test_anything_else_is_manual(self, value):
        assert ReplayMode.parse(value) is ReplayMode.MANUAL

    def test_storage_parse(self):
        assert ReplayStorage.parse("RAM") is ReplayStorage.RAM
        assert ReplayStorage.parse(" disk ") is ReplayStorage.DISK
        with pytest.raises(ValueError, match="unsupported replay storage"):
            ReplayStorage.parse("tape")


class TestPersistedSettings:
    """Tests for PersistedSettings."""

    def test_to_dict_roundtrip(self):
        original = PersistedSettings(
            buffer_seconds=600,
            bitrate=45000,
            fps=120,
            target="DP-1",
            audio_tracks=["default_input", "app:discord"],
            replay_mode=ReplayMode.AUTO_WITH_GAME,
            replay_enabled=True,
        )

        restored = PersistedSettings.from_dict(original.to_dict())

        assert restored == original

    def test_wire_values(self):
        data = PersistedSettings(
            buffer_seconds=300, bitrate=60000, fps=60, target="portal", audio_tracks=["x"],
        ).to_dict()
        assert data["replay_mode"] == "manual"
        assert data["replay_enabled"] is False

    def test_from_dict_accepts_legacy_mode_and_missing_flags(self):
        restored = PersistedSettings.from_dict({
            "buffer_seconds": 300,
            "bitrate": 60000,
            "fps": 60,
            "target": "portal",
            "audio_tracks": ["default_input"],
            "replay_mode": "AutoWithGame",
        })
        assert restored.replay_mode is ReplayMode.AUTO_WITH_GAME
        assert restored.replay_enabled is False

    def test_from_replay_settings_and_apply(self):
        source = make_settings(target="HDMI-A-1", buffer_seconds=30, audio_tracks=["a"])
        persisted = PersistedSettings.from_replay_settings(source, ReplayMode.MANUAL, True)

        target = make_settings()
        persisted.apply_to(target)

        assert target.target == "HDMI-A-1"
        assert target.buffer_seconds == 30
        assert target.audio_tracks == ["a"]
        # Binary and output directory come from the command line only
        assert target.binary == Path("/bin/recorder")


class TestFailedUploads:
    """Tests for FailedUpload and FailedUploadsList."""

    def test_create_derives_id_from_time_and_title(self):
        now = datetime(2024, 5, 1, 20, 15, 0)
        upload = FailedUpload.create(
            title="A very long clip title that keeps going",
            game="Hades",
            processed_path=Path("/clips/a.mp4"),
            full_path=Path("/clips/a_raw.mp4"),
            now=now,
        )
        ts = int(now.timestamp())
        assert upload.timestamp == ts
        assert upload.id == f"{ts}-A very long clip tit"

    def test_display_name(self):
        upload = FailedUpload("1-x", "Clutch", "Hades", Path("a"), Path("b"), 1)
        assert upload.display_name == "Clutch [Hades]"
        upload.game = ""
        assert upload.display_name == "Clutch"

    def test_list_roundtrip(self):
        uploads = FailedUploadsList()
        uploads.add(FailedUpload("1-a", "a", "", Path("/p/a.mp4"), Path("/p/a_raw.mp4"), 1))
        uploads.add(FailedUpload("2-b", "b", "g", Path("/p/b.mp4"), Path("/p/b_raw.mp4"), 2))

        restored = FailedUploadsList.from_list(uploads.to_list())

        assert [u.id for u in restored.uploads] == ["1-a", "2-b"]
        assert restored.get("2-b").processed_path == Path("/p/b.mp4")

    def test_add_with_existing_id_replaces(self):
        uploads = FailedUploadsList()
        uploads.add(FailedUpload("1-a", "old", "", Path("x"), Path("y"), 1))
        uploads.add(FailedUpload("1-a", "new", "", Path("x"), Path("y"), 1))
        assert len(uploads) == 1
        assert uploads.get("1-a").title == "new"

    def test_remove(self):
        uploads = FailedUploadsList()
        uploads.add(FailedUpload("1-a", "a", "", Path("x"), Path("y"), 1))
        assert uploads.remove("missing") is None
        assert uploads.remove("1-a").title == "a"
        assert len(uploads) == 0
