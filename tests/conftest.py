"""Shared pytest fixtures for clipctl tests."""

import queue
import time
from pathlib import Path
from typing import List
from unittest.mock import AsyncMock, MagicMock

import pytest

from clipctl.models import ReplaySettings, ReplayStatus
from clipctl.replay_controller import ReplayController
from clipctl.settings_store import SettingsStore


class FakeCaptureSession:
    """
    Stand-in for a CaptureSession backed by a queue.

    Queued actions are returned in order; ``None`` ends the session and an
    exception instance is raised from ``wait_for_action``.
    """

    def __init__(self, actions=()):
        self._actions: "queue.Queue" = queue.Queue()
        for action in actions:
            self._actions.put(action)
        self.statuses: List = []

    def push(self, action):
        self._actions.put(action)

    def close(self):
        self._actions.put(None)

    def wait_for_action(self, abandoned=None):
        deadline = time.monotonic() + 5
        while True:
            if abandoned is not None and abandoned.is_set():
                return None
            try:
                item = self._actions.get(timeout=0.05)
                break
            except queue.Empty:
                if time.monotonic() > deadline:
                    raise
        if isinstance(item, Exception):
            raise item
        return item

    def update_status(self, status):
        self.statuses.append(status)


@pytest.fixture
def replay_settings(tmp_path: Path) -> ReplaySettings:
    return ReplaySettings(
        binary=Path("/usr/bin/gpu-screen-recorder"),
        output_dir=tmp_path / "replays",
    )


@pytest.fixture
def mock_controller(replay_settings: ReplaySettings) -> MagicMock:
    """
    Mock ReplayController for testing without a recorder process.

    Returns:
        MagicMock whose async methods are AsyncMocks and whose status()
        reflects the fixture settings.
    """
    mock = MagicMock(spec=ReplayController)
    mock.settings = replay_settings
    mock.is_running.return_value = False
    mock.ensure_running = AsyncMock()
    mock.stop = AsyncMock()
    mock.apply_settings = AsyncMock()
    mock.save_recent = AsyncMock(return_value=None)
    mock.status.return_value = ReplayStatus(
        running=False,
        buffer_seconds=replay_settings.buffer_seconds,
        bitrate=replay_settings.bitrate,
        fps=replay_settings.fps,
        target=replay_settings.target,
        audio_tracks=list(replay_settings.audio_tracks),
    )
    return mock


@pytest.fixture
def settings_store(tmp_path: Path) -> SettingsStore:
    return SettingsStore(str(tmp_path / "config"))


@pytest.fixture
def make_session():
    """Factory for FakeCaptureSession; every session is closed on teardown."""
    sessions: List[FakeCaptureSession] = []

    def _make(actions=()) -> FakeCaptureSession:
        session = FakeCaptureSession(actions)
        sessions.append(session)
        return session

    yield _make

    # Unblock any worker thread still waiting on a session
    for session in sessions:
        session.close()


@pytest.fixture
def clip_file(tmp_path: Path) -> Path:
    path = tmp_path / "replays" / "Replay_2024-05-01_20-15-00.mp4"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"video")
    return path
