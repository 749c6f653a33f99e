"""Unit tests for the clip-finishing pipeline."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from clipctl.clip_library import ClipLibrary
from clipctl.clip_pipeline import CHANNEL_OPTIONS, ClipPipeline
from clipctl.models import FailedUploadsList
from clipctl.overlay import ActionChoice, OverlayHandle, PickerResult, TransportError
from clipctl.progress import Stage
from clipctl.uploader import UploadError


@pytest.fixture
def handle() -> MagicMock:
    return MagicMock(spec=OverlayHandle)


@pytest.fixture
def failed_uploads() -> FailedUploadsList:
    return FailedUploadsList()


@pytest.fixture
def make_pipeline(tmp_path, handle, settings_store, failed_uploads):
    def _make(uploader=None) -> ClipPipeline:
        return ClipPipeline(
            handle=handle,
            library=ClipLibrary(tmp_path / "processed"),
            store=settings_store,
            failed_uploads=failed_uploads,
            uploader=uploader,
            detect_game=lambda: "Hades",
        )
    return _make


def pick(action: ActionChoice, title="Big: Play?", game="Hades") -> PickerResult:
    return PickerResult(title=title, game=game, action=action, channels=["voice"])


@pytest.mark.asyncio
async def test_picker_defaults(make_pipeline, handle, clip_file):
    handle.show_picker.return_value = None

    await make_pipeline().process(clip_file)

    handle.show_picker.assert_called_once_with(clip_file, clip_file.stem, "Hades", CHANNEL_OPTIONS)


@pytest.mark.asyncio
async def test_cancel_deletes_source(make_pipeline, handle, clip_file):
    handle.show_picker.return_value = None

    assert await make_pipeline().process(clip_file) is None

    assert not clip_file.exists()
    handle.update.assert_called_with(Stage.DONE, 1.0, "Cancelled")


@pytest.mark.asyncio
async def test_discard_deletes_source(make_pipeline, handle, clip_file):
    handle.show_picker.return_value = pick(ActionChoice.DISCARD)

    assert await make_pipeline().process(clip_file) is None

    assert not clip_file.exists()
    handle.update.assert_called_with(Stage.DONE, 1.0, "Discarded")


@pytest.mark.asyncio
async def test_move_files_clip_locally(make_pipeline, handle, clip_file, tmp_path):
    handle.show_picker.return_value = pick(ActionChoice.MOVE)

    filed = await make_pipeline().process(clip_file)

    assert filed.directory == tmp_path / "processed" / "Big Play [Hades]"
    assert (filed.directory / "Big Play [Hades].mp4").exists()
    assert (filed.directory / "Big Play_raw.mp4").exists()
    assert not clip_file.exists()


@pytest.mark.asyncio
async def test_upload_success(make_pipeline, handle, clip_file, tmp_path, failed_uploads):
    handle.show_picker.return_value = pick(ActionChoice.UPLOAD)
    uploader = MagicMock()
    uploader.upload = AsyncMock(return_value="vid1")

    filed = await make_pipeline(uploader).process(clip_file)

    path, title, game = uploader.upload.await_args.args
    assert path.name == "Big Play.mp4"
    assert (title, game) == ("Big Play [Hades]", "Hades")
    assert filed.directory == tmp_path / "processed" / "Big Play [Hades] [vid1]"
    assert filed.processed_path.name == "Big Play [Hades] [vid1].mp4"
    assert len(failed_uploads) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("result", [
    {"return_value": None},
    {"side_effect": UploadError("youtubeuploader failed: 401")},
])
async def test_upload_failure_is_recorded(make_pipeline, handle, clip_file, settings_store, failed_uploads, result):
    handle.show_picker.return_value = pick(ActionChoice.UPLOAD, game="")
    uploader = MagicMock()
    uploader.upload = AsyncMock(**result)

    filed = await make_pipeline(uploader).process(clip_file)

    assert filed.directory.name == "Big Play"
    [record] = failed_uploads.uploads
    assert record.title == "Big Play"
    assert record.game == ""
    assert record.processed_path == filed.processed_path
    assert record.full_path == filed.full_path
    stored = json.loads(settings_store.failed_uploads_path.read_text())
    assert stored[0]["id"] == record.id
    handle.update.assert_called_with(Stage.DONE, 1.0, "Upload failed - saved locally")


@pytest.mark.asyncio
async def test_upload_without_uploader_is_recorded(make_pipeline, handle, clip_file, failed_uploads):
    handle.show_picker.return_value = pick(ActionChoice.UPLOAD)

    await make_pipeline().process(clip_file)

    assert len(failed_uploads) == 1


@pytest.mark.asyncio
async def test_overlay_gone_propagates(make_pipeline, handle, clip_file):
    handle.show_picker.side_effect = TransportError("overlay closed while waiting for picker response")

    with pytest.raises(TransportError):
        await make_pipeline().process(clip_file)

    # The source is left alone for a later attempt
    assert clip_file.exists()
