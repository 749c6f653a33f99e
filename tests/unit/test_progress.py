"""Unit tests for progress stage helpers."""

import pytest

from clipctl.progress import Stage, format_stage_detail


def test_stage_labels():
    assert [stage.label for stage in Stage] == [
        "Detected",
        "Finalising files",
        "Uploading to YouTube",
        "Completed",
    ]


@pytest.mark.parametrize("fraction,expected", [
    (0.0, "  0% uploaded"),
    (0.426, " 43% uploaded"),
    (1.0, "100% uploaded"),
    (1.7, "100% uploaded"),
    (-0.2, "  0% uploaded"),
])
def test_format_stage_detail(fraction, expected):
    assert format_stage_detail(fraction, "uploaded") == expected
