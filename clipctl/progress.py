"""Progress stages shown by the overlay while a clip is finished."""

from enum import Enum


class Stage(Enum):
    DETECTED = "Detected"
    FINALISE = "Finalising files"
    UPLOAD = "Uploading to YouTube"
    DONE = "Completed"

    @property
    def label(self) -> str:
        return self.value


def format_stage_detail(fraction: float, suffix: str) -> str:
    """Render a fraction as a right-aligned percentage, e.g. `` 42% uploaded``."""
    pct = min(max(fraction * 100.0, 0.0), 100.0)
    return f"{round(pct):>3}% {suffix}"
