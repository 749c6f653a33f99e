"""Signals understood by the replay recorder.

The recorder flushes its rolling buffer when it receives a signal. Which signal
selects how much of the buffer is written:

- SIGUSR1 writes the whole buffer.
- SIGRTMIN+1 .. SIGRTMIN+6 write the last 10s, 30s, 60s, 5m, 10m, 30m.
- SIGINT stops the recorder.

The recorder hard-codes this table, so both sides must change together.
"""

import logging
import signal
from typing import Optional

logger = logging.getLogger(__name__)

STOP_SIGNAL = signal.SIGINT
FULL_BUFFER_SIGNAL = signal.SIGUSR1

# duration in seconds -> offset above SIGRTMIN
SAVE_DURATION_OFFSETS = {
    10: 1,
    30: 2,
    60: 3,
    300: 4,
    600: 5,
    1800: 6,
}


def realtime_base() -> int:
    """Lowest real-time signal number on this platform."""
    base = getattr(signal, "SIGRTMIN", None)
    if base is None:
        raise OSError("real-time signals are not available on this platform")
    return int(base)


def signal_for_duration(duration_secs: Optional[int]) -> int:
    """Pick the raw signal number that saves ``duration_secs`` of replay.

    None means the whole buffer. Durations outside the table fall back to the
    whole buffer as well.
    """
    if duration_secs is None:
        return int(FULL_BUFFER_SIGNAL)

    offset = SAVE_DURATION_OFFSETS.get(duration_secs)
    if offset is None:
        logger.warning(f"Unsupported save duration {duration_secs}s, using full buffer")
        return int(FULL_BUFFER_SIGNAL)

    return realtime_base() + offset
