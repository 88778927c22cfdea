import pathlib
import time
from typing import Optional, Union


def format_elapsed(start: float, end: Optional[float] = None) -> str:
    """Formats the time between two epoch timestamps as e.g. ``1h2m3.456s``.

    Hours are shown only when non-zero; minutes when non-zero or when hours
    are shown. Seconds always carry millisecond precision.

    Args:
        start: Start timestamp in seconds since the epoch.
        end: End timestamp; defaults to now.

    Returns:
        The human-readable duration.
    """
    if end is None:
        end = time.time()
    elapsed = max(end - start, 0.0)
    whole_seconds = int(elapsed)
    fraction = elapsed - whole_seconds

    minutes, seconds = divmod(whole_seconds, 60)
    hours, minutes = divmod(minutes, 60)

    text = ""
    if hours:
        text += f"{hours}h"
    if minutes or hours:
        text += f"{minutes}m"
    text += f"{seconds + fraction:.3f}s"
    return text


class StageTimer:
    """Measures wall time of a block; ``str(timer)`` gives the elapsed text."""

    def __init__(self) -> None:
        self.start = time.time()
        self.end: Optional[float] = None

    def __enter__(self) -> "StageTimer":
        self.start = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.end = time.time()
        return False

    def __str__(self) -> str:
        return format_elapsed(self.start, self.end)


def is_nonempty_file(path: Union[str, pathlib.Path]) -> bool:
    """True if ``path`` is an existing regular file with at least one byte."""
    path = pathlib.Path(path)
    return path.is_file() and path.stat().st_size > 0

