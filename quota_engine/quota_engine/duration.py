"""Parsing of human-entered audio lengths (``hh:mm:ss``, ``mm:ss``, ``ss``)."""

from __future__ import annotations


def parse_audio_length_to_ms(value: str | None) -> int:
    """Convert an audio length string to milliseconds.

    Accepts ``"h:mm:ss"``, ``"m:ss"`` or a bare number of seconds.  Minute or
    second components of 60 and above are tolerated (``"90:10"`` is 90
    minutes and 10 seconds).  Anything unparseable yields ``0``.
    """
    if not value:
        return 0
    parts = [p.strip() for p in value.strip().split(":")]
    if len(parts) > 3 or any(not p.isdigit() for p in parts):
        return 0

    numbers = [int(p) for p in parts]
    while len(numbers) < 3:
        numbers.insert(0, 0)
    hours, minutes, seconds = numbers
    return (hours * 3600 + minutes * 60 + seconds) * 1000
