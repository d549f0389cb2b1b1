"""
HTTP Range handling for file streams.
"""

import os
from typing import Optional

from .models import ByteRange

MIME_TYPES = {
    ".mp4": "video/mp4",
    ".m4v": "video/mp4",
    ".mkv": "video/x-matroska",
    ".webm": "video/webm",
    ".avi": "video/x-msvideo",
    ".mov": "video/quicktime",
    ".wmv": "video/x-ms-wmv",
    ".flv": "video/x-flv",
    ".mpg": "video/mpeg",
    ".mpeg": "video/mpeg",
    ".ts": "video/mp2t",
    ".m2ts": "video/mp2t",
    ".3gp": "video/3gpp",
    ".ogv": "video/ogg",
    ".mp3": "audio/mpeg",
    ".m4a": "audio/mp4",
    ".flac": "audio/flac",
    ".ogg": "audio/ogg",
    ".srt": "application/x-subrip",
    ".vtt": "text/vtt",
    ".ass": "text/x-ssa",
    ".ssa": "text/x-ssa",
}
DEFAULT_MIME_TYPE = "application/octet-stream"


class RangeNotSatisfiable(Exception):
    """Range header can't be served for a file of this length."""

    def __init__(self, total: int):
        super().__init__(f"Range not satisfiable for length {total}")
        self.total = total


def content_type_for(name: str) -> str:
    return MIME_TYPES.get(os.path.splitext(name)[1].lower(), DEFAULT_MIME_TYPE)


def parse_range_header(header: Optional[str], total: int) -> Optional[ByteRange]:
    """
    Parse a single-range `Range` header against a file of `total` bytes.

    Returns None when the whole file should be served (no header, or a
    header in a unit other than bytes). Supports `bytes=X-Y`, `bytes=X-`
    and the suffix form `bytes=-N`; only the first range of a multi-range
    request is honored. The end is clamped to the last byte.

    Raises:
        RangeNotSatisfiable: malformed byte range, start past the end, or
            any range on an empty file
    """
    if not header:
        return None

    unit, _, ranges = header.strip().partition("=")
    if unit.strip().lower() != "bytes" or not ranges:
        return None

    first = ranges.split(",")[0].strip()
    start_text, dash, end_text = first.partition("-")
    if not dash:
        raise RangeNotSatisfiable(total)
    start_text, end_text = start_text.strip(), end_text.strip()

    try:
        if not start_text:
            suffix = int(end_text)
            if suffix <= 0 or total == 0:
                raise RangeNotSatisfiable(total)
            return ByteRange(max(0, total - suffix), total - 1)

        start = int(start_text)
        end = int(end_text) if end_text else total - 1
    except ValueError:
        raise RangeNotSatisfiable(total)

    if start < 0 or start >= total or end < start:
        raise RangeNotSatisfiable(total)
    return ByteRange(start, min(end, total - 1))
