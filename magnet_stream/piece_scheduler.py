"""
Piece prioritization for streaming playback.

Given a file's position inside the torrent and a seek offset, produces the
bands of pieces the engine should fetch first. Pure functions only; the
swarm backend turns a plan into engine calls.
"""

import math
from dataclasses import dataclass
from typing import List, Optional

MB = 1024 * 1024

# libtorrent download_priority values
DONT_DOWNLOAD = 0
DEFAULT_PRIORITY = 4
TAIL_PRIORITY = 5
EXTENDED_PRIORITY = 6
TOP_PRIORITY = 7


@dataclass
class PieceBandConfig:
    """Sizes of the prioritized bands."""
    critical_bytes: int = 20 * MB
    extended_bytes: int = 50 * MB
    tail_pieces: int = 10
    # Deadline step between consecutive critical pieces, in milliseconds
    deadline_step_ms: int = 50


@dataclass
class PiecePlan:
    """
    Prioritized piece bands for one selected file.

    All ranges are half-open and lie inside [file_start, file_end].
    Bands are pairwise disjoint.
    """
    file_start: int
    file_end: int
    anchor: int
    critical: range
    extended: range
    tail: range

    @property
    def is_empty(self) -> bool:
        return self.file_end < self.file_start

    def file_pieces(self) -> range:
        if self.is_empty:
            return range(0)
        return range(self.file_start, self.file_end + 1)


def piece_for_offset(offset: int, piece_length: int) -> int:
    """Index of the piece containing a byte offset."""
    return offset // piece_length


def file_piece_span(file_offset: int, file_length: int, piece_length: int) -> tuple:
    """
    First and last piece covering a file.

    Returns (0, -1) for a zero-length file so the span is empty.
    """
    if file_length <= 0:
        return 0, -1
    start = file_offset // piece_length
    end = (file_offset + file_length - 1) // piece_length
    return start, end


def compute_piece_plan(
    file_offset: int,
    file_length: int,
    piece_length: int,
    seek_offset: int = 0,
    config: Optional[PieceBandConfig] = None,
) -> PiecePlan:
    """
    Compute the band layout for streaming a file from seek_offset.

    Args:
        file_offset: Byte offset of the file in the torrent's data
        file_length: File length in bytes
        piece_length: Torrent piece length
        seek_offset: Byte offset inside the file where playback starts
        config: Band sizes (defaults to 20MB/50MB/10 pieces)

    Returns:
        PiecePlan with disjoint critical, extended and tail bands
    """
    if piece_length <= 0:
        raise ValueError(f"piece_length must be positive, got {piece_length}")

    config = config or PieceBandConfig()
    file_start, file_end = file_piece_span(file_offset, file_length, piece_length)

    if file_end < file_start:
        empty = range(0)
        return PiecePlan(file_start, file_end, file_start, empty, empty, empty)

    seek_offset = min(max(seek_offset, 0), file_length - 1)
    anchor = piece_for_offset(file_offset + seek_offset, piece_length)

    critical_count = max(1, math.ceil(config.critical_bytes / piece_length))
    extended_count = max(0, math.ceil(config.extended_bytes / piece_length))

    critical_end = min(anchor + critical_count, file_end + 1)
    critical = range(anchor, critical_end)

    extended_end = min(critical_end + extended_count, file_end + 1)
    extended = range(critical_end, extended_end)

    span = file_end - file_start + 1
    tail_count = min(config.tail_pieces, span // 10)
    # Tail never overlaps critical/extended, which run contiguously from anchor
    tail_start = max(file_end + 1 - tail_count, extended_end, file_start)
    if tail_start > file_end or tail_count == 0:
        tail = range(0)
    else:
        tail = range(tail_start, file_end + 1)

    return PiecePlan(
        file_start=file_start,
        file_end=file_end,
        anchor=anchor,
        critical=critical,
        extended=extended,
        tail=tail,
    )


def build_piece_priorities(num_pieces: int, plan: PiecePlan) -> List[int]:
    """
    Full priority vector for a torrent given a plan.

    Pieces outside the selected file are never downloaded; the rest of the
    file falls back to the engine's default rarest-first ordering.
    """
    priorities = [DONT_DOWNLOAD] * num_pieces
    for piece in plan.file_pieces():
        if piece < num_pieces:
            priorities[piece] = DEFAULT_PRIORITY
    for piece in plan.tail:
        if piece < num_pieces:
            priorities[piece] = TAIL_PRIORITY
    for piece in plan.extended:
        if piece < num_pieces:
            priorities[piece] = EXTENDED_PRIORITY
    for piece in plan.critical:
        if piece < num_pieces:
            priorities[piece] = TOP_PRIORITY
    return priorities


def build_file_priorities(num_files: int, selected_index: int) -> List[int]:
    """File priority vector with only one file selected."""
    priorities = [DONT_DOWNLOAD] * num_files
    if 0 <= selected_index < num_files:
        priorities[selected_index] = TOP_PRIORITY
    return priorities


def critical_deadlines(plan: PiecePlan, step_ms: int = 50) -> List[tuple]:
    """(piece, deadline_ms) pairs for the critical band, nearest first."""
    return [(piece, i * step_ms) for i, piece in enumerate(plan.critical)]
