"""
Core data model for magnet-stream.
Torrents, files, swarm statistics, byte ranges and backend status.
"""

import os
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional, List, Dict, Any


VIDEO_EXTENSIONS = frozenset({
    ".mp4", ".mkv", ".avi", ".mov", ".webm", ".m4v", ".wmv", ".flv", ".ts", ".m2ts",
})
SUBTITLE_EXTENSIONS = frozenset({".srt", ".vtt", ".ass", ".ssa", ".sub"})


class TorrentState(Enum):
    """Lifecycle of a torrent inside a backend."""
    METADATA_PENDING = "metadata_pending"
    READY = "ready"
    ERROR = "error"


class EngineKind(Enum):
    """Acquisition strategies the registry can switch between."""
    SWARM = "swarm"
    DAEMON = "daemon"
    HYBRID = "hybrid"

    @classmethod
    def parse(cls, value: str) -> "EngineKind":
        """Parse an engine name, accepting the legacy aliases."""
        aliases = {
            "webtorrent": cls.SWARM,
            "torrentstream": cls.SWARM,
            "libtorrent": cls.SWARM,
            "stremio": cls.DAEMON,
        }
        value = (value or "").strip().lower()
        if value in aliases:
            return aliases[value]
        return cls(value)


def _extension(name: str) -> str:
    return os.path.splitext(name or "")[1].lower()


def is_video(name: str) -> bool:
    """Check if a filename has a known video extension."""
    return _extension(name) in VIDEO_EXTENSIONS


def is_subtitle(name: str) -> bool:
    """Check if a filename has a known subtitle extension."""
    return _extension(name) in SUBTITLE_EXTENSIONS


@dataclass
class TorrentFile:
    """A file entry in a torrent's file table."""
    index: int
    name: str
    path: str
    length: int
    offset: int = 0
    selected: bool = False
    priority: int = 0

    @property
    def is_video(self) -> bool:
        return is_video(self.name)

    @property
    def is_subtitle(self) -> bool:
        return is_subtitle(self.name)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["is_video"] = self.is_video
        data["is_subtitle"] = self.is_subtitle
        return data


@dataclass
class Torrent:
    """A torrent as known to one backend."""
    info_hash: str
    name: str = ""
    total_size: int = 0
    files: List[TorrentFile] = field(default_factory=list)
    state: TorrentState = TorrentState.METADATA_PENDING
    piece_length: int = 0
    num_pieces: int = 0

    def get_file(self, index: int) -> Optional[TorrentFile]:
        """Look up a file by its engine index."""
        if 0 <= index < len(self.files) and self.files[index].index == index:
            return self.files[index]
        for f in self.files:
            if f.index == index:
                return f
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "info_hash": self.info_hash,
            "name": self.name,
            "total_size": self.total_size,
            "state": self.state.value,
            "files": [f.to_dict() for f in self.files],
        }


@dataclass
class TorrentStats:
    """Live swarm statistics for a torrent."""
    info_hash: str
    name: str = ""
    progress: float = 0.0
    download_speed: int = 0
    upload_speed: int = 0
    peer_count: int = 0
    downloaded: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BackendStatus:
    """Snapshot of a backend's lifecycle."""
    kind: str
    running: bool = False
    instance_count: int = 0
    active_torrent_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BackendConfig:
    """Persisted engine choice plus whether the active backend is up."""
    engine: str
    instances: int = 1
    ready: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte range inside a single file."""
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, total: int) -> str:
        return f"bytes {self.start}-{self.end}/{total}"


@dataclass
class StreamSession:
    """One in-flight stream request. Never persisted."""
    info_hash: str
    file_index: int
    byte_range: Optional[ByteRange] = None
    bytes_sent: int = 0

    def describe_range(self) -> str:
        if self.byte_range is None:
            return "whole file"
        return f"bytes {self.byte_range.start}-{self.byte_range.end}"


def list_video_files(torrent: Torrent) -> List[TorrentFile]:
    """Video files of a torrent, largest first."""
    return sorted(
        (f for f in torrent.files if f.is_video),
        key=lambda f: f.length,
        reverse=True,
    )


def list_subtitle_files(torrent: Torrent) -> List[TorrentFile]:
    """Subtitle files of a torrent, in file table order."""
    return [f for f in torrent.files if f.is_subtitle]
