"""
Backend contract shared by the swarm, daemon and hybrid engines, plus the
per-backend torrent registry.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode

from .exceptions import InvalidIdentifierError
from .magnet import normalize_hash
from .models import BackendStatus, ByteRange, Torrent, TorrentFile, TorrentStats

logger = logging.getLogger(__name__)


def _key(info_hash: str) -> str:
    try:
        return normalize_hash(info_hash)
    except InvalidIdentifierError:
        return (info_hash or "").strip().lower()


@dataclass
class RegistryEntry:
    """A torrent owned by a backend, with its engine handle."""
    torrent: Torrent
    handle: Any = None
    save_path: Optional[str] = None
    magnet: Optional[str] = None
    last_access: float = 0.0
    selected_file: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)


class TorrentRegistry:
    """
    Hash to entry map for one backend instance.
    Hashes are normalized to lowercase hex on every access.
    """

    def __init__(self, clock: Callable[[], float] = None):
        self._clock = clock or time.monotonic
        self._entries: Dict[str, RegistryEntry] = {}

    def now(self) -> float:
        return self._clock()

    def get(self, info_hash: str) -> Optional[RegistryEntry]:
        return self._entries.get(_key(info_hash))

    def put(self, entry: RegistryEntry) -> RegistryEntry:
        entry.last_access = self._clock()
        self._entries[entry.torrent.info_hash] = entry
        return entry

    def remove(self, info_hash: str) -> Optional[RegistryEntry]:
        return self._entries.pop(_key(info_hash), None)

    def touch(self, info_hash: str) -> None:
        entry = self.get(info_hash)
        if entry:
            entry.last_access = self._clock()

    def idle_hashes(self, max_idle: float, now: float = None) -> List[str]:
        """Hashes not accessed for more than max_idle seconds."""
        now = self._clock() if now is None else now
        return [
            h for h, e in self._entries.items()
            if now - e.last_access > max_idle
        ]

    def hashes(self) -> List[str]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, info_hash: str) -> bool:
        return _key(info_hash) in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class TorrentBackend(ABC):
    """
    Common contract for acquisition engines.

    All operations are safe to call on a backend that is not running:
    add_torrent starts it lazily, lookups return None and get_status
    reports running=False.
    """

    kind = "abstract"

    def __init__(self, registry: TorrentRegistry = None):
        self.registry = registry or TorrentRegistry()
        self._ready = False
        self._instance_count = 0
        self._pending: Dict[str, asyncio.Task] = {}

    @property
    def is_ready(self) -> bool:
        return self._ready

    @abstractmethod
    async def start_engine(self, instance_count: int = 1) -> bool:
        """Start the engine. Idempotent."""

    @abstractmethod
    async def stop_engine(self) -> None:
        """Stop the engine and clear its on-disk cache. Best-effort."""

    @abstractmethod
    async def add_torrent(self, magnet: str) -> Torrent:
        """Add a magnet and wait for its metadata."""

    @abstractmethod
    async def get_file(self, info_hash: str, index: int) -> Optional[TorrentFile]:
        """Look up a file of a known torrent."""

    @abstractmethod
    async def get_file_stream(
        self,
        info_hash: str,
        index: int,
        byte_range: Optional[ByteRange] = None,
    ) -> Optional[AsyncIterator[bytes]]:
        """Select a file and open a byte stream over the requested range."""

    @abstractmethod
    async def get_stats(self, info_hash: str) -> Optional[TorrentStats]:
        """Live swarm statistics."""

    @abstractmethod
    async def remove_torrent(self, info_hash: str) -> bool:
        """Drop a torrent and its partial data."""

    def get_status(self) -> BackendStatus:
        return BackendStatus(
            kind=self.kind,
            running=self._ready,
            instance_count=self._instance_count if self._ready else 0,
            active_torrent_count=len(self.registry),
        )

    def get_stream_url(self, info_hash: str, index: int, base_url: str = "") -> str:
        """Playback URL served by the streaming server."""
        query = urlencode({"hash": normalize_hash(info_hash), "file": index})
        return f"{base_url.rstrip('/')}/stream?{query}"

    async def _dedupe_acquire(
        self,
        info_hash: str,
        acquire: Callable[[], Awaitable[Torrent]],
    ) -> Torrent:
        """
        Run one acquisition per hash.
        Concurrent callers for the same hash await the same task.
        """
        task = self._pending.get(info_hash)
        if task is None:
            task = asyncio.create_task(acquire())
            self._pending[info_hash] = task
            task.add_done_callback(lambda _t: self._pending.pop(info_hash, None))
        else:
            logger.debug(f"Joining in-flight acquisition for {info_hash}")
        return await asyncio.shield(task)
