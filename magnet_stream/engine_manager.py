"""
Engine Manager: holds the active backend and switches between strategies.

There is exactly one active backend at a time. Switching builds the new
backend, swaps it in, then stops the old one in the background so callers
never wait on a slow shutdown.
"""

import asyncio
import logging
import shlex
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Optional, Set

from .backend import TorrentBackend, TorrentRegistry
from .daemon_backend import DaemonBackend
from .exceptions import EngineNotReadyError, InvalidConfigurationError, NotFoundError
from .hybrid_backend import HybridBackend
from .magnet import normalize_hash, parse_info_hash
from .models import (
    BackendConfig,
    BackendStatus,
    ByteRange,
    EngineKind,
    Torrent,
    TorrentFile,
    TorrentStats,
    list_subtitle_files,
    list_video_files,
)
from .persistence import PersistenceManager
from .piece_scheduler import PieceBandConfig
from .swarm_backend import SwarmBackend

logger = logging.getLogger(__name__)

MIN_INSTANCES = 1
MAX_INSTANCES = 3


def clamp_instances(instances: int) -> int:
    try:
        instances = int(instances)
    except (TypeError, ValueError):
        instances = MIN_INSTANCES
    return min(max(instances, MIN_INSTANCES), MAX_INSTANCES)


@dataclass
class BackendFactory:
    """Builds backends with a fresh registry each."""
    cache_path: str
    daemon_command: str = "node server.js"
    daemon_port: int = 6988
    metadata_timeout: float = 90.0
    band_config: PieceBandConfig = field(default_factory=PieceBandConfig)
    peer_weight: float = 1000.0
    idle_timeout: float = 30 * 60
    reap_interval: float = 10 * 60
    health_attempts: int = 60
    health_interval: float = 0.5
    stop_grace: float = 0.5
    listen_port: int = 6881

    def swarm(self) -> SwarmBackend:
        return SwarmBackend(
            cache_path=self.cache_path,
            registry=TorrentRegistry(),
            metadata_timeout=self.metadata_timeout,
            band_config=self.band_config,
            listen_port=self.listen_port,
        )

    def daemon(self) -> DaemonBackend:
        return DaemonBackend(
            cache_path=self.cache_path,
            command=shlex.split(self.daemon_command),
            port=self.daemon_port,
            registry=TorrentRegistry(),
            metadata_timeout=self.metadata_timeout,
            idle_timeout=self.idle_timeout,
            reap_interval=self.reap_interval,
            health_attempts=self.health_attempts,
            health_interval=self.health_interval,
            stop_grace=self.stop_grace,
        )

    def build(self, kind: EngineKind) -> TorrentBackend:
        if kind == EngineKind.SWARM:
            return self.swarm()
        if kind == EngineKind.DAEMON:
            return self.daemon()
        if kind == EngineKind.HYBRID:
            return HybridBackend(
                primary=self.swarm(),
                secondary=self.daemon(),
                registry=TorrentRegistry(),
                peer_weight=self.peer_weight,
            )
        raise InvalidConfigurationError(f"Unknown engine kind: {kind}")


class EngineManager:
    """Registry of the active backend plus the persisted engine choice."""

    def __init__(
        self,
        factory,
        persistence: Optional[PersistenceManager] = None,
        default_engine: str = "swarm",
        default_instances: int = 1,
        base_url: str = "",
    ):
        self.factory = factory
        self.persistence = persistence
        self.base_url = base_url
        self.engine = self._parse_kind(default_engine)
        self.instances = clamp_instances(default_instances)
        self.engine_stopped = False
        self._backend: Optional[TorrentBackend] = None
        self._retiring: Set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

    @staticmethod
    def _parse_kind(value) -> EngineKind:
        if isinstance(value, EngineKind):
            return value
        try:
            return EngineKind.parse(value)
        except ValueError:
            raise InvalidConfigurationError(
                f"Invalid engine type: {value}",
                details=f"expected one of {[k.value for k in EngineKind]}",
            )

    async def initialize(self) -> None:
        """Load the persisted choice (or save the default) and build the backend."""
        if self.persistence:
            saved = await self.persistence.get_engine_choice()
            if saved:
                engine, instances = saved
                try:
                    self.engine = self._parse_kind(engine)
                    self.instances = clamp_instances(instances)
                except InvalidConfigurationError:
                    logger.warning(f"Ignoring persisted engine {engine!r}, using {self.engine.value}")
            else:
                await self.persistence.save_engine_choice(self.engine.value, self.instances)

        self._backend = self.factory.build(self.engine)
        logger.info(
            f"Engine manager initialized with engine: {self.engine.value}, "
            f"instances: {self.instances}"
        )

    @property
    def backend(self) -> TorrentBackend:
        if self._backend is None:
            self._backend = self.factory.build(self.engine)
        return self._backend

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    async def set_backend(self, engine, instances: int = 1) -> BackendConfig:
        """Switch strategy. The old backend is stopped in the background."""
        kind = self._parse_kind(engine)
        instances = clamp_instances(instances)

        async with self._lock:
            if kind == self.engine and instances == self.instances and self._backend is not None:
                return await self.get_backend_config()

            old = self._backend
            self._backend = self.factory.build(kind)
            self.engine = kind
            self.instances = instances

            if old is not None:
                task = asyncio.create_task(self._retire(old))
                self._retiring.add(task)
                task.add_done_callback(self._retiring.discard)

            if self.persistence:
                await self.persistence.save_engine_choice(kind.value, instances)

        logger.info(f"Engine set to: {kind.value}, instances: {instances}")
        return await self.get_backend_config()

    async def _retire(self, backend: TorrentBackend) -> None:
        try:
            await backend.stop_engine()
        except Exception as e:
            logger.warning(f"Failed to stop retired {backend.kind} backend: {e}")

    async def get_backend_config(self) -> BackendConfig:
        return BackendConfig(
            engine=self.engine.value,
            instances=self.instances,
            ready=self._backend is not None and self._backend.is_ready,
        )

    def get_status(self) -> BackendStatus:
        return self.backend.get_status()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start_engine(self) -> bool:
        self.engine_stopped = False
        logger.info(f"Starting engine: {self.engine.value}")
        return await self.backend.start_engine(self.instances)

    async def stop_engine(self) -> None:
        """Stop the active backend and block automatic restarts."""
        self.engine_stopped = True
        logger.info(f"Stopping engine: {self.engine.value}")
        await self.backend.stop_engine()

    async def _ensure_started(self) -> None:
        if self.engine_stopped:
            raise EngineNotReadyError(
                "Engine stopped - add a torrent to restart it", backend=self.engine.value
            )
        if not self.backend.is_ready:
            if not await self.backend.start_engine(self.instances):
                raise EngineNotReadyError(
                    f"Engine {self.engine.value} failed to start", backend=self.engine.value
                )

    async def shutdown(self) -> None:
        """Stop everything, including backends still being retired."""
        if self._backend is not None:
            await self._retire(self._backend)
        if self._retiring:
            await asyncio.gather(*self._retiring, return_exceptions=True)

    # -------------------------------------------------------------------------
    # Torrent facade
    # -------------------------------------------------------------------------

    async def add_torrent(self, magnet: str) -> Torrent:
        parse_info_hash(magnet)
        self.engine_stopped = False
        await self._ensure_started()
        return await self.backend.add_torrent(magnet)

    async def get_torrent_files(self, magnet: str) -> Dict:
        """Add a torrent and classify its files for a picker."""
        torrent = await self.add_torrent(magnet)

        def _entry(f: TorrentFile) -> Dict:
            return {
                "index": f.index,
                "name": f.name,
                "path": f.path,
                "size": f.length,
                "stream_url": self.get_stream_url(torrent.info_hash, f.index),
            }

        videos = list_video_files(torrent)
        return {
            "info_hash": torrent.info_hash,
            "name": torrent.name or "Unknown",
            "total_size": torrent.total_size,
            "video_files": [_entry(f) for f in videos],
            "subtitle_files": [_entry(f) for f in list_subtitle_files(torrent)],
        }

    async def get_file(self, info_hash: str, index: int) -> Optional[TorrentFile]:
        return await self.backend.get_file(normalize_hash(info_hash), index)

    async def get_file_stream(
        self,
        info_hash: str,
        index: int,
        byte_range: Optional[ByteRange] = None,
    ) -> Optional[AsyncIterator[bytes]]:
        return await self.backend.get_file_stream(normalize_hash(info_hash), index, byte_range)

    async def get_stats(self, info_hash: str) -> Optional[TorrentStats]:
        return await self.backend.get_stats(normalize_hash(info_hash))

    async def get_combined_stats(self, info_hash: str) -> Optional[Dict]:
        """Per-engine split for hybrid mode, None for single backends."""
        backend = self.backend
        if not isinstance(backend, HybridBackend):
            return None
        return await backend.get_combined_stats(normalize_hash(info_hash))

    async def remove_torrent(self, info_hash: str) -> bool:
        removed = await self.backend.remove_torrent(normalize_hash(info_hash))
        if not removed:
            raise NotFoundError("Torrent not found", info_hash=info_hash, backend=self.engine.value)
        return removed

    def get_stream_url(self, info_hash: str, index: int) -> str:
        return self.backend.get_stream_url(info_hash, index, self.base_url)
