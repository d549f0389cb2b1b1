"""
Hybrid backend: races two child backends on the same torrent.

Both children acquire every torrent concurrently. Reads and stats are
served by whichever child currently scores higher on
download_speed + peer_count * peer_weight.
"""

import asyncio
import logging
import math
from typing import AsyncIterator, Dict, List, Optional, Set, Tuple

from .backend import RegistryEntry, TorrentBackend, TorrentRegistry
from .exceptions import StreamCoreError
from .logging_config import LogContext
from .magnet import parse_info_hash
from .models import BackendStatus, ByteRange, Torrent, TorrentFile, TorrentStats

logger = logging.getLogger(__name__)


def score(stats: Optional[TorrentStats], peer_weight: float) -> float:
    """Throughput score used to pick the faster child."""
    if stats is None:
        return 0.0
    return stats.download_speed + stats.peer_count * peer_weight


def split_instances(total: int) -> Tuple[int, int]:
    """Instance count for (primary, secondary)."""
    total = max(1, total)
    return math.ceil(total / 2), max(1, total // 2)


class HybridBackend(TorrentBackend):
    """Composes a primary (swarm) and secondary (daemon) backend."""

    kind = "hybrid"

    def __init__(
        self,
        primary: TorrentBackend,
        secondary: TorrentBackend,
        registry: TorrentRegistry = None,
        peer_weight: float = 1000.0,
    ):
        super().__init__(registry)
        self.primary = primary
        self.secondary = secondary
        self.peer_weight = peer_weight
        self._background: Set[asyncio.Task] = set()

    @property
    def children(self) -> List[TorrentBackend]:
        return [self.primary, self.secondary]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start_engine(self, instance_count: int = 1) -> bool:
        if self._ready:
            return True

        primary_count, secondary_count = split_instances(instance_count)
        results = await asyncio.gather(
            self.primary.start_engine(primary_count),
            self.secondary.start_engine(secondary_count),
            return_exceptions=True,
        )
        for child, result in zip(self.children, results):
            if isinstance(result, BaseException):
                logger.warning(f"Hybrid child {child.kind} failed to start: {result}")

        self._ready = any(r is True for r in results)
        self._instance_count = primary_count + secondary_count
        if self._ready:
            logger.info(
                f"Hybrid engine started ({self.primary.kind}:{primary_count}, "
                f"{self.secondary.kind}:{secondary_count})"
            )
        return self._ready

    async def stop_engine(self) -> None:
        for task in list(self._background):
            task.cancel()
        self._background.clear()

        results = await asyncio.gather(
            *(child.stop_engine() for child in self.children),
            return_exceptions=True,
        )
        for child, result in zip(self.children, results):
            if isinstance(result, BaseException):
                logger.warning(f"Hybrid child {child.kind} failed to stop: {result}")

        self.registry.clear()
        self._ready = False
        self._instance_count = 0
        logger.info("Hybrid engine stopped")

    def get_status(self) -> BackendStatus:
        statuses = [child.get_status() for child in self.children]
        return BackendStatus(
            kind=self.kind,
            running=self._ready and any(s.running for s in statuses),
            instance_count=sum(s.instance_count for s in statuses),
            active_torrent_count=len(self.registry),
        )

    # -------------------------------------------------------------------------
    # Torrents
    # -------------------------------------------------------------------------

    def _keep_in_background(self, task: asyncio.Task, child: TorrentBackend) -> None:
        def _done(t: asyncio.Task) -> None:
            self._background.discard(t)
            if t.cancelled():
                return
            error = t.exception()
            if error:
                logger.info(f"Hybrid child {child.kind} failed to add torrent: {error}")

        self._background.add(task)
        task.add_done_callback(_done)

    async def add_torrent(self, magnet: str) -> Torrent:
        info_hash = parse_info_hash(magnet)
        if not self._ready:
            await self.start_engine(2)

        entry = self.registry.get(info_hash)
        if entry:
            self.registry.touch(info_hash)
            return entry.torrent

        with LogContext(info_hash=info_hash, backend=self.kind):
            tasks: Dict[asyncio.Task, TorrentBackend] = {
                asyncio.create_task(child.add_torrent(magnet)): child
                for child in self.children
            }
            errors: Dict[str, BaseException] = {}
            pending = set(tasks)

            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                winner = None
                for task in done:
                    if task.exception() is None:
                        winner = winner or task
                    else:
                        errors[tasks[task].kind] = task.exception()

                if winner is not None:
                    for task in pending:
                        self._keep_in_background(task, tasks[task])
                    torrent = winner.result()
                    self.registry.put(RegistryEntry(torrent=torrent, magnet=magnet))
                    logger.info(f"Hybrid add won by {tasks[winner].kind}")
                    return torrent

            logger.error(f"Both hybrid children failed to add torrent: {errors}")
            raise errors.get(self.primary.kind) or next(iter(errors.values()))

    async def get_file(self, info_hash: str, index: int) -> Optional[TorrentFile]:
        for child in self.children:
            file = await child.get_file(info_hash, index)
            if file is not None:
                return file
        return None

    async def _child_stats(self, info_hash: str) -> List[Optional[TorrentStats]]:
        results = await asyncio.gather(
            *(child.get_stats(info_hash) for child in self.children),
            return_exceptions=True,
        )
        return [None if isinstance(r, BaseException) else r for r in results]

    async def choose(self, info_hash: str) -> Tuple[Optional[TorrentBackend], Optional[TorrentStats]]:
        """
        Pick the child with the best score.
        Ties go to the primary; a child without stats is never preferred.
        """
        primary_stats, secondary_stats = await self._child_stats(info_hash)
        primary_score = score(primary_stats, self.peer_weight)
        secondary_score = score(secondary_stats, self.peer_weight)

        if primary_stats is not None and primary_score >= secondary_score:
            chosen = (self.primary, primary_stats)
        elif secondary_stats is not None:
            chosen = (self.secondary, secondary_stats)
        else:
            return None, None

        logger.debug(
            f"Hybrid choice for {info_hash}: {chosen[0].kind} "
            f"({self.primary.kind}={primary_score:.0f}, {self.secondary.kind}={secondary_score:.0f})"
        )
        return chosen

    async def get_file_stream(
        self,
        info_hash: str,
        index: int,
        byte_range: Optional[ByteRange] = None,
    ) -> Optional[AsyncIterator[bytes]]:
        chosen, _ = await self.choose(info_hash)
        order = self.children if chosen in (None, self.primary) else [self.secondary, self.primary]

        self.registry.touch(info_hash)
        for child in order:
            try:
                stream = await child.get_file_stream(info_hash, index, byte_range)
            except StreamCoreError as e:
                logger.warning(f"Hybrid child {child.kind} could not stream: {e}")
                continue
            if stream is not None:
                return stream
        return None

    async def get_stats(self, info_hash: str) -> Optional[TorrentStats]:
        _, stats = await self.choose(info_hash)
        if stats is not None:
            self.registry.touch(info_hash)
        return stats

    async def get_combined_stats(self, info_hash: str) -> Optional[Dict]:
        """Summed speeds and peers of both children, with the per-child split."""
        primary_stats, secondary_stats = await self._child_stats(info_hash)
        present = [s for s in (primary_stats, secondary_stats) if s is not None]
        if not present:
            return None

        def _split(stats):
            if stats is None:
                return None
            return {"speed": stats.download_speed, "peers": stats.peer_count}

        return {
            "info_hash": present[0].info_hash,
            "name": present[0].name,
            "progress": max(s.progress for s in present),
            "download_speed": sum(s.download_speed for s in present),
            "upload_speed": sum(s.upload_speed for s in present),
            "peer_count": sum(s.peer_count for s in present),
            "downloaded": max(s.downloaded for s in present),
            "engines": {
                self.primary.kind: _split(primary_stats),
                self.secondary.kind: _split(secondary_stats),
            },
        }

    async def remove_torrent(self, info_hash: str) -> bool:
        results = await asyncio.gather(
            *(child.remove_torrent(info_hash) for child in self.children),
            return_exceptions=True,
        )
        for child, result in zip(self.children, results):
            if isinstance(result, BaseException):
                logger.warning(f"Hybrid child {child.kind} failed to remove {info_hash}: {result}")

        known = self.registry.remove(info_hash) is not None
        return known or any(r is True for r in results)
