"""
Swarm backend: native peer-to-peer acquisition through libtorrent.

Each torrent gets its own save directory under the cache root. Only the
file being streamed is downloaded; pieces are reprioritized around the
playback position every time a stream is opened.
"""

import asyncio
import logging
import os
import shutil
from typing import AsyncIterator, List, Optional

import aiofiles

from .backend import RegistryEntry, TorrentBackend, TorrentRegistry
from .exceptions import (
    AcquisitionTimeoutError,
    InternalError,
    NotFoundError,
)
from .logging_config import LogContext
from .magnet import is_info_hash, make_magnet_link, parse_info_hash
from .models import ByteRange, Torrent, TorrentFile, TorrentState, TorrentStats
from .piece_scheduler import (
    PieceBandConfig,
    build_file_priorities,
    build_piece_priorities,
    compute_piece_plan,
    critical_deadlines,
    DONT_DOWNLOAD,
    TOP_PRIORITY,
)

logger = logging.getLogger(__name__)

DEFAULT_READ_CHUNK = 256 * 1024


def _load_libtorrent():
    try:
        import libtorrent
    except ImportError:
        logger.error("libtorrent is not installed. Run: pip install libtorrent")
        raise
    return libtorrent


class SwarmBackend(TorrentBackend):
    """Backend driving one or more in-process libtorrent sessions."""

    kind = "swarm"

    def __init__(
        self,
        cache_path: str,
        registry: TorrentRegistry = None,
        metadata_timeout: float = 90.0,
        band_config: PieceBandConfig = None,
        listen_port: int = 6881,
        lt_module=None,
        poll_interval: float = 0.1,
        read_chunk: int = DEFAULT_READ_CHUNK,
    ):
        super().__init__(registry)
        self.cache_path = os.path.join(cache_path, "swarm-cache")
        self.metadata_timeout = metadata_timeout
        self.band_config = band_config or PieceBandConfig()
        self.listen_port = listen_port
        self.poll_interval = poll_interval
        self.read_chunk = read_chunk
        self._lt = lt_module
        self._sessions: List = []
        self._start_lock = asyncio.Lock()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start_engine(self, instance_count: int = 1) -> bool:
        async with self._start_lock:
            if self._ready:
                return True

            if self._lt is None:
                self._lt = _load_libtorrent()

            instance_count = max(1, instance_count)
            os.makedirs(self.cache_path, exist_ok=True)

            for i in range(instance_count):
                port = self.listen_port + i
                self._sessions.append(self._lt.session({
                    "listen_interfaces": f"0.0.0.0:{port},[::]:{port}",
                    "enable_dht": True,
                    "enable_lsd": True,
                    "enable_upnp": False,
                    "enable_natpmp": False,
                }))

            self._instance_count = instance_count
            self._ready = True
            logger.info(f"Swarm engine started with {instance_count} session(s)")
            return True

    async def stop_engine(self) -> None:
        for info_hash in self.registry.hashes():
            entry = self.registry.remove(info_hash)
            if entry and entry.handle is not None:
                try:
                    entry.extra["session"].remove_torrent(entry.handle)
                except Exception as e:
                    logger.warning(f"Failed to release {info_hash} on shutdown: {e}")

        for task in list(self._pending.values()):
            task.cancel()

        self._sessions = []
        self._ready = False
        self._instance_count = 0

        await asyncio.to_thread(shutil.rmtree, self.cache_path, True)
        logger.info("Swarm engine stopped")

    def _pick_session(self):
        """Least-loaded session."""
        loads = {id(s): 0 for s in self._sessions}
        for info_hash in self.registry.hashes():
            entry = self.registry.get(info_hash)
            session = entry.extra.get("session") if entry else None
            if session is not None and id(session) in loads:
                loads[id(session)] += 1
        return min(self._sessions, key=lambda s: loads[id(s)])

    # -------------------------------------------------------------------------
    # Torrents
    # -------------------------------------------------------------------------

    async def add_torrent(self, magnet: str) -> Torrent:
        info_hash = parse_info_hash(magnet)
        if is_info_hash(magnet):
            magnet = make_magnet_link(info_hash)

        if not self._ready:
            await self.start_engine(1)

        entry = self.registry.get(info_hash)
        if entry:
            self.registry.touch(info_hash)
            return entry.torrent

        return await self._dedupe_acquire(
            info_hash, lambda: self._acquire(info_hash, magnet)
        )

    async def _acquire(self, info_hash: str, magnet: str) -> Torrent:
        with LogContext(info_hash=info_hash, backend=self.kind):
            session = self._pick_session()
            save_path = os.path.join(self.cache_path, info_hash)

            params = self._lt.parse_magnet_uri(magnet)
            params.save_path = save_path
            handle = session.add_torrent(params)
            logger.info(f"Fetching metadata for {info_hash}")

            try:
                await asyncio.wait_for(
                    self._wait_for_metadata(handle), timeout=self.metadata_timeout
                )
            except asyncio.TimeoutError:
                session.remove_torrent(handle, self._lt.options_t.delete_files)
                await asyncio.to_thread(shutil.rmtree, save_path, True)
                raise AcquisitionTimeoutError(
                    f"No metadata after {self.metadata_timeout}s",
                    timeout=self.metadata_timeout,
                    info_hash=info_hash,
                    backend=self.kind,
                )

            torrent = self._build_torrent(info_hash, handle)

            # Nothing downloads until a file is streamed
            handle.prioritize_files([DONT_DOWNLOAD] * len(torrent.files))

            self.registry.put(RegistryEntry(
                torrent=torrent,
                handle=handle,
                save_path=save_path,
                magnet=magnet,
                extra={"session": session},
            ))
            logger.info(
                f"Metadata ready: {torrent.name} ({len(torrent.files)} files, "
                f"{torrent.total_size} bytes)"
            )
            return torrent

    async def _wait_for_metadata(self, handle) -> None:
        while not handle.status().has_metadata:
            await asyncio.sleep(self.poll_interval)

    def _build_torrent(self, info_hash: str, handle) -> Torrent:
        info = handle.torrent_file()
        if info is None:
            raise InternalError("Metadata reported but torrent info missing", info_hash=info_hash)

        storage = info.files()
        files = []
        for i in range(storage.num_files()):
            path = storage.file_path(i)
            files.append(TorrentFile(
                index=i,
                name=os.path.basename(path),
                path=path,
                length=storage.file_size(i),
                offset=storage.file_offset(i),
            ))

        return Torrent(
            info_hash=info_hash,
            name=info.name(),
            total_size=info.total_size(),
            files=files,
            state=TorrentState.READY,
            piece_length=info.piece_length(),
            num_pieces=info.num_pieces(),
        )

    async def get_file(self, info_hash: str, index: int) -> Optional[TorrentFile]:
        entry = self.registry.get(info_hash)
        if not entry:
            return None
        return entry.torrent.get_file(index)

    def select_file(self, entry: RegistryEntry, file: TorrentFile, seek_offset: int = 0) -> None:
        """
        Make `file` the only wanted file and band its pieces around seek_offset.
        Rebuilds every priority from scratch, so repeated calls converge.
        """
        torrent = entry.torrent
        handle = entry.handle

        handle.prioritize_files(build_file_priorities(len(torrent.files), file.index))
        for f in torrent.files:
            f.selected = f.index == file.index
            f.priority = TOP_PRIORITY if f.selected else DONT_DOWNLOAD

        handle.clear_piece_deadlines()
        if file.length == 0:
            entry.selected_file = file.index
            return

        plan = compute_piece_plan(
            file_offset=file.offset,
            file_length=file.length,
            piece_length=torrent.piece_length,
            seek_offset=seek_offset,
            config=self.band_config,
        )
        handle.prioritize_pieces(build_piece_priorities(torrent.num_pieces, plan))
        for piece, deadline in critical_deadlines(plan, self.band_config.deadline_step_ms):
            handle.set_piece_deadline(piece, deadline)

        entry.selected_file = file.index
        logger.debug(
            f"Selected file {file.index} of {torrent.info_hash}: anchor={plan.anchor} "
            f"critical={len(plan.critical)} extended={len(plan.extended)} tail={len(plan.tail)}"
        )

    async def get_file_stream(
        self,
        info_hash: str,
        index: int,
        byte_range: Optional[ByteRange] = None,
    ) -> Optional[AsyncIterator[bytes]]:
        entry = self.registry.get(info_hash)
        if not entry:
            return None
        file = entry.torrent.get_file(index)
        if not file:
            return None

        self.registry.touch(info_hash)
        if file.length == 0:
            self.select_file(entry, file, 0)
            return self._empty_stream()

        byte_range = byte_range or ByteRange(0, file.length - 1)
        self.select_file(entry, file, byte_range.start)
        return self._read_range(entry, file, byte_range)

    async def _empty_stream(self) -> AsyncIterator[bytes]:
        return
        yield b""

    async def _wait_for_piece(self, entry: RegistryEntry, piece: int) -> None:
        while not entry.handle.have_piece(piece):
            if self.registry.get(entry.torrent.info_hash) is not entry:
                raise NotFoundError(
                    "Torrent removed while streaming",
                    info_hash=entry.torrent.info_hash,
                    backend=self.kind,
                )
            await asyncio.sleep(self.poll_interval)

    async def _read_range(
        self,
        entry: RegistryEntry,
        file: TorrentFile,
        byte_range: ByteRange,
    ) -> AsyncIterator[bytes]:
        """Yield bytes of `file` in [start, end] as pieces become available."""
        piece_length = entry.torrent.piece_length
        path = os.path.join(entry.save_path, file.path)
        position = byte_range.start
        handle = None

        try:
            while position <= byte_range.end:
                absolute = file.offset + position
                piece = absolute // piece_length
                await self._wait_for_piece(entry, piece)

                piece_end = (piece + 1) * piece_length - file.offset - 1
                chunk_end = min(byte_range.end, piece_end, position + self.read_chunk - 1)

                if handle is None:
                    handle = await aiofiles.open(path, "rb")
                await handle.seek(position)
                data = await handle.read(chunk_end - position + 1)
                if not data:
                    # Piece reported complete but not flushed yet
                    await asyncio.sleep(self.poll_interval)
                    continue

                position += len(data)
                self.registry.touch(entry.torrent.info_hash)
                yield data
        finally:
            if handle is not None:
                await handle.close()

    async def get_stats(self, info_hash: str) -> Optional[TorrentStats]:
        entry = self.registry.get(info_hash)
        if not entry or entry.handle is None:
            return None

        status = entry.handle.status()
        self.registry.touch(info_hash)
        return TorrentStats(
            info_hash=entry.torrent.info_hash,
            name=entry.torrent.name,
            progress=float(status.progress),
            download_speed=int(status.download_rate),
            upload_speed=int(status.upload_rate),
            peer_count=int(status.num_peers),
            downloaded=int(getattr(status, "total_done", 0)),
        )

    async def remove_torrent(self, info_hash: str) -> bool:
        entry = self.registry.remove(info_hash)
        if not entry:
            return False

        with LogContext(info_hash=entry.torrent.info_hash, backend=self.kind):
            try:
                entry.extra["session"].remove_torrent(
                    entry.handle, self._lt.options_t.delete_files
                )
            except Exception as e:
                logger.warning(f"Engine refused to remove torrent: {e}")

            if entry.save_path:
                await asyncio.to_thread(shutil.rmtree, entry.save_path, True)
            logger.info("Torrent removed")
        return True
