"""
Daemon backend: proxies to a supervised external streaming server.

The daemon (a Stremio-compatible torrent server) owns the swarm and the
on-disk cache; this side only tracks metadata, access times and the
process itself. Torrents idle for longer than `idle_timeout` are reaped.
"""

import asyncio
import logging
import os
import shutil
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp

from .backend import RegistryEntry, TorrentBackend, TorrentRegistry
from .exceptions import (
    AcquisitionTimeoutError,
    InternalError,
    NetworkUnreachableError,
)
from .logging_config import LogContext
from .magnet import is_info_hash, make_magnet_link, parse_info_hash
from .models import ByteRange, Torrent, TorrentFile, TorrentState, TorrentStats
from .scheduler import PeriodicTask
from .supervisor import ProcessState, SupervisedProcess

logger = logging.getLogger(__name__)

STREAM_CHUNK = 64 * 1024


class DaemonBackend(TorrentBackend):
    """Backend that drives an external streaming daemon over HTTP."""

    kind = "daemon"

    def __init__(
        self,
        cache_path: str,
        command: List[str],
        port: int = 6988,
        registry: TorrentRegistry = None,
        metadata_timeout: float = 90.0,
        idle_timeout: float = 30 * 60,
        reap_interval: float = 10 * 60,
        health_attempts: int = 60,
        health_interval: float = 0.5,
        stop_grace: float = 0.5,
        poll_interval: float = 1.0,
        http_session=None,
        supervisor: SupervisedProcess = None,
    ):
        super().__init__(registry)
        self.cache_path = cache_path
        self.port = port
        self.base_url = f"http://127.0.0.1:{port}"
        self.metadata_timeout = metadata_timeout
        self.idle_timeout = idle_timeout
        self.reap_interval = reap_interval
        self.stop_grace = stop_grace
        self.poll_interval = poll_interval
        self._http = http_session
        self._owns_http = http_session is None
        self._start_lock = asyncio.Lock()
        self._reaper: Optional[PeriodicTask] = None

        self.supervisor = supervisor or SupervisedProcess(
            name="stream-daemon",
            command=command,
            health_url=f"{self.base_url}/stats.json",
            env=self._daemon_env(),
            health_attempts=health_attempts,
            health_interval=health_interval,
        )

    @property
    def daemon_cache_dir(self) -> str:
        return os.path.join(self.cache_path, "stremio-cache")

    def _daemon_env(self) -> Dict[str, str]:
        env = dict(os.environ)
        env.update({
            "STREMIO_CACHE": self.cache_path,
            "APP_PATH": self.cache_path,
            "STREMIO_PATH": self.cache_path,
            "ENGINE_PORT": str(self.port),
            "NO_CORS": "1",
        })
        return env

    # -------------------------------------------------------------------------
    # HTTP helpers
    # -------------------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs):
        if self._http is None:
            raise NetworkUnreachableError("Daemon HTTP session not open", backend=self.kind)
        try:
            return await self._http.request(method, f"{self.base_url}{path}", **kwargs)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise NetworkUnreachableError(
                "Daemon unreachable", details=str(e), backend=self.kind
            )

    async def _request_json(self, method: str, path: str, **kwargs) -> Any:
        response = await self._request(method, path, **kwargs)
        try:
            if response.status >= 400:
                raise NetworkUnreachableError(
                    f"Daemon returned {response.status} for {path}", backend=self.kind
                )
            try:
                return await response.json(content_type=None)
            except ValueError as e:
                raise InternalError("Daemon returned invalid JSON", details=str(e), backend=self.kind)
        finally:
            response.release()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start_engine(self, instance_count: int = 1) -> bool:
        async with self._start_lock:
            if self._ready:
                return True

            os.makedirs(self.cache_path, exist_ok=True)
            if self._http is None:
                self._http = aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=None, connect=10)
                )
                self._owns_http = True

            state = await self.supervisor.start()
            if state != ProcessState.READY:
                logger.error(f"Streaming daemon failed to start ({state.value})")
                await self._close_http()
                return False

            # One daemon process serves every instance slot
            self._instance_count = 1
            self._ready = True

            self._reaper = PeriodicTask("daemon-idle-reaper", self.reap_interval, self.reap_idle)
            self._reaper.start()
            logger.info(f"Streaming daemon ready at {self.base_url}")
            return True

    async def stop_engine(self) -> None:
        if self._reaper:
            await self._reaper.cancel()
            self._reaper = None

        for task in list(self._pending.values()):
            task.cancel()

        if self._ready:
            try:
                response = await self._request("GET", "/removeAll")
                response.release()
            except Exception as e:
                logger.debug(f"removeAll failed during shutdown: {e}")

        await self.supervisor.stop(grace=self.stop_grace)
        self._ready = False
        self._instance_count = 0
        self.registry.clear()
        await self._close_http()

        await asyncio.to_thread(shutil.rmtree, self.daemon_cache_dir, True)
        logger.info("Streaming daemon stopped")

    async def _close_http(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.close()
            self._http = None

    # -------------------------------------------------------------------------
    # Torrents
    # -------------------------------------------------------------------------

    async def add_torrent(self, magnet: str) -> Torrent:
        info_hash = parse_info_hash(magnet)
        if is_info_hash(magnet):
            magnet = make_magnet_link(info_hash)

        if not self._ready and not await self.start_engine(1):
            raise NetworkUnreachableError(
                "Streaming daemon is not available", info_hash=info_hash, backend=self.kind
            )

        entry = self.registry.get(info_hash)
        if entry:
            self.registry.touch(info_hash)
            return entry.torrent

        return await self._dedupe_acquire(
            info_hash, lambda: self._acquire(info_hash, magnet)
        )

    async def _acquire(self, info_hash: str, magnet: str) -> Torrent:
        with LogContext(info_hash=info_hash, backend=self.kind):
            try:
                data = await asyncio.wait_for(
                    self._create_and_wait(info_hash, magnet),
                    timeout=self.metadata_timeout,
                )
            except asyncio.TimeoutError:
                raise AcquisitionTimeoutError(
                    f"No metadata after {self.metadata_timeout}s",
                    timeout=self.metadata_timeout,
                    info_hash=info_hash,
                    backend=self.kind,
                )

            torrent = self._build_torrent(info_hash, data)
            self.registry.put(RegistryEntry(
                torrent=torrent,
                save_path=os.path.join(self.daemon_cache_dir, info_hash),
                magnet=magnet,
            ))
            logger.info(f"Daemon added {torrent.name} ({len(torrent.files)} files)")
            return torrent

    async def _create_and_wait(self, info_hash: str, magnet: str) -> Dict:
        data = await self._request_json("POST", f"/{info_hash}/create", json={
            "uri": magnet,
            "peerSearch": {"min": 40, "max": 200, "sources": [f"dht:{info_hash}"]},
        })
        while not (data or {}).get("files"):
            await asyncio.sleep(self.poll_interval)
            data = await self._request_json("GET", f"/{info_hash}/stats.json")
        return data

    def _build_torrent(self, info_hash: str, data: Dict) -> Torrent:
        files = []
        offset = 0
        for i, raw in enumerate(data.get("files") or []):
            length = int(raw.get("length") or raw.get("size") or 0)
            path = raw.get("path") or raw.get("name") or f"File {i}"
            files.append(TorrentFile(
                index=i,
                name=raw.get("name") or os.path.basename(path),
                path=path,
                length=length,
                offset=int(raw.get("offset", offset)),
            ))
            offset += length

        return Torrent(
            info_hash=info_hash,
            name=data.get("name") or "Unknown",
            total_size=sum(f.length for f in files),
            files=files,
            state=TorrentState.READY,
        )

    async def get_file(self, info_hash: str, index: int) -> Optional[TorrentFile]:
        entry = self.registry.get(info_hash)
        if not entry:
            return None
        return entry.torrent.get_file(index)

    async def get_file_stream(
        self,
        info_hash: str,
        index: int,
        byte_range: Optional[ByteRange] = None,
    ) -> Optional[AsyncIterator[bytes]]:
        if not self._ready:
            return None
        entry = self.registry.get(info_hash)
        if not entry:
            return None
        file = entry.torrent.get_file(index)
        if not file:
            return None

        self.registry.touch(info_hash)
        for f in entry.torrent.files:
            f.selected = f.index == index
        entry.selected_file = index

        if file.length == 0:
            return self._empty_stream()

        byte_range = byte_range or ByteRange(0, file.length - 1)
        headers = {"Range": f"bytes={byte_range.start}-{byte_range.end}"}
        response = await self._request(
            "GET", f"/{entry.torrent.info_hash}/{index}", headers=headers
        )
        if response.status not in (200, 206):
            response.release()
            if response.status == 404:
                return None
            raise NetworkUnreachableError(
                f"Daemon returned {response.status} for stream",
                info_hash=entry.torrent.info_hash,
                file_index=index,
                backend=self.kind,
            )

        # A 200 means the daemon ignored the range and sends from byte 0
        skip = byte_range.start if response.status == 200 else 0
        return self._proxy(entry.torrent.info_hash, response, skip, byte_range.length)

    async def _empty_stream(self) -> AsyncIterator[bytes]:
        return
        yield b""

    async def _proxy(
        self, info_hash: str, response, skip: int, remaining: int
    ) -> AsyncIterator[bytes]:
        try:
            async for chunk in response.content.iter_chunked(STREAM_CHUNK):
                if skip:
                    if len(chunk) <= skip:
                        skip -= len(chunk)
                        continue
                    chunk = chunk[skip:]
                    skip = 0
                if len(chunk) > remaining:
                    chunk = chunk[:remaining]
                remaining -= len(chunk)
                # a long playback counts as access, so the reaper leaves it alone
                self.registry.touch(info_hash)
                yield chunk
                if remaining <= 0:
                    break
        finally:
            response.release()

    async def get_stats(self, info_hash: str) -> Optional[TorrentStats]:
        if not self._ready:
            return None
        entry = self.registry.get(info_hash)
        if not entry:
            return None

        try:
            data = await self._request_json("GET", f"/{entry.torrent.info_hash}/stats.json")
        except (NetworkUnreachableError, InternalError) as e:
            logger.debug(f"Stats unavailable for {info_hash}: {e}")
            return None

        self.registry.touch(info_hash)
        data = data or {}
        total = entry.torrent.total_size
        downloaded = int(data.get("downloaded") or 0)
        progress = data.get("streamProgress")
        if progress is None:
            progress = downloaded / total if total else 0.0
        return TorrentStats(
            info_hash=entry.torrent.info_hash,
            name=data.get("name") or entry.torrent.name,
            progress=min(1.0, float(progress)),
            download_speed=int(data.get("downloadSpeed") or 0),
            upload_speed=int(data.get("uploadSpeed") or 0),
            peer_count=int(data.get("peers") or 0),
            downloaded=downloaded,
        )

    async def remove_torrent(self, info_hash: str) -> bool:
        entry = self.registry.remove(info_hash)
        if not entry:
            return False

        with LogContext(info_hash=entry.torrent.info_hash, backend=self.kind):
            if self._ready:
                try:
                    response = await self._request("GET", f"/{entry.torrent.info_hash}/remove")
                    response.release()
                except NetworkUnreachableError as e:
                    logger.warning(f"Daemon remove failed: {e}")

            if entry.save_path:
                await asyncio.to_thread(shutil.rmtree, entry.save_path, True)
            logger.info("Torrent removed")
        return True

    async def reap_idle(self, now: float = None) -> List[str]:
        """Remove torrents not accessed for more than idle_timeout seconds."""
        removed = []
        for info_hash in self.registry.idle_hashes(self.idle_timeout, now=now):
            try:
                if await self.remove_torrent(info_hash):
                    removed.append(info_hash)
                    logger.info(f"Reaped idle torrent {info_hash}")
            except Exception as e:
                logger.warning(f"Failed to reap {info_hash}: {e}")
        return removed
