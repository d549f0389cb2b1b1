"""
Pytest configuration and shared fixtures.
"""

import asyncio
import json
import logging
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from magnet_stream.backend import RegistryEntry, TorrentBackend
from magnet_stream.models import (
    BackendConfig,
    BackendStatus,
    Torrent,
    TorrentFile,
    TorrentState,
    TorrentStats,
)
from magnet_stream.retry import RetryConfig


HASH = "08ada5a7a6183aae1e09d831df6748d566095a10"
MAGNET = f"magnet:?xt=urn:btih:{HASH}&dn=Sintel"


# ============================================================================
# Torrent fixtures
# ============================================================================

@pytest.fixture
def info_hash():
    return HASH


@pytest.fixture
def magnet():
    return MAGNET


def make_torrent(info_hash: str = HASH, sizes=None, names=None, piece_length: int = 1024) -> Torrent:
    """Build a READY torrent with consecutive files."""
    sizes = sizes or [4096, 100, 2048]
    names = names or ["Sintel.mkv", "Sintel.en.srt", "Extras.mp4"][: len(sizes)]
    files = []
    offset = 0
    for i, (name, size) in enumerate(zip(names, sizes)):
        files.append(TorrentFile(index=i, name=name, path=f"Sintel/{name}", length=size, offset=offset))
        offset += size
    return Torrent(
        info_hash=info_hash,
        name="Sintel",
        total_size=offset,
        files=files,
        state=TorrentState.READY,
        piece_length=piece_length,
        num_pieces=(offset + piece_length - 1) // piece_length,
    )


@pytest.fixture
def sample_torrent():
    return make_torrent()


def make_stats(info_hash: str = HASH, speed: int = 0, peers: int = 0) -> TorrentStats:
    return TorrentStats(
        info_hash=info_hash,
        name="Sintel",
        progress=0.1,
        download_speed=speed,
        upload_speed=0,
        peer_count=peers,
        downloaded=1000,
    )


class FakeBackend(TorrentBackend):
    """Scriptable backend for manager and hybrid tests."""

    def __init__(self, kind="swarm", stats=None, add_error=None, add_delay=0.0, start_result=True):
        super().__init__()
        self.kind = kind
        self.stats = stats
        self.add_error = add_error
        self.add_delay = add_delay
        self.start_result = start_result
        self.started_with = None
        self.stopped = False
        self.streamed = []
        self.removed = []
        self.torrent = make_torrent()

    async def start_engine(self, instance_count=1):
        self.started_with = instance_count
        if isinstance(self.start_result, Exception):
            raise self.start_result
        self._ready = self.start_result
        self._instance_count = instance_count if self.start_result else 0
        return self.start_result

    async def stop_engine(self):
        self.stopped = True
        self._ready = False

    async def add_torrent(self, magnet):
        await asyncio.sleep(self.add_delay)
        if self.add_error:
            raise self.add_error
        self.registry.put(RegistryEntry(torrent=self.torrent, magnet=magnet))
        return self.torrent

    async def get_file(self, info_hash, index):
        return self.torrent.get_file(index)

    async def get_file_stream(self, info_hash, index, byte_range=None):
        self.streamed.append(index)

        async def _gen():
            yield self.kind.encode()

        return _gen()

    async def get_stats(self, info_hash):
        return self.stats

    async def remove_torrent(self, info_hash):
        self.removed.append(info_hash)
        return self.registry.remove(info_hash) is not None


# ============================================================================
# Fake libtorrent
# ============================================================================

class FakeTorrentInfo:
    """Minimal torrent_info exposing the file storage the backend reads."""

    def __init__(self, torrent: Torrent):
        self._torrent = torrent

    def files(self):
        files = self._torrent.files
        return SimpleNamespace(
            num_files=lambda: len(files),
            file_path=lambda i: files[i].path,
            file_size=lambda i: files[i].length,
            file_offset=lambda i: files[i].offset,
        )

    def name(self):
        return self._torrent.name

    def total_size(self):
        return self._torrent.total_size

    def piece_length(self):
        return self._torrent.piece_length

    def num_pieces(self):
        return self._torrent.num_pieces


class FakeHandle:
    """Records every priority call made by the swarm backend."""

    def __init__(self, torrent: Torrent, has_metadata: bool = True, have_all: bool = True):
        self.torrent = torrent
        self.has_metadata = has_metadata
        self.have_all = have_all
        self.file_priorities = []
        self.piece_priorities = None
        self.deadlines = {}
        self.deadline_clears = 0
        self.download_rate = 0
        self.num_peers = 0

    def status(self):
        return SimpleNamespace(
            has_metadata=self.has_metadata,
            progress=0.25,
            download_rate=self.download_rate,
            upload_rate=10,
            num_peers=self.num_peers,
            total_done=1024,
        )

    def torrent_file(self):
        return FakeTorrentInfo(self.torrent) if self.has_metadata else None

    def prioritize_files(self, priorities):
        self.file_priorities.append(list(priorities))

    def prioritize_pieces(self, priorities):
        self.piece_priorities = list(priorities)

    def set_piece_deadline(self, piece, deadline):
        self.deadlines[piece] = deadline

    def clear_piece_deadlines(self):
        self.deadline_clears += 1
        self.deadlines = {}

    def have_piece(self, piece):
        return self.have_all


class FakeSession:
    def __init__(self, lt, settings):
        self.lt = lt
        self.settings = settings
        self.added = []
        self.removed = []

    def add_torrent(self, params):
        handle = FakeHandle(self.lt.torrent, has_metadata=self.lt.has_metadata)
        handle.save_path = params.save_path
        self.added.append(handle)
        self.lt.handles.append(handle)
        return handle

    def remove_torrent(self, handle, flags=0):
        self.removed.append((handle, flags))


class FakeLibtorrent:
    """Stands in for the libtorrent module inside tests."""

    DELETE_FILES = 1

    def __init__(self, torrent: Torrent, has_metadata: bool = True):
        self.torrent = torrent
        self.has_metadata = has_metadata
        self.sessions = []
        self.handles = []
        self.options_t = SimpleNamespace(delete_files=self.DELETE_FILES)

    def session(self, settings):
        session = FakeSession(self, settings)
        self.sessions.append(session)
        return session

    def parse_magnet_uri(self, uri):
        return SimpleNamespace(uri=uri, save_path=None)


@pytest.fixture
def fake_lt(sample_torrent):
    return FakeLibtorrent(sample_torrent)


# ============================================================================
# Fake HTTP
# ============================================================================

class FakeContent:
    def __init__(self, body: bytes):
        self._body = body

    async def iter_chunked(self, size):
        for i in range(0, len(self._body), size):
            yield self._body[i:i + size]


class FakeResponse:
    """aiohttp-like response with the handful of members the clients use."""

    def __init__(self, status: int = 200, payload=None, body: bytes = None, headers=None):
        self.status = status
        self.headers = headers or {}
        if body is None:
            body = b"" if payload is None else json.dumps(payload).encode()
        self._body = body
        self.content = FakeContent(body)
        self.released = False

    async def json(self, content_type="application/json"):
        return json.loads(self._body.decode())

    async def text(self):
        return self._body.decode()

    def release(self):
        self.released = True


class FakeHTTPSession:
    """
    Routes (method, path) to queued responses and records every call.
    A route value may be a FakeResponse, a list consumed in order, or an
    exception to raise.
    """

    def __init__(self, base_url: str = ""):
        self.base_url = base_url
        self.routes = {}
        self.calls = []
        self.closed = False

    def add(self, method: str, path: str, *responses):
        self.routes.setdefault((method, path), []).extend(responses)

    async def request(self, method, url, **kwargs):
        path = url[len(self.base_url):] if url.startswith(self.base_url) else url
        self.calls.append(SimpleNamespace(method=method, path=path, kwargs=kwargs))
        queue = self.routes.get((method, path))
        if not queue:
            return FakeResponse(404, {"error": "unknown_ressource"})
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response

    def calls_to(self, method: str, prefix: str = ""):
        return [c for c in self.calls if c.method == method and c.path.startswith(prefix)]

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_http():
    return FakeHTTPSession()


# ============================================================================
# Retry / rate limit fixtures
# ============================================================================

@pytest.fixture
def retry_config():
    """Fast retry config for tests."""
    return RetryConfig(
        max_attempts=4,
        initial_delay=0.01,
        max_delay=0.1,
    )


@pytest.fixture
def no_sleep():
    """Sleep replacement that records requested delays."""
    delays = []

    async def _sleep(delay):
        delays.append(delay)

    _sleep.delays = delays
    return _sleep


# ============================================================================
# Persistence Fixtures
# ============================================================================

@pytest.fixture
def temp_db_path(tmp_path):
    """Create a temporary database path."""
    return str(tmp_path / "test.db")


@pytest.fixture
async def persistence_manager(temp_db_path):
    """Create an initialized persistence manager."""
    from magnet_stream.persistence import PersistenceManager

    manager = PersistenceManager(temp_db_path)
    await manager.initialize()
    yield manager
    await manager.close()


# ============================================================================
# Server fixtures
# ============================================================================

@pytest.fixture
def mock_engine_manager(sample_torrent):
    """Mock the engine manager used by the server."""
    with patch("magnet_stream.server.engine_manager") as mock:
        mock.engine = SimpleNamespace(value="swarm")
        mock.engine_stopped = False
        mock.get_file = AsyncMock(side_effect=lambda h, i: sample_torrent.get_file(i))
        mock.get_file_stream = AsyncMock(return_value=None)
        mock.get_stats = AsyncMock(return_value=None)
        mock.get_combined_stats = AsyncMock(return_value=None)
        mock.remove_torrent = AsyncMock(return_value=True)
        mock.get_torrent_files = AsyncMock(return_value={})
        mock.get_status = MagicMock(
            return_value=BackendStatus(kind="swarm", running=True, instance_count=1)
        )
        mock.set_backend = AsyncMock(return_value=BackendConfig(engine="daemon", instances=2))
        mock.get_backend_config = AsyncMock(
            return_value=BackendConfig(engine="swarm", instances=1, ready=True)
        )
        mock.start_engine = AsyncMock(return_value=True)
        mock.stop_engine = AsyncMock()
        yield mock


@pytest.fixture
def client(mock_engine_manager):
    """Create test client with a mocked engine manager."""
    from fastapi.testclient import TestClient
    from magnet_stream.server import app
    return TestClient(app)


@pytest.fixture
def clean_logging():
    """Restore root handlers after tests that call setup_logging."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
