"""
Streaming server for magnet-stream.
Serves torrent files over HTTP with Range support, exposes the engine
switch and the Real-Debrid cloud cache adapter.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel
from pydantic_settings import BaseSettings

from .debrid_client import DebridClient
from .engine_manager import BackendFactory, EngineManager
from .exceptions import AuthInvalidError, EngineNotReadyError, NotFoundError, StreamCoreError
from .logging_config import ActivityLogHandler, LogContext, setup_logging
from .magnet import normalize_hash
from .models import StreamSession
from .persistence import DebridCredentials, PersistenceManager
from .piece_scheduler import MB, PieceBandConfig
from .retry import RateLimiter, RetryConfig
from .streaming import RangeNotSatisfiable, content_type_for, parse_range_header

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8090
    base_url: str = ""  # Public URL prefix for generated stream links

    # Cache and persistence
    cache_path: str = "/tmp/magnet-stream"
    config_path: str = "/config"
    state_file: str = "magnet_stream.db"  # Filename only, joined with config_path
    persist_state: bool = True

    # Engine selection
    engine: str = "swarm"  # swarm, daemon or hybrid
    engine_instances: int = 1

    # Piece prioritization
    critical_mb: int = 20
    extended_mb: int = 50
    tail_pieces: int = 10
    metadata_timeout: float = 90.0
    listen_port: int = 6881

    # Hybrid scoring
    hybrid_peer_weight: float = 1000.0

    # Daemon (external streaming server)
    daemon_command: str = "node server.js"
    daemon_port: int = 6988
    daemon_health_attempts: int = 60
    daemon_health_interval: float = 0.5
    daemon_stop_grace: float = 0.5
    idle_timeout: float = 1800.0
    reap_interval: float = 600.0

    # Real-Debrid
    debrid_token: Optional[str] = None
    debrid_refresh_token: Optional[str] = None
    debrid_client_id: Optional[str] = None
    debrid_client_secret: Optional[str] = None
    rate_limit_capacity: int = 250
    rate_limit_window: float = 60.0
    retry_max_attempts: int = 4
    retry_initial_delay: float = 1.0

    # Logging settings
    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_format: str = "text"  # "text" or "json"
    log_max_size_mb: int = 10
    log_backup_count: int = 5
    activity_log_size: int = 1000

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


# Global instances
settings = Settings()
engine_manager: Optional[EngineManager] = None
debrid_client: Optional[DebridClient] = None
persistence_manager: Optional[PersistenceManager] = None
activity_log_handler: Optional[ActivityLogHandler] = None


def build_factory(s: Settings) -> BackendFactory:
    return BackendFactory(
        cache_path=s.cache_path,
        daemon_command=s.daemon_command,
        daemon_port=s.daemon_port,
        metadata_timeout=s.metadata_timeout,
        band_config=PieceBandConfig(
            critical_bytes=s.critical_mb * MB,
            extended_bytes=s.extended_mb * MB,
            tail_pieces=s.tail_pieces,
        ),
        peer_weight=s.hybrid_peer_weight,
        idle_timeout=s.idle_timeout,
        reap_interval=s.reap_interval,
        health_attempts=s.daemon_health_attempts,
        health_interval=s.daemon_health_interval,
        stop_grace=s.daemon_stop_grace,
        listen_port=s.listen_port,
    )


async def load_debrid_credentials(
    s: Settings, persistence: Optional[PersistenceManager]
) -> Optional[DebridCredentials]:
    """
    Rotated credentials from the store win when OAuth is configured;
    a static token always comes from the environment.
    """
    if s.debrid_refresh_token and persistence:
        saved = await persistence.get_debrid_credentials()
        if saved:
            return saved
    if not s.debrid_token:
        return None
    return DebridCredentials(
        access_token=s.debrid_token,
        refresh_token=s.debrid_refresh_token,
        client_id=s.debrid_client_id,
        client_secret=s.debrid_client_secret,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global engine_manager, debrid_client, persistence_manager, activity_log_handler

    activity_log_handler = setup_logging(
        log_level=settings.log_level,
        log_file=settings.log_file,
        log_format=settings.log_format,
        max_file_size_mb=settings.log_max_size_mb,
        backup_count=settings.log_backup_count,
        activity_log_size=settings.activity_log_size,
    )

    logger.info("Starting magnet-stream server...")

    try:
        os.makedirs(settings.cache_path, exist_ok=True)
        logger.info(f"Cache path: {settings.cache_path}")
    except OSError as e:
        logger.warning(f"Could not create cache directory: {e}")

    if settings.persist_state:
        state_file_path = os.path.join(settings.config_path, settings.state_file)
        try:
            persistence_manager = PersistenceManager(state_file_path)
            await persistence_manager.initialize()
        except Exception as e:
            logger.error(f"Failed to initialize persistence at {state_file_path}: {e}")
            logger.warning("Continuing without persistence")
            persistence_manager = None

    engine_manager = EngineManager(
        build_factory(settings),
        persistence=persistence_manager,
        default_engine=settings.engine,
        default_instances=settings.engine_instances,
        base_url=settings.base_url,
    )
    await engine_manager.initialize()

    debrid_client = DebridClient(
        await load_debrid_credentials(settings, persistence_manager),
        persistence=persistence_manager,
        rate_limiter=RateLimiter(
            capacity=settings.rate_limit_capacity,
            window=settings.rate_limit_window,
        ),
        retry_config=RetryConfig(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay,
        ),
    )
    if debrid_client.configured:
        logger.info("Real-Debrid credentials loaded")

    yield

    if engine_manager:
        await engine_manager.shutdown()
    if debrid_client:
        await debrid_client.close()
    if persistence_manager:
        await persistence_manager.close()
    logger.info("magnet-stream server stopped")


app = FastAPI(
    title="magnet-stream",
    description="Multi-backend torrent streaming with Real-Debrid support",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(StreamCoreError)
async def stream_core_error_handler(request: Request, exc: StreamCoreError):
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}", extra=exc.context())
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc}", extra=exc.context())
    return JSONResponse(
        status_code=exc.http_status,
        content={"kind": exc.kind, "message": exc.message},
    )


def _engine() -> EngineManager:
    if engine_manager is None:
        raise EngineNotReadyError("Engine manager not initialized")
    return engine_manager


def _debrid() -> DebridClient:
    if debrid_client is None or not debrid_client.configured:
        raise AuthInvalidError("Real-Debrid is not configured")
    return debrid_client


# =============================================================================
# Request bodies
# =============================================================================


class EngineRequest(BaseModel):
    engine: str
    instances: int = 1


class MagnetRequest(BaseModel):
    magnet: str


class DebridSelectRequest(BaseModel):
    job_id: str
    file_id: int


class DebridLinkRequest(BaseModel):
    magnet: str
    file_id: Optional[int] = None


class DebridCleanupRequest(BaseModel):
    job_id: Optional[str] = None


# =============================================================================
# Streaming
# =============================================================================


async def _serve_stream(session: StreamSession, stream):
    """
    Relay a backend stream to the client.

    A disconnect closes this iterator and the backend read under it, and
    nothing else: selection and the registry entry stay as they are.
    """
    finished = False
    try:
        async for chunk in stream:
            session.bytes_sent += len(chunk)
            yield chunk
        finished = True
    finally:
        aclose = getattr(stream, "aclose", None)
        if aclose is not None:
            await aclose()
        with LogContext(info_hash=session.info_hash, file_index=session.file_index):
            logger.debug(
                f"Stream {'finished' if finished else 'closed by client'} after "
                f"{session.bytes_sent} bytes ({session.describe_range()})"
            )


@app.get("/stream")
async def stream_file(request: Request, hash: str, file: int):
    """Stream one file of a torrent, honoring a single byte range."""
    manager = _engine()
    info_hash = normalize_hash(hash)

    torrent_file = await manager.get_file(info_hash, file)
    if torrent_file is None:
        raise NotFoundError("File not found", info_hash=info_hash, file_index=file)

    total = torrent_file.length
    try:
        byte_range = parse_range_header(request.headers.get("range"), total)
    except RangeNotSatisfiable:
        return Response(
            status_code=416,
            headers={"Content-Range": f"bytes */{total}", "Accept-Ranges": "bytes"},
        )

    session = StreamSession(info_hash=info_hash, file_index=file, byte_range=byte_range)
    with LogContext(info_hash=info_hash, file_index=file):
        stream = await manager.get_file_stream(info_hash, file, byte_range)
        if stream is None:
            raise NotFoundError("File not found", info_hash=info_hash, file_index=file)
        logger.debug(f"Stream opened ({session.describe_range()})")

    headers = {"Accept-Ranges": "bytes"}
    if byte_range is not None:
        status_code = 206
        headers["Content-Range"] = byte_range.content_range(total)
        headers["Content-Length"] = str(byte_range.length)
    else:
        status_code = 200
        headers["Content-Length"] = str(total)

    return StreamingResponse(
        _serve_stream(session, stream),
        status_code=status_code,
        media_type=content_type_for(torrent_file.name),
        headers=headers,
    )


# =============================================================================
# Engine Endpoints
# =============================================================================


@app.get("/api/engine")
async def get_engine():
    config = await _engine().get_backend_config()
    return JSONResponse(config.to_dict())


@app.post("/api/engine")
async def set_engine(body: EngineRequest):
    config = await _engine().set_backend(body.engine, body.instances)
    return JSONResponse(config.to_dict())


@app.post("/api/engine/start")
async def start_engine():
    manager = _engine()
    if not await manager.start_engine():
        raise EngineNotReadyError(f"Engine {manager.engine.value} failed to start")
    return JSONResponse({"started": True, **manager.get_status().to_dict()})


@app.post("/api/engine/stop")
async def stop_engine():
    manager = _engine()
    await manager.stop_engine()
    return JSONResponse({"stopped": True, **manager.get_status().to_dict()})


@app.get("/api/engine/status")
async def engine_status():
    manager = _engine()
    return JSONResponse({
        **manager.get_status().to_dict(),
        "engine": manager.engine.value,
        "engine_stopped": manager.engine_stopped,
    })


# =============================================================================
# Torrent Endpoints
# =============================================================================


@app.post("/api/torrents")
async def add_torrent(body: MagnetRequest):
    """Add a torrent and list its playable files."""
    return JSONResponse(await _engine().get_torrent_files(body.magnet))


@app.get("/api/torrents/{info_hash}/stats")
async def torrent_stats(info_hash: str):
    manager = _engine()
    stats = await manager.get_stats(info_hash)
    if stats is None:
        raise NotFoundError("Torrent not found", info_hash=info_hash)

    result = stats.to_dict()
    combined = await manager.get_combined_stats(info_hash)
    if combined:
        result["combined"] = combined
    return JSONResponse(result)


@app.delete("/api/torrents/{info_hash}")
async def remove_torrent(info_hash: str):
    await _engine().remove_torrent(info_hash)
    return JSONResponse({"removed": True})


# =============================================================================
# Real-Debrid Endpoints
# =============================================================================


@app.post("/api/debrid/prepare")
async def debrid_prepare(body: MagnetRequest):
    job = await _debrid().prepare(body.magnet)
    return JSONResponse(job.model_dump(mode="json"))


@app.post("/api/debrid/select")
async def debrid_select(body: DebridSelectRequest):
    job = await _debrid().select_file(body.job_id, body.file_id)
    return JSONResponse(job.model_dump(mode="json"))


@app.post("/api/debrid/link")
async def debrid_link(body: DebridLinkRequest):
    url = await _debrid().get_playable_url(body.magnet, body.file_id)
    return JSONResponse({"url": url})


@app.get("/api/debrid/jobs/{job_id}")
async def debrid_job(job_id: str):
    job = await _debrid().get_job(job_id)
    return JSONResponse(job.model_dump(mode="json"))


@app.get("/api/debrid/availability")
async def debrid_availability(hash: str):
    availability = await _debrid().check_availability(hash)
    return JSONResponse(availability.model_dump(mode="json"))


@app.delete("/api/debrid/jobs/{job_id}")
async def debrid_delete_job(job_id: str):
    await _debrid().delete_job(job_id)
    return JSONResponse({"deleted": True})


@app.post("/api/debrid/cleanup")
async def debrid_cleanup(body: DebridCleanupRequest):
    """Delete a job if it still exists. Never fails on a missing job."""
    if not body.job_id:
        return JSONResponse({"deleted": False})
    deleted = await _debrid().cleanup_job(body.job_id)
    return JSONResponse({"deleted": deleted, "job_id": body.job_id})


# =============================================================================
# Health and Logs
# =============================================================================


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    engine = None
    if engine_manager:
        engine = {
            **engine_manager.get_status().to_dict(),
            "engine_stopped": engine_manager.engine_stopped,
        }

    debrid = None
    if debrid_client:
        debrid = {
            "configured": debrid_client.configured,
            "rate_limiter": debrid_client.rate_limiter.get_stats(),
        }

    return JSONResponse({
        "status": "healthy" if engine_manager else "starting",
        "engine": engine,
        "debrid": debrid,
        "persistence_enabled": persistence_manager is not None,
    })


@app.get("/api/logs")
async def get_logs(
    limit: int = 100,
    level: Optional[str] = None,
    info_hash: Optional[str] = None,
    backend: Optional[str] = None,
):
    """Get activity logs for debugging and monitoring."""
    if not activity_log_handler:
        return JSONResponse({"count": 0, "logs": []})

    logs = activity_log_handler.get_logs(
        limit=limit,
        level=level,
        info_hash=info_hash,
        backend=backend,
    )
    return JSONResponse({
        "count": len(logs),
        "logs": logs,
    })


# =============================================================================
# Main entry point
# =============================================================================


def main():
    """Run the server."""
    import uvicorn
    uvicorn.run(
        "magnet_stream.server:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
