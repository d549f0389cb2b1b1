"""
Real-Debrid cloud cache adapter.

Every request goes through a shared token bucket (250 requests/minute by
default). A 429 drains extra tokens and is retried with 1s/2s/4s backoff.
Refreshable OAuth credentials get one refresh-and-retry on an auth failure;
static API tokens are surfaced as-is and never cleared.
"""

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import aiohttp
from pydantic import ValidationError

from .debrid_models import (
    CacheAvailability,
    CloudCacheJob,
    InstantFile,
    JobStatus,
    RDAddMagnetResponse,
    RDTokenResponse,
    RDTorrentInfo,
    RDUnrestrictedLink,
)
from .exceptions import (
    AccessDeniedError,
    AcquisitionTimeoutError,
    AuthInvalidError,
    DebridError,
    MalformedResponseError,
    NoSeedersError,
    NotFoundError,
    PremiumRequiredError,
    RateLimitedError,
    ServiceUnreachableError,
    StreamCoreError,
)
from .logging_config import LogContext
from .magnet import make_magnet_link, parse_info_hash
from .persistence import DebridCredentials, PersistenceManager
from .retry import RateLimiter, RetryConfig, RetryHandler

logger = logging.getLogger(__name__)

ROOT_URL = "https://api.real-debrid.com/rest/1.0"
OAUTH_URL = "https://api.real-debrid.com/oauth/v2"
DEVICE_GRANT = "http://oauth.net/grant_type/device/1.0"

PREMIUM_ERRORS = frozenset({"permission_denied", "account_locked", "not_premium"})
AUTH_ERRORS = frozenset({"bad_token", "bad_token_expired"})


class DebridClient:
    """Rate-limited, retrying client for the Real-Debrid REST API."""

    def __init__(
        self,
        credentials: Optional[DebridCredentials],
        persistence: Optional[PersistenceManager] = None,
        rate_limiter: Optional[RateLimiter] = None,
        retry_config: Optional[RetryConfig] = None,
        http_session=None,
        rate_limit_penalty: int = 10,
        poll_interval: float = 5.0,
        cache_timeout: float = 10 * 60,
        base_url: str = ROOT_URL,
        oauth_url: str = OAUTH_URL,
        sleep=None,
    ):
        self.credentials = credentials
        self.persistence = persistence
        self.rate_limiter = rate_limiter or RateLimiter(capacity=250, window=60.0)
        self.retry_handler = RetryHandler(retry_config or RetryConfig(), sleep=sleep)
        self.rate_limit_penalty = rate_limit_penalty
        self.poll_interval = poll_interval
        self.cache_timeout = cache_timeout
        self.base_url = base_url.rstrip("/")
        self.oauth_url = oauth_url.rstrip("/")
        self._sleep = sleep or asyncio.sleep
        self._http = http_session
        self._owns_http = http_session is None
        self._jobs: Dict[str, CloudCacheJob] = {}
        self._hash_locks: Dict[str, asyncio.Lock] = {}
        self._refresh_lock = asyncio.Lock()

    @property
    def configured(self) -> bool:
        return bool(self.credentials and self.credentials.access_token)

    async def close(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.close()
            self._http = None

    def _session(self):
        if self._http is None:
            self._http = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=30, connect=10)
            )
            self._owns_http = True
        return self._http

    def _hash_lock(self, info_hash: str) -> asyncio.Lock:
        lock = self._hash_locks.get(info_hash)
        if lock is None:
            lock = self._hash_locks[info_hash] = asyncio.Lock()
        return lock

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Send an API request.

        Rate limiting and 429 retries happen inside; an auth failure with a
        refreshable credential triggers exactly one refresh and one retry.
        """
        if not self.configured:
            raise AuthInvalidError("No debrid credential configured")

        async def _attempt():
            return await self._request_once(method, path, data=data, params=params)

        async def _on_retry(error: Exception, attempt: int):
            if isinstance(error, RateLimitedError):
                await self.rate_limiter.penalize(self.rate_limit_penalty)

        operation_id = f"{method} {path}"
        try:
            return await self.retry_handler.with_retry(
                _attempt,
                operation_id=operation_id,
                on_retry=_on_retry,
            )
        except AuthInvalidError:
            if not self.credentials.refreshable:
                raise
            logger.info("Debrid token rejected, refreshing once")
            await self.refresh_credentials()
            return await self.retry_handler.with_retry(
                _attempt,
                operation_id=operation_id,
                on_retry=_on_retry,
            )

    async def _request_once(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        await self.rate_limiter.acquire()

        headers = {"Authorization": f"Bearer {self.credentials.access_token}"}
        try:
            response = await self._session().request(
                method, f"{self.base_url}{path}", headers=headers, data=data, params=params
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise ServiceUnreachableError("Debrid service unreachable", details=str(e))

        try:
            if response.status >= 400:
                await self._raise_for_status(response, path)
            if response.status == 204:
                return None
            body = await response.text()
            if not body.strip():
                return None
            try:
                return await response.json(content_type=None)
            except ValueError as e:
                raise MalformedResponseError(
                    f"Invalid JSON from {path}", details=str(e)
                )
        finally:
            response.release()

    async def _raise_for_status(self, response, path: str) -> None:
        status = response.status
        error_code = ""
        try:
            payload = await response.json(content_type=None)
            if isinstance(payload, dict):
                error_code = str(payload.get("error") or "")
        except (ValueError, aiohttp.ContentTypeError):
            payload = None

        if status == 429:
            retry_after = response.headers.get("Retry-After") if response.headers else None
            raise RateLimitedError(
                "Debrid rate limit exceeded",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if status == 401 or (status == 403 and error_code in AUTH_ERRORS):
            raise AuthInvalidError("Debrid credential rejected", details=error_code or None)
        if status == 403:
            if error_code in PREMIUM_ERRORS:
                raise PremiumRequiredError("Premium account required", details=error_code)
            if error_code == "disabled_endpoint":
                raise PremiumRequiredError("Feature disabled for this account", details=error_code)
            raise AccessDeniedError("Access denied by debrid service", details=error_code or None)
        if status == 404:
            raise NotFoundError(f"Debrid resource not found: {path}")
        if status in (502, 503, 504):
            raise ServiceUnreachableError(f"Debrid service returned {status}")
        raise DebridError(f"Debrid request {path} failed with {status}", details=error_code or None)

    def _parse(self, model, payload, path: str):
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            raise MalformedResponseError(f"Unexpected payload from {path}", details=str(e))

    async def refresh_credentials(self) -> DebridCredentials:
        """Exchange the refresh token for a new access token and persist it."""
        async with self._refresh_lock:
            creds = self.credentials
            try:
                response = await self._session().request(
                    "POST",
                    f"{self.oauth_url}/token",
                    data={
                        "client_id": creds.client_id,
                        "client_secret": creds.client_secret,
                        "code": creds.refresh_token,
                        "grant_type": DEVICE_GRANT,
                    },
                )
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                raise ServiceUnreachableError("Debrid OAuth unreachable", details=str(e))

            try:
                if response.status >= 400:
                    raise AuthInvalidError(
                        "Debrid token refresh rejected", details=str(response.status)
                    )
                try:
                    payload = await response.json(content_type=None)
                except ValueError as e:
                    raise MalformedResponseError("Invalid JSON from OAuth", details=str(e))
            finally:
                response.release()

            token = self._parse(RDTokenResponse, payload, "/token")
            self.credentials = DebridCredentials(
                access_token=token.access_token,
                refresh_token=token.refresh_token or creds.refresh_token,
                client_id=creds.client_id,
                client_secret=creds.client_secret,
                expires_at=time.time() + token.expires_in if token.expires_in else None,
            )
            if self.persistence:
                await self.persistence.save_debrid_credentials(self.credentials)
            logger.info("Debrid access token refreshed")
            return self.credentials

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    async def list_jobs(self, limit: int = 100) -> List[CloudCacheJob]:
        payload = await self._request("GET", "/torrents", params={"limit": limit})
        if not isinstance(payload, list):
            raise MalformedResponseError("Expected a list from /torrents")
        return [CloudCacheJob.from_info(self._parse(RDTorrentInfo, t, "/torrents")) for t in payload]

    async def get_job(self, job_id: str) -> CloudCacheJob:
        path = f"/torrents/info/{job_id}"
        payload = await self._request("GET", path)
        job = CloudCacheJob.from_info(self._parse(RDTorrentInfo, payload, path))
        self._jobs[job.job_id] = job
        return job

    async def find_job(self, info_hash: str) -> Optional[CloudCacheJob]:
        info_hash = info_hash.lower()
        for job in await self.list_jobs():
            if job.info_hash == info_hash:
                return job
        return None

    async def _add_magnet(self, magnet: str) -> str:
        payload = await self._request("POST", "/torrents/addMagnet", data={"magnet": magnet})
        return self._parse(RDAddMagnetResponse, payload, "/torrents/addMagnet").id

    async def _select(self, job_id: str, files: str) -> None:
        await self._request("POST", f"/torrents/selectFiles/{job_id}", data={"files": files})

    async def prepare(self, magnet: str) -> CloudCacheJob:
        """
        Make sure a job exists for the magnet's hash and return it.
        An existing job is reused; otherwise the magnet is added with all
        files selected so the service can report cache state.
        """
        info_hash = parse_info_hash(magnet)
        with LogContext(info_hash=info_hash, backend="debrid"):
            async with self._hash_lock(info_hash):
                existing = await self.find_job(info_hash)
                if existing:
                    logger.info(f"Reusing debrid job {existing.job_id}")
                    return await self.get_job(existing.job_id)

                job_id = await self._add_magnet(magnet)
                await self._select(job_id, "all")
                logger.info(f"Created debrid job {job_id}")
                return await self.get_job(job_id)

    async def select_file(self, job_id: str, file_id: int) -> CloudCacheJob:
        """
        Leave exactly one file selected on the job for this hash.

        Same single file already selected: nothing is sent. Nothing selected
        yet: select in place. Anything else: the service can't shrink a
        selection, so the job is deleted and re-added with only this file.
        """
        job = self._jobs.get(job_id) or await self.get_job(job_id)
        if file_id not in {f.id for f in job.files}:
            raise NotFoundError(
                f"File {file_id} not in debrid job", info_hash=job.info_hash, file_index=file_id
            )

        selected = job.selected_ids
        if selected == {file_id}:
            return job

        with LogContext(info_hash=job.info_hash, job_id=job_id, file_index=file_id):
            if not selected:
                await self._select(job_id, str(file_id))
                return await self.get_job(job_id)

            async with self._hash_lock(job.info_hash):
                await self.cleanup_job(job_id)
                new_id = await self._add_magnet(make_magnet_link(job.info_hash))
                await self._select(new_id, str(file_id))
                logger.info(f"Re-created debrid job {job_id} -> {new_id} for file {file_id}")
                return await self.get_job(new_id)

    async def delete_job(self, job_id: str) -> None:
        await self._request("DELETE", f"/torrents/delete/{job_id}")
        self._jobs.pop(job_id, None)

    async def cleanup_job(self, job_id: str) -> bool:
        """
        Best-effort delete. A job that is already gone, or a delete the
        service refuses, is logged and reported as False.
        """
        try:
            await self.delete_job(job_id)
            return True
        except StreamCoreError as e:
            logger.warning(f"Could not delete debrid job {job_id} (may already be gone): {e}")
            self._jobs.pop(job_id, None)
            return False

    async def wait_until_cached(
        self,
        job_id: str,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> CloudCacheJob:
        """Poll a job until the service has the files."""
        timeout = self.cache_timeout if timeout is None else timeout
        poll_interval = self.poll_interval if poll_interval is None else poll_interval
        attempts = max(1, int(timeout // poll_interval) + 1) if poll_interval > 0 else 1

        for attempt in range(attempts):
            job = await self.get_job(job_id)
            if job.status == JobStatus.CACHED:
                return job
            if job.has_no_seeders:
                raise NoSeedersError("No seeders for debrid job", info_hash=job.info_hash)
            if job.status == JobStatus.ERROR:
                raise DebridError(
                    f"Debrid job failed: {job.raw_status}", info_hash=job.info_hash
                )
            if attempt < attempts - 1:
                await self._sleep(poll_interval)

        raise AcquisitionTimeoutError(
            f"Debrid job {job_id} not cached after {timeout}s", timeout=timeout
        )

    async def check_availability(self, identifier: str) -> CacheAvailability:
        """
        Report whether the service already holds a hash.

        A finished job on the account counts first and costs one list call.
        Otherwise the instant availability endpoint is asked; accounts where
        the service disabled it get `instant_disabled` instead of an error.
        """
        info_hash = parse_info_hash(identifier)
        with LogContext(info_hash=info_hash, backend="debrid"):
            job = await self.find_job(info_hash)
            job_id = job.job_id if job else None
            if job and job.status == JobStatus.CACHED:
                return CacheAvailability(
                    info_hash=info_hash,
                    available=True,
                    source="job",
                    job_id=job_id,
                    files=[
                        InstantFile(id=f.id, filename=f.name, filesize=f.length)
                        for f in job.files
                    ],
                )

            path = f"/torrents/instantAvailability/{info_hash}"
            try:
                payload = await self._request("GET", path)
            except PremiumRequiredError as e:
                if e.details != "disabled_endpoint":
                    raise
                logger.info("Instant availability is disabled for this account")
                return CacheAvailability(
                    info_hash=info_hash, job_id=job_id, instant_disabled=True
                )

            files = self._instant_files(payload, info_hash, path)
            return CacheAvailability(
                info_hash=info_hash,
                available=bool(files),
                source="instant" if files else "none",
                job_id=job_id,
                files=files,
            )

    def _instant_files(self, payload, info_hash: str, path: str) -> List[InstantFile]:
        # {"<HASH>": {"rd": [{"<file id>": {"filename": ..., "filesize": ...}}, ...]}}
        # and an empty list for an unknown hash
        if not isinstance(payload, dict):
            return []
        for key, entry in payload.items():
            if key.lower() != info_hash or not isinstance(entry, dict):
                continue
            for variant in entry.get("rd") or []:
                files = [
                    self._parse(InstantFile, {"id": int(file_id), **info}, path)
                    for file_id, info in variant.items()
                ]
                if files:
                    return files
        return []

    async def resolve_link(self, link: str) -> str:
        """Turn a hoster link into a direct download URL."""
        payload = await self._request("POST", "/unrestrict/link", data={"link": link})
        return self._parse(RDUnrestrictedLink, payload, "/unrestrict/link").download

    async def get_playable_url(self, magnet: str, file_id: Optional[int] = None) -> str:
        """Prepare, narrow to one file, wait for the cache and unlock the link."""
        job = await self.prepare(magnet)
        if file_id is None:
            file_id = max(job.files, key=lambda f: f.length).id if job.files else None
        if file_id is not None:
            job = await self.select_file(job.job_id, file_id)
        job = await self.wait_until_cached(job.job_id)

        link = job.link_for(file_id) if file_id is not None else (job.links[0] if job.links else None)
        if not link:
            raise NotFoundError("No link for file on debrid job", info_hash=job.info_hash, file_index=file_id)
        return await self.resolve_link(link)
