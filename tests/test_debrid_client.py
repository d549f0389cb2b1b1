"""
Tests for the Real-Debrid adapter (magnet_stream/debrid_client.py).
"""

import aiohttp
import pytest

from conftest import HASH, MAGNET, FakeHTTPSession, FakeResponse
from magnet_stream.debrid_client import DebridClient
from magnet_stream.debrid_models import JobStatus
from magnet_stream.exceptions import (
    AccessDeniedError,
    AcquisitionTimeoutError,
    AuthInvalidError,
    DebridError,
    InvalidIdentifierError,
    MalformedResponseError,
    NoSeedersError,
    NotFoundError,
    PremiumRequiredError,
    RateLimitedError,
    ServiceUnreachableError,
)
from magnet_stream.persistence import DebridCredentials
from magnet_stream.retry import RateLimiter

API = "/rest"
LINK_1 = "https://real-debrid.com/d/FILE1"
LINK_2 = "https://real-debrid.com/d/FILE2"


def job_info(job_id="JOB1", status="downloaded", selected=(1, 2), links=None,
             progress=100, seeders=None):
    files = [
        {"id": 1, "path": "/Sintel/Sintel.mkv", "bytes": 4096, "selected": int(1 in selected)},
        {"id": 2, "path": "/Sintel/Sintel.en.srt", "bytes": 100, "selected": int(2 in selected)},
    ]
    if links is None:
        links = [LINK_1, LINK_2][: len(selected)]
    payload = {
        "id": job_id,
        "hash": HASH.upper(),
        "status": status,
        "filename": "Sintel",
        "bytes": 4196,
        "progress": progress,
        "links": links,
        "files": files,
    }
    if seeders is not None:
        payload["seeders"] = seeders
    return payload


@pytest.fixture
def http():
    return FakeHTTPSession("https://api.test")


def make_client(http, no_sleep, credentials=None, persistence=None, retry_config=None):
    return DebridClient(
        credentials or DebridCredentials(access_token="static-token"),
        persistence=persistence,
        rate_limiter=RateLimiter(capacity=250, window=60.0),
        retry_config=retry_config,
        http_session=http,
        base_url="https://api.test/rest",
        oauth_url="https://api.test/oauth",
        poll_interval=5.0,
        cache_timeout=10.0,
        sleep=no_sleep,
    )


@pytest.fixture
def client(http, no_sleep, retry_config):
    return make_client(http, no_sleep, retry_config=retry_config)


class TestTransport:
    """Tests for request plumbing and error mapping."""

    async def test_bearer_token_sent(self, client, http):
        http.add("GET", f"{API}/torrents/info/JOB1", FakeResponse(200, job_info()))

        await client.get_job("JOB1")

        call = http.calls[0]
        assert call.kwargs["headers"] == {"Authorization": "Bearer static-token"}

    async def test_not_configured(self, http, no_sleep):
        client = DebridClient(None, http_session=http, sleep=no_sleep)
        assert client.configured is False
        with pytest.raises(AuthInvalidError):
            await client.list_jobs()
        assert http.calls == []

    async def test_rate_limited_then_success(self, client, http, no_sleep):
        http.add(
            "GET", f"{API}/torrents/info/JOB1",
            FakeResponse(429, {"error": "too_many_requests"}),
            FakeResponse(200, job_info()),
        )

        job = await client.get_job("JOB1")

        assert job.job_id == "JOB1"
        assert no_sleep.delays == [0.01]
        stats = client.rate_limiter.get_stats()
        assert stats["penalties"] == 1
        assert stats["total_requests"] == 2

    async def test_rate_limit_exhausts_retries(self, client, http, no_sleep):
        http.add("GET", f"{API}/torrents", FakeResponse(429, {}))

        with pytest.raises(RateLimitedError):
            await client.list_jobs()

        assert len(http.calls) == 4
        assert len(no_sleep.delays) == 3

    async def test_default_backoff_is_one_two_four(self, http, no_sleep):
        client = make_client(http, no_sleep)
        http.add("GET", f"{API}/torrents", FakeResponse(429, {}))

        with pytest.raises(RateLimitedError):
            await client.list_jobs()
        assert no_sleep.delays == [1.0, 2.0, 4.0]

    @pytest.mark.parametrize("status,error,expected", [
        (401, "bad_token", AuthInvalidError),
        (403, "bad_token_expired", AuthInvalidError),
        (403, "permission_denied", PremiumRequiredError),
        (403, "not_premium", PremiumRequiredError),
        (403, "disabled_endpoint", PremiumRequiredError),
        (403, "ip_not_allowed", AccessDeniedError),
        (404, "unknown_ressource", NotFoundError),
        (503, "service_unavailable", ServiceUnreachableError),
        (500, "internal_error", DebridError),
    ])
    async def test_error_mapping(self, client, http, status, error, expected):
        http.add("GET", f"{API}/torrents", FakeResponse(status, {"error": error}))

        with pytest.raises(expected):
            await client.list_jobs()
        # only rate limits are retried
        assert len(http.calls) == 1

    async def test_access_denied_is_premium_subtype(self):
        assert issubclass(AccessDeniedError, PremiumRequiredError)

    async def test_malformed_json(self, client, http):
        http.add("GET", f"{API}/torrents", FakeResponse(200, body=b"<html>oops</html>"))

        with pytest.raises(MalformedResponseError):
            await client.list_jobs()

    async def test_unexpected_shape(self, client, http):
        http.add("GET", f"{API}/torrents/info/JOB1", FakeResponse(200, {"id": "JOB1"}))

        with pytest.raises(MalformedResponseError):
            await client.get_job("JOB1")

    async def test_transport_error(self, client, http):
        http.add("GET", f"{API}/torrents", aiohttp.ClientConnectionError("reset"))

        with pytest.raises(ServiceUnreachableError):
            await client.list_jobs()

    async def test_response_released(self, client, http):
        response = FakeResponse(200, [])
        http.add("GET", f"{API}/torrents", response)

        assert await client.list_jobs() == []
        assert response.released


class TestCredentials:
    """Tests for refresh behaviour."""

    @pytest.fixture
    def refreshable(self):
        return DebridCredentials(
            access_token="old", refresh_token="refresh", client_id="cid", client_secret="secret"
        )

    async def test_refresh_once_and_retry(self, http, no_sleep, refreshable, persistence_manager):
        client = make_client(http, no_sleep, credentials=refreshable, persistence=persistence_manager)
        http.add(
            "GET", f"{API}/torrents/info/JOB1",
            FakeResponse(401, {"error": "bad_token"}),
            FakeResponse(200, job_info()),
        )
        http.add("POST", "/oauth/token", FakeResponse(200, {
            "access_token": "new", "refresh_token": "refresh2", "expires_in": 3600,
        }))

        job = await client.get_job("JOB1")

        assert job.job_id == "JOB1"
        token_call = http.calls_to("POST", "/oauth/token")[0]
        assert token_call.kwargs["data"]["code"] == "refresh"
        assert token_call.kwargs["data"]["grant_type"] == "http://oauth.net/grant_type/device/1.0"
        assert http.calls[-1].kwargs["headers"] == {"Authorization": "Bearer new"}

        saved = await persistence_manager.get_debrid_credentials()
        assert saved.access_token == "new"
        assert saved.refresh_token == "refresh2"
        assert saved.expires_at is not None

    async def test_refresh_happens_only_once(self, http, no_sleep, refreshable):
        client = make_client(http, no_sleep, credentials=refreshable)
        http.add("GET", f"{API}/torrents", FakeResponse(401, {"error": "bad_token"}))
        http.add("POST", "/oauth/token", FakeResponse(200, {"access_token": "new"}))

        with pytest.raises(AuthInvalidError):
            await client.list_jobs()

        assert len(http.calls_to("POST", "/oauth/token")) == 1
        assert len(http.calls_to("GET", f"{API}/torrents")) == 2

    async def test_refresh_rejected(self, http, no_sleep, refreshable):
        client = make_client(http, no_sleep, credentials=refreshable)
        http.add("GET", f"{API}/torrents", FakeResponse(401, {"error": "bad_token"}))
        http.add("POST", "/oauth/token", FakeResponse(400, {"error": "invalid_grant"}))

        with pytest.raises(AuthInvalidError):
            await client.list_jobs()

    async def test_static_token_surfaces_error(self, client, http):
        http.add("GET", f"{API}/torrents", FakeResponse(401, {"error": "bad_token"}))

        with pytest.raises(AuthInvalidError):
            await client.list_jobs()

        assert http.calls_to("POST") == []
        assert client.credentials.access_token == "static-token"


class TestJobs:
    """Tests for job preparation and file selection."""

    async def test_prepare_creates_job(self, client, http):
        http.add("GET", f"{API}/torrents", FakeResponse(200, []))
        http.add("POST", f"{API}/torrents/addMagnet", FakeResponse(201, {"id": "JOB1"}))
        http.add("POST", f"{API}/torrents/selectFiles/JOB1", FakeResponse(204))
        http.add("GET", f"{API}/torrents/info/JOB1", FakeResponse(200, job_info()))

        job = await client.prepare(MAGNET)

        assert job.job_id == "JOB1"
        assert job.info_hash == HASH
        assert job.status == JobStatus.CACHED
        add = http.calls_to("POST", f"{API}/torrents/addMagnet")[0]
        assert add.kwargs["data"] == {"magnet": MAGNET}
        select = http.calls_to("POST", f"{API}/torrents/selectFiles/JOB1")[0]
        assert select.kwargs["data"] == {"files": "all"}

    async def test_prepare_reuses_existing_job(self, client, http):
        http.add("GET", f"{API}/torrents", FakeResponse(200, [job_info()]))
        http.add("GET", f"{API}/torrents/info/JOB1", FakeResponse(200, job_info()))

        job = await client.prepare(MAGNET)

        assert job.job_id == "JOB1"
        assert http.calls_to("POST") == []

    async def test_switching_file_recreates_job(self, client, http):
        http.add("GET", f"{API}/torrents/info/JOB1", FakeResponse(200, job_info()))
        http.add("DELETE", f"{API}/torrents/delete/JOB1", FakeResponse(204))
        http.add("POST", f"{API}/torrents/addMagnet", FakeResponse(201, {"id": "JOB2"}))
        http.add("POST", f"{API}/torrents/selectFiles/JOB2", FakeResponse(204))
        http.add(
            "GET", f"{API}/torrents/info/JOB2",
            FakeResponse(200, job_info("JOB2", selected=(2,))),
        )
        await client.get_job("JOB1")
        http.calls.clear()

        job = await client.select_file("JOB1", 2)

        assert job.job_id == "JOB2"
        assert job.selected_ids == {2}
        assert len(http.calls_to("DELETE")) == 1
        assert len(http.calls_to("POST", f"{API}/torrents/addMagnet")) == 1
        re_add = http.calls_to("POST", f"{API}/torrents/addMagnet")[0]
        assert re_add.kwargs["data"] == {"magnet": f"magnet:?xt=urn:btih:{HASH}"}
        assert http.calls_to("POST", f"{API}/torrents/selectFiles/JOB2")[0].kwargs["data"] == {
            "files": "2"
        }

    async def test_switch_survives_failed_delete(self, client, http):
        """The old job may already be gone; the switch still re-adds the magnet."""
        http.add("GET", f"{API}/torrents/info/JOB1", FakeResponse(200, job_info()))
        http.add("DELETE", f"{API}/torrents/delete/JOB1", FakeResponse(404, {"error": "unknown_ressource"}))
        http.add("POST", f"{API}/torrents/addMagnet", FakeResponse(201, {"id": "JOB2"}))
        http.add("POST", f"{API}/torrents/selectFiles/JOB2", FakeResponse(204))
        http.add(
            "GET", f"{API}/torrents/info/JOB2",
            FakeResponse(200, job_info("JOB2", selected=(2,))),
        )
        await client.get_job("JOB1")
        http.calls.clear()

        job = await client.select_file("JOB1", 2)

        assert job.job_id == "JOB2"
        assert job.selected_ids == {2}
        assert len(http.calls_to("DELETE")) == 1
        assert len(http.calls_to("POST", f"{API}/torrents/addMagnet")) == 1
        assert "JOB1" not in client._jobs

    async def test_selecting_same_file_sends_nothing(self, client, http):
        http.add(
            "GET", f"{API}/torrents/info/JOB2",
            FakeResponse(200, job_info("JOB2", selected=(2,))),
        )
        await client.get_job("JOB2")
        http.calls.clear()

        job = await client.select_file("JOB2", 2)

        assert job.job_id == "JOB2"
        assert http.calls == []

    async def test_first_selection_is_in_place(self, client, http):
        http.add(
            "GET", f"{API}/torrents/info/JOB1",
            FakeResponse(200, job_info(status="waiting_files_selection", selected=(), links=[])),
            FakeResponse(200, job_info(status="queued", selected=(1,), links=[])),
        )
        http.add("POST", f"{API}/torrents/selectFiles/JOB1", FakeResponse(204))
        await client.get_job("JOB1")

        job = await client.select_file("JOB1", 1)

        assert job.selected_ids == {1}
        assert http.calls_to("DELETE") == []
        assert http.calls_to("POST", f"{API}/torrents/addMagnet") == []

    async def test_select_unknown_file(self, client, http):
        http.add("GET", f"{API}/torrents/info/JOB1", FakeResponse(200, job_info()))

        with pytest.raises(NotFoundError):
            await client.select_file("JOB1", 99)

    async def test_delete_job(self, client, http):
        http.add("GET", f"{API}/torrents/info/JOB1", FakeResponse(200, job_info()))
        http.add("DELETE", f"{API}/torrents/delete/JOB1", FakeResponse(204))
        await client.get_job("JOB1")

        await client.delete_job("JOB1")

        assert "JOB1" not in client._jobs

    async def test_cleanup_job(self, client, http):
        http.add("DELETE", f"{API}/torrents/delete/JOB1", FakeResponse(204))

        assert await client.cleanup_job("JOB1") is True

    @pytest.mark.parametrize("response", [
        FakeResponse(404, {"error": "unknown_ressource"}),
        FakeResponse(500, {"error": "internal_error"}),
        aiohttp.ClientConnectionError("reset"),
    ])
    async def test_cleanup_tolerates_failures(self, client, http, response):
        http.add("GET", f"{API}/torrents/info/JOB1", FakeResponse(200, job_info()))
        http.add("DELETE", f"{API}/torrents/delete/JOB1", response)
        await client.get_job("JOB1")

        assert await client.cleanup_job("JOB1") is False
        assert "JOB1" not in client._jobs


class TestAvailability:
    """Tests for the cache-hit check."""

    async def test_finished_job_counts_as_cached(self, client, http):
        http.add("GET", f"{API}/torrents", FakeResponse(200, [job_info()]))

        result = await client.check_availability(MAGNET)

        assert result.available is True
        assert result.source == "job"
        assert result.job_id == "JOB1"
        assert [f.filename for f in result.files] == ["Sintel.mkv", "Sintel.en.srt"]
        assert http.calls_to("GET", f"{API}/torrents/instantAvailability") == []

    async def test_instant_availability(self, client, http):
        http.add("GET", f"{API}/torrents", FakeResponse(200, []))
        http.add("GET", f"{API}/torrents/instantAvailability/{HASH}", FakeResponse(200, {
            HASH.upper(): {"rd": [{"1": {"filename": "Sintel.mkv", "filesize": 4096}}]},
        }))

        result = await client.check_availability(HASH)

        assert result.available is True
        assert result.source == "instant"
        assert result.job_id is None
        assert result.files[0].id == 1
        assert result.files[0].filesize == 4096

    async def test_pending_job_falls_through_to_instant(self, client, http):
        http.add(
            "GET", f"{API}/torrents",
            FakeResponse(200, [job_info(status="downloading", progress=30, links=[])]),
        )
        http.add("GET", f"{API}/torrents/instantAvailability/{HASH}", FakeResponse(200, []))

        result = await client.check_availability(MAGNET)

        assert result.available is False
        assert result.source == "none"
        assert result.job_id == "JOB1"

    async def test_endpoint_disabled(self, client, http):
        http.add("GET", f"{API}/torrents", FakeResponse(200, []))
        http.add(
            "GET", f"{API}/torrents/instantAvailability/{HASH}",
            FakeResponse(403, {"error": "disabled_endpoint"}),
        )

        result = await client.check_availability(MAGNET)

        assert result.available is False
        assert result.instant_disabled is True

    async def test_other_denials_surface(self, client, http):
        http.add("GET", f"{API}/torrents", FakeResponse(200, []))
        http.add(
            "GET", f"{API}/torrents/instantAvailability/{HASH}",
            FakeResponse(403, {"error": "not_premium"}),
        )

        with pytest.raises(PremiumRequiredError):
            await client.check_availability(MAGNET)

    async def test_invalid_identifier(self, client, http):
        with pytest.raises(InvalidIdentifierError):
            await client.check_availability("not-a-hash")
        assert http.calls == []


class TestCaching:
    """Tests for waiting on the cloud cache and resolving links."""

    async def test_wait_until_cached(self, client, http, no_sleep):
        http.add(
            "GET", f"{API}/torrents/info/JOB1",
            FakeResponse(200, job_info(status="downloading", progress=40, links=[])),
            FakeResponse(200, job_info()),
        )

        job = await client.wait_until_cached("JOB1")

        assert job.status == JobStatus.CACHED
        assert no_sleep.delays == [5.0]

    async def test_no_seeders(self, client, http):
        http.add(
            "GET", f"{API}/torrents/info/JOB1",
            FakeResponse(200, job_info(status="dead", progress=0, seeders=0, links=[])),
        )

        with pytest.raises(NoSeedersError) as excinfo:
            await client.wait_until_cached("JOB1")
        assert excinfo.value.info_hash == HASH

    async def test_stalled_with_progress_keeps_waiting(self, client, http, no_sleep):
        http.add(
            "GET", f"{API}/torrents/info/JOB1",
            FakeResponse(200, job_info(status="stalled", progress=12, seeders=0, links=[])),
            FakeResponse(200, job_info()),
        )

        job = await client.wait_until_cached("JOB1")
        assert job.status == JobStatus.CACHED

    async def test_job_error(self, client, http):
        http.add(
            "GET", f"{API}/torrents/info/JOB1",
            FakeResponse(200, job_info(status="magnet_error", progress=0, links=[])),
        )

        with pytest.raises(DebridError):
            await client.wait_until_cached("JOB1")

    async def test_cache_timeout(self, client, http, no_sleep):
        http.add(
            "GET", f"{API}/torrents/info/JOB1",
            FakeResponse(200, job_info(status="downloading", progress=10, links=[])),
        )

        with pytest.raises(AcquisitionTimeoutError):
            await client.wait_until_cached("JOB1", timeout=10.0, poll_interval=5.0)

        assert len(http.calls) == 3
        assert no_sleep.delays == [5.0, 5.0]

    async def test_resolve_link(self, client, http):
        http.add("POST", f"{API}/unrestrict/link", FakeResponse(200, {
            "id": "X", "filename": "Sintel.mkv", "filesize": 4096,
            "link": LINK_1, "download": "https://cdn.test/Sintel.mkv",
        }))

        assert await client.resolve_link(LINK_1) == "https://cdn.test/Sintel.mkv"
        assert http.calls[0].kwargs["data"] == {"link": LINK_1}

    async def test_get_playable_url_picks_largest_file(self, client, http):
        http.add("GET", f"{API}/torrents", FakeResponse(200, []))
        http.add(
            "POST", f"{API}/torrents/addMagnet",
            FakeResponse(201, {"id": "JOB1"}),
            FakeResponse(201, {"id": "JOB2"}),
        )
        http.add("POST", f"{API}/torrents/selectFiles/JOB1", FakeResponse(204))
        http.add("POST", f"{API}/torrents/selectFiles/JOB2", FakeResponse(204))
        http.add("GET", f"{API}/torrents/info/JOB1", FakeResponse(200, job_info()))
        http.add("DELETE", f"{API}/torrents/delete/JOB1", FakeResponse(204))
        http.add(
            "GET", f"{API}/torrents/info/JOB2",
            FakeResponse(200, job_info("JOB2", selected=(1,), links=[LINK_1])),
        )
        http.add("POST", f"{API}/unrestrict/link", FakeResponse(200, {
            "link": LINK_1, "download": "https://cdn.test/Sintel.mkv",
        }))

        url = await client.get_playable_url(MAGNET)

        assert url == "https://cdn.test/Sintel.mkv"
        assert http.calls_to("POST", f"{API}/unrestrict/link")[0].kwargs["data"] == {"link": LINK_1}
