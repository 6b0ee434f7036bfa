import httpx
import pytest

from flowtrace.errors import NetworkError
from flowtrace.flow_http_client import FlowHTTPClient


def _client(handler):
    client = FlowHTTPClient(api_url="https://flow.example/v3/flow/")
    client.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return client


@pytest.mark.asyncio
async def test_get_cache_parses_payload():
    seen = []

    def handler(request):
        seen.append(request.url)
        return httpx.Response(200, json={"success": True, "cached": True, "keyHash": "k1", "nodes": [], "links": []})

    client = _client(handler)
    data = await client.get_cache("k1", stale=True)
    await client.aclose()

    assert data.cached and data.key_hash == "k1"
    assert seen[0].path == "/v3/flow/cache"
    assert seen[0].params["stale"] == "1"


@pytest.mark.asyncio
async def test_malformed_cache_payload_is_a_network_error():
    client = _client(lambda request: httpx.Response(200, json=["not", "a", "trace"]))
    with pytest.raises(NetworkError):
        await client.get_cache("k1")
    await client.aclose()


@pytest.mark.asyncio
async def test_job_falls_back_to_status_route():
    def handler(request):
        if request.url.path.endswith("/job"):
            return httpx.Response(404)
        return httpx.Response(200, json={"success": True, "found": True, "status": "done"})

    client = _client(handler)
    job = await client.get_job("k1")
    await client.aclose()
    assert job.status == "done"


@pytest.mark.asyncio
async def test_http_error_is_a_network_error():
    client = _client(lambda request: httpx.Response(503))
    with pytest.raises(NetworkError):
        await client.get_cache("k1")
    await client.aclose()
