import json

import pytest
import respx
from httpx import ConnectError, Response

from meetprep.tavily import TavilyClient


@pytest.mark.asyncio
async def test_tavily_search_payload_and_headers():
    client = TavilyClient("test-key")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["headers"] = request.headers
                return Response(200, json={"results": []})

            respx_mock.post("https://api.tavily.com/search").mock(side_effect=handler)
            resp = await client.search("hello", search_depth="advanced", max_results=3, topic="News", include_answer=True)
            assert resp == {"results": []}
            assert captured["json"]["api_key"] == "test-key"
            assert captured["json"]["topic"] == "news"
            assert captured["json"]["include_answer"] is True
            assert captured["headers"]["Authorization"] == "Bearer test-key"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_tavily_search_drops_unknown_topic():
    client = TavilyClient("test-key")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                return Response(200, json={"results": []})

            respx_mock.post("https://api.tavily.com/search").mock(side_effect=handler)
            await client.search("hello", topic="gossip")
            assert "topic" not in captured["json"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_tavily_search_handles_http_error():
    client = TavilyClient("test-key")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("https://api.tavily.com/search").mock(
                return_value=Response(500, json={"error": "boom"})
            )
            resp = await client.search("hello")
            assert resp["error"] == "http_status"
            assert resp["status_code"] == 500
            assert resp["detail"] == {"error": "boom"}
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_tavily_search_handles_connection_error():
    client = TavilyClient("test-key")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post("https://api.tavily.com/search").mock(side_effect=ConnectError("down"))
            resp = await client.search("hello")
            assert resp["error"] == "request_failed"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_tavily_without_key_skips_network():
    client = TavilyClient(None)
    try:
        assert not client.enabled
        assert await client.search("hello") == {"error": "missing_api_key"}
    finally:
        await client.close()
