"""Tests for MCPClient sessions and the JSON-RPC transports."""

from __future__ import annotations

import json
import sys
from typing import Any

import httpx
import pytest

from threadline.errors import RegistryError, ToolDispatchError
from threadline.tools.mcp import (
    HttpTransport,
    MCPClient,
    ProcessTransport,
    RpcError,
    _parse_sse,
    _text_content,
    _unwrap,
)
from threadline.tools.models import RemoteToolServer


class FakeTransport:
    """In-memory transport answering from a dict of method -> result."""

    def __init__(self, results: dict[str, Any] | None = None, fail_start: bool = False) -> None:
        self.results = results or {}
        self.fail_start = fail_start
        self.requests: list[tuple[str, dict[str, Any]]] = []
        self.started = 0
        self.closed = False

    async def start(self) -> None:
        self.started += 1
        if self.fail_start:
            raise RpcError("connection refused")

    async def request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        self.requests.append((method, params))
        result = self.results[method]
        if isinstance(result, Exception):
            raise result
        if callable(result):
            return result(params)
        return result

    async def close(self) -> None:
        self.closed = True


def _server(server_id: int = 1, name: str = "Echo") -> RemoteToolServer:
    return RemoteToolServer(id=server_id, name=name, transport="http", endpoint_url="http://x")


def _client(transports: dict[int, FakeTransport]) -> MCPClient:
    return MCPClient(request_timeout=5, transport_factory=lambda s, _t: transports[s.id])


# -- MCPClient -----------------------------------------------------------------


async def test_connect_is_idempotent():
    transport = FakeTransport()
    client = _client({1: transport})
    await client.connect_server(_server())
    await client.connect_server(_server())
    assert transport.started == 1
    assert client.is_connected(1)


async def test_connect_failure_raises_registry_error_and_closes():
    transport = FakeTransport(fail_start=True)
    client = _client({1: transport})
    with pytest.raises(RegistryError):
        await client.connect_server(_server())
    assert transport.closed
    assert not client.is_connected(1)


async def test_list_tools_follows_cursor():
    pages = {
        None: {"tools": [{"name": "a"}], "nextCursor": "p2"},
        "p2": {"tools": [{"name": "b"}, {"description": "nameless"}]},
    }
    transport = FakeTransport({"tools/list": lambda params: pages[params.get("cursor")]})
    client = _client({1: transport})
    await client.connect_server(_server())

    tools = await client.list_tools(1)
    assert [t["name"] for t in tools] == ["a", "b"]


async def test_list_tools_failure_drops_session():
    transport = FakeTransport({"tools/list": RpcError("stream closed")})
    client = _client({1: transport})
    await client.connect_server(_server())

    with pytest.raises(RegistryError, match="stream closed"):
        await client.list_tools(1)
    assert transport.closed
    assert not client.is_connected(1)


async def test_list_tools_without_session():
    with pytest.raises(RegistryError):
        await MCPClient().list_tools(42)


async def test_call_tool_returns_text():
    transport = FakeTransport({
        "tools/call": {"content": [{"type": "text", "text": "hello "}, {"type": "text", "text": "world"}]},
    })
    client = _client({1: transport})
    await client.connect_server(_server())

    assert await client.call_tool(1, "echo", {"msg": "hi"}) == "hello world"
    assert transport.requests[-1] == ("tools/call", {"name": "echo", "arguments": {"msg": "hi"}})


async def test_call_tool_is_error():
    transport = FakeTransport({
        "tools/call": {"content": [{"type": "text", "text": "bad input"}], "isError": True},
    })
    client = _client({1: transport})
    await client.connect_server(_server())
    with pytest.raises(ToolDispatchError, match="bad input"):
        await client.call_tool(1, "echo", {})


async def test_call_tool_transport_failure():
    transport = FakeTransport({"tools/call": RpcError("broken pipe")})
    client = _client({1: transport})
    await client.connect_server(_server())
    with pytest.raises(ToolDispatchError, match="broken pipe"):
        await client.call_tool(1, "echo", {})


async def test_call_tool_without_session_hides_server_id():
    with pytest.raises(ToolDispatchError) as exc_info:
        await MCPClient().call_tool(77, "echo", {})
    assert "77" not in str(exc_info.value)


async def test_disconnect_server_closes_transport():
    transport = FakeTransport()
    client = _client({1: transport})
    await client.connect_server(_server())
    await client.disconnect_server(1)
    assert transport.closed
    assert not client.is_connected(1)
    await client.disconnect_server(1)


async def test_disconnect_all():
    transports = {1: FakeTransport(), 2: FakeTransport()}
    client = _client(transports)
    await client.connect_server(_server(1))
    await client.connect_server(_server(2))
    await client.disconnect_all()
    assert client.connected_ids == []
    assert all(t.closed for t in transports.values())


# -- helpers -------------------------------------------------------------------


def test_unwrap_error():
    with pytest.raises(RpcError, match="nope"):
        _unwrap({"jsonrpc": "2.0", "id": 1, "error": {"code": -1, "message": "nope"}}, 1)


def test_unwrap_mismatched_id():
    with pytest.raises(RpcError):
        _unwrap({"jsonrpc": "2.0", "id": 2, "result": {}}, 1)


def test_parse_sse_picks_matching_id():
    body = (
        "event: message\n"
        'data: {"jsonrpc": "2.0", "method": "notifications/progress"}\n\n'
        "event: message\n"
        'data: {"jsonrpc": "2.0", "id": 3, "result": {"ok": true}}\n\n'
    )
    assert _parse_sse(body, 3)["result"] == {"ok": True}


def test_parse_sse_without_response():
    with pytest.raises(RpcError):
        _parse_sse("event: ping\n\n", 1)


def test_text_content_non_text_parts():
    result = {"content": [{"type": "image", "data": "..."}, {"type": "text", "text": "cap"}]}
    assert _text_content(result) == "[image content omitted]cap"


def test_text_content_structured_fallback():
    assert json.loads(_text_content({"content": [], "structuredContent": {"a": 1}})) == {"a": 1}


# -- HttpTransport -------------------------------------------------------------


def _mock_http(handler) -> HttpTransport:
    transport = HttpTransport("http://tools.test/mcp", timeout=5)
    transport._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return transport


async def test_http_transport_session_header_and_json_reply():
    seen_headers: list[str | None] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        seen_headers.append(request.headers.get("mcp-session-id"))
        if "id" not in body:
            return httpx.Response(202)
        if body["method"] == "initialize":
            return httpx.Response(
                200,
                json={"jsonrpc": "2.0", "id": body["id"], "result": {"protocolVersion": "x"}},
                headers={"Mcp-Session-Id": "abc"},
            )
        return httpx.Response(
            200, json={"jsonrpc": "2.0", "id": body["id"], "result": {"tools": []}}
        )

    transport = _mock_http(handler)
    await transport.start()
    assert await transport.request("tools/list", {}) == {"tools": []}
    await transport.close()

    assert seen_headers == [None, "abc", "abc"]


async def test_http_transport_event_stream_reply():
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        payload = json.dumps({"jsonrpc": "2.0", "id": body["id"], "result": {"ok": True}})
        return httpx.Response(
            200,
            text=f"event: message\ndata: {payload}\n\n",
            headers={"Content-Type": "text/event-stream"},
        )

    transport = _mock_http(handler)
    assert await transport.request("ping", {}) == {"ok": True}
    await transport.close()


async def test_http_transport_status_error():
    transport = _mock_http(lambda request: httpx.Response(500))
    with pytest.raises(RpcError):
        await transport.request("ping", {})
    await transport.close()


def test_http_transport_requires_endpoint():
    with pytest.raises(RegistryError):
        HttpTransport("", timeout=5)


# -- ProcessTransport ----------------------------------------------------------

_ECHO_SERVER = r"""
import json, sys
while line := sys.stdin.readline():
    msg = json.loads(line)
    if "id" not in msg:
        continue
    if msg["method"] == "initialize":
        result = {"protocolVersion": "2025-03-26", "capabilities": {}}
    elif msg["method"] == "tools/list":
        result = {"tools": [{"name": "echo", "inputSchema": {"type": "object"}}]}
    else:
        sys.stdout.write(json.dumps({"jsonrpc": "2.0", "method": "notifications/message"}) + "\n")
        text = msg["params"]["arguments"].get("text", "")
        result = {"content": [{"type": "text", "text": text}]}
    sys.stdout.write(json.dumps({"jsonrpc": "2.0", "id": msg["id"], "result": result}) + "\n")
    sys.stdout.flush()
"""


async def test_process_transport_round_trip():
    server = RemoteToolServer(
        id=5, name="Local", transport="process",
        command=sys.executable, args=["-c", _ECHO_SERVER],
    )
    client = MCPClient(request_timeout=10)
    await client.connect_server(server)
    try:
        tools = await client.list_tools(5)
        assert [t["name"] for t in tools] == ["echo"]
        assert await client.call_tool(5, "echo", {"text": "ping"}) == "ping"
    finally:
        await client.disconnect_all()


async def test_process_transport_missing_command():
    transport = ProcessTransport("/nonexistent/threadline-tool", [], {}, timeout=1)
    with pytest.raises(RpcError):
        await transport.start()


async def test_process_transport_oversized_message():
    transport = ProcessTransport(sys.executable, ["-c", _ECHO_SERVER], {}, timeout=10, limit=1024)
    await transport.start()
    try:
        with pytest.raises(RpcError, match="exceeds 1024 bytes"):
            await transport.request(
                "tools/call", {"name": "echo", "arguments": {"text": "x" * 4096}}
            )
    finally:
        await transport.close()
