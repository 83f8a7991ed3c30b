"""JSON-RPC client for remote tool servers (MCP).

Two transports are supported:

- **http**: one POST per request via ``httpx``. Replies may be plain JSON
  or a short ``text/event-stream`` body carrying the JSON-RPC response in
  a ``data:`` frame.
- **process**: a child process speaking newline-delimited JSON-RPC on
  stdin/stdout.

Sessions are cached per server id in :class:`MCPClient`. Connecting is
idempotent; disabling or deleting a server must call
:meth:`MCPClient.disconnect_server` so the transport is torn down.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
import os
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from threadline.config import settings
from threadline.errors import RegistryError, ThreadlineError, ToolDispatchError

if TYPE_CHECKING:
    from collections.abc import Callable

    from threadline.tools.models import RemoteToolServer

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2025-03-26"
CLIENT_INFO = {"name": "threadline", "version": "0.1.0"}
MAX_LIST_PAGES = 20
# Upper bound on one newline-delimited stdio message.
PROCESS_STREAM_LIMIT = 16 * 1024 * 1024
PROCESS_EXIT_GRACE = 2.0


class RpcError(ThreadlineError):
    """A JSON-RPC request failed at the transport or protocol level."""


class Transport(Protocol):
    async def start(self) -> None: ...

    async def request(self, method: str, params: dict[str, Any]) -> dict[str, Any]: ...

    async def close(self) -> None: ...


def _initialize_params() -> dict[str, Any]:
    return {
        "protocolVersion": PROTOCOL_VERSION,
        "capabilities": {},
        "clientInfo": CLIENT_INFO,
    }


def _unwrap(response: Any, request_id: int) -> dict[str, Any]:
    """Return the ``result`` of a JSON-RPC response or raise RpcError."""
    if not isinstance(response, dict):
        msg = "Invalid JSON-RPC response"
        raise RpcError(msg)
    if response.get("id") not in (request_id, None):
        msg = f"Mismatched response id {response.get('id')!r} (expected {request_id})"
        raise RpcError(msg)
    error = response.get("error")
    if error:
        message = error.get("message", error) if isinstance(error, dict) else error
        msg = f"Server error: {message}"
        raise RpcError(msg)
    result = response.get("result")
    if not isinstance(result, dict):
        msg = "Invalid response format"
        raise RpcError(msg)
    return result


def _parse_sse(body: str, request_id: int) -> Any:
    """Pick the JSON-RPC response for *request_id* out of an SSE body."""
    for line in body.splitlines():
        if not line.startswith("data:"):
            continue
        payload = line[len("data:"):].strip()
        if not payload:
            continue
        with contextlib.suppress(json.JSONDecodeError):
            message = json.loads(payload)
            if isinstance(message, dict) and message.get("id") == request_id:
                return message
    msg = "No JSON-RPC response in event stream"
    raise RpcError(msg)


class HttpTransport:
    """JSON-RPC over HTTP POST."""

    def __init__(self, endpoint: str, timeout: float) -> None:
        if not endpoint:
            msg = "HTTP tool server has no endpoint URL"
            raise RegistryError(msg)
        self._endpoint = endpoint
        self._client = httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)
        self._session_id: str | None = None

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if self._session_id:
            headers["Mcp-Session-Id"] = self._session_id
        return headers

    async def start(self) -> None:
        await self.request("initialize", _initialize_params())
        await self._notify("notifications/initialized")

    async def _notify(self, method: str) -> None:
        try:
            await self._client.post(
                self._endpoint,
                json={"jsonrpc": "2.0", "method": method},
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            logger.debug("Notification %s to %s failed: %s", method, self._endpoint, exc)

    async def request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        request_id = next(self._ids)
        body = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        try:
            resp = await self._client.post(self._endpoint, json=body, headers=self._headers())
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            msg = f"Request failed: {exc}"
            raise RpcError(msg) from exc

        if session_id := resp.headers.get("mcp-session-id"):
            self._session_id = session_id

        content_type = resp.headers.get("content-type", "")
        if content_type.startswith("text/event-stream"):
            message = _parse_sse(resp.text, request_id)
        else:
            try:
                message = resp.json()
            except json.JSONDecodeError as exc:
                msg = f"Failed to parse response: {resp.text[:200]}"
                raise RpcError(msg) from exc
        return _unwrap(message, request_id)

    async def close(self) -> None:
        await self._client.aclose()


class ProcessTransport:
    """JSON-RPC over a child process's stdin/stdout, one message per line."""

    def __init__(
        self,
        command: str,
        args: list[str],
        env: dict[str, str],
        timeout: float,
        limit: int = PROCESS_STREAM_LIMIT,
    ) -> None:
        if not command:
            msg = "Process tool server has no command"
            raise RegistryError(msg)
        self._command = command
        self._args = args
        self._env = env
        self._timeout = timeout
        self._limit = limit
        self._ids = itertools.count(1)
        self._proc: asyncio.subprocess.Process | None = None
        # stdio is one ordered stream; requests must not interleave.
        self._io_lock = asyncio.Lock()

    async def start(self) -> None:
        try:
            self._proc = await asyncio.create_subprocess_exec(
                self._command,
                *self._args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                env={**os.environ, **self._env},
                limit=self._limit,
            )
        except OSError as exc:
            msg = f"Failed to start {self._command}: {exc}"
            raise RpcError(msg) from exc
        await self.request("initialize", _initialize_params())
        await self._write({"jsonrpc": "2.0", "method": "notifications/initialized"})

    async def _write(self, message: dict[str, Any]) -> None:
        if self._proc is None or self._proc.stdin is None:
            msg = "Process not started"
            raise RpcError(msg)
        self._proc.stdin.write((json.dumps(message) + "\n").encode())
        try:
            await self._proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            msg = f"Process {self._command} closed its input"
            raise RpcError(msg) from exc

    async def _read_response(self, request_id: int) -> Any:
        assert self._proc is not None and self._proc.stdout is not None
        while True:
            try:
                line = await self._proc.stdout.readline()
            except (ValueError, asyncio.LimitOverrunError) as exc:
                msg = f"Message from {self._command} exceeds {self._limit} bytes"
                raise RpcError(msg) from exc
            if not line:
                msg = f"Process {self._command} exited"
                raise RpcError(msg)
            try:
                message = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Ignoring non-JSON output from %s: %r", self._command, line[:200])
                continue
            # Skip server notifications and requests addressed to us.
            if isinstance(message, dict) and message.get("id") == request_id and "method" not in message:
                return message

    async def request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        async with self._io_lock:
            request_id = next(self._ids)
            await self._write({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
            try:
                message = await asyncio.wait_for(self._read_response(request_id), self._timeout)
            except TimeoutError as exc:
                msg = f"Timed out waiting for {method}"
                raise RpcError(msg) from exc
        return _unwrap(message, request_id)

    async def close(self) -> None:
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        # Closing stdin asks a stdio server to exit; escalate if it does not.
        if proc.stdin is not None:
            proc.stdin.close()
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(proc.wait(), PROCESS_EXIT_GRACE)
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), PROCESS_EXIT_GRACE)
            except TimeoutError:
                proc.kill()
                await proc.wait()


def default_transport(server: RemoteToolServer, timeout: float) -> Transport:
    """Build the transport matching ``server.transport``."""
    if server.transport == "http":
        return HttpTransport(server.endpoint_url, timeout)
    if server.transport == "process":
        return ProcessTransport(server.command, server.args, server.env, timeout)
    msg = f"Unknown transport: {server.transport}"
    raise RegistryError(msg)


def _text_content(result: dict[str, Any]) -> str:
    """Join the text parts of a ``tools/call`` result."""
    parts: list[str] = []
    for item in result.get("content") or []:
        if not isinstance(item, dict):
            continue
        if item.get("type", "text") == "text" and isinstance(item.get("text"), str):
            parts.append(item["text"])
        else:
            parts.append(f"[{item.get('type', 'unknown')} content omitted]")
    if not parts and "structuredContent" in result:
        return json.dumps(result["structuredContent"])
    return "".join(parts)


class MCPClient:
    """Per-server JSON-RPC sessions, shared by all turns.

    Args:
        request_timeout: Per-request timeout in seconds.
        transport_factory: Builds a transport for a server. Injected in tests.
    """

    def __init__(
        self,
        request_timeout: float | None = None,
        transport_factory: Callable[[RemoteToolServer, float], Transport] | None = None,
    ) -> None:
        self._timeout = (
            request_timeout if request_timeout is not None else settings.mcp_request_timeout_seconds
        )
        self._factory = transport_factory or default_transport
        self._sessions: dict[int, Transport] = {}
        self._lock = asyncio.Lock()

    def is_connected(self, server_id: int) -> bool:
        return server_id in self._sessions

    @property
    def connected_ids(self) -> list[int]:
        return list(self._sessions)

    async def connect_server(self, server: RemoteToolServer) -> None:
        """Establish a session for *server* unless one already exists.

        Raises:
            RegistryError: The server could not be reached.
        """
        if server.id in self._sessions:
            return
        async with self._lock:
            if server.id in self._sessions:
                return
            transport = self._factory(server, self._timeout)
            try:
                await transport.start()
            except RpcError as exc:
                await transport.close()
                msg = f"Failed to connect to {server.name}: {exc}"
                raise RegistryError(msg) from exc
            self._sessions = {**self._sessions, server.id: transport}
        logger.info("Connected to tool server: %s (ID: %d)", server.name, server.id)

    def _session(self, server_id: int) -> Transport | None:
        return self._sessions.get(server_id)

    async def list_tools(self, server_id: int) -> list[dict[str, Any]]:
        """Return raw tool descriptors (``name``, ``description``, ``inputSchema``).

        Raises:
            RegistryError: No session, or the server failed to answer.
        """
        session = self._session(server_id)
        if session is None:
            msg = f"No active session for server ID: {server_id}"
            raise RegistryError(msg)

        tools: list[dict[str, Any]] = []
        params: dict[str, Any] = {}
        for _ in range(MAX_LIST_PAGES):
            try:
                result = await session.request("tools/list", params)
            except RpcError as exc:
                # The stream may be out of step; reconnect on the next listing.
                await self.disconnect_server(server_id)
                msg = f"Failed to list tools: {exc}"
                raise RegistryError(msg) from exc
            page = result.get("tools")
            if not isinstance(page, list):
                msg = "No tools in response"
                raise RegistryError(msg)
            tools.extend(t for t in page if isinstance(t, dict) and t.get("name"))
            cursor = result.get("nextCursor")
            if not cursor:
                break
            params = {"cursor": cursor}
        return tools

    async def call_tool(self, server_id: int, name: str, arguments: dict[str, Any]) -> str:
        """Invoke *name* on the server and return its text output.

        Raises:
            ToolDispatchError: No session, transport failure, or the tool
                reported an error.
        """
        session = self._session(server_id)
        if session is None:
            msg = "No active session for this tool server"
            raise ToolDispatchError(msg)
        try:
            result = await session.request("tools/call", {"name": name, "arguments": arguments})
        except RpcError as exc:
            msg = f"Tool execution failed: {exc}"
            raise ToolDispatchError(msg) from exc

        text = _text_content(result)
        if result.get("isError"):
            raise ToolDispatchError(text or f"Tool '{name}' reported an error")
        return text

    async def disconnect_server(self, server_id: int) -> None:
        async with self._lock:
            sessions = dict(self._sessions)
            transport = sessions.pop(server_id, None)
            self._sessions = sessions
        if transport is None:
            return
        try:
            await transport.close()
        except Exception:
            logger.exception("Error closing session for server ID %d", server_id)
        logger.info("Disconnected tool server ID: %d", server_id)

    async def disconnect_all(self) -> None:
        async with self._lock:
            sessions, self._sessions = self._sessions, {}
        for server_id, transport in sessions.items():
            try:
                await transport.close()
            except Exception:
                logger.exception("Error closing session for server ID %d", server_id)
        if sessions:
            logger.info("Disconnected all tool servers (%d)", len(sessions))
