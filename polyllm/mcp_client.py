"""MCP client implementations for HTTP and stdio transports."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from abc import ABC, abstractmethod
from typing import Any

import httpx

from .config import MCPServerConfig

LOG = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "polyllm", "version": "0.1.0"}


class MCPError(Exception):
    """Raised for MCP protocol and transport errors."""


class MCPClient(ABC):
    """Abstract MCP client interface used by the tool bridge."""

    def __init__(self, cfg: MCPServerConfig) -> None:
        self.cfg = cfg

    @abstractmethod
    async def start(self) -> None:
        """Initialize transport resources and run the MCP handshake."""

    @abstractmethod
    async def close(self) -> None:
        """Release transport resources."""

    @abstractmethod
    async def _rpc(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute one JSON-RPC request and return its result object."""

    async def tools_list(self, cursor: str | None = None) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if cursor:
            params["cursor"] = cursor
        return await self._rpc("tools/list", params)

    async def tools_call(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        return await self._rpc("tools/call", {"name": name, "arguments": arguments})

    @staticmethod
    def _initialize_params() -> dict[str, Any]:
        return {"protocolVersion": PROTOCOL_VERSION, "capabilities": {}, "clientInfo": CLIENT_INFO}


def _result_from_envelope(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise MCPError("MCP reply is not a JSON-RPC object")
    if "error" in payload:
        raise MCPError(json.dumps(payload["error"], ensure_ascii=False))
    result = payload.get("result")
    return result if isinstance(result, dict) else {}


class HTTPMCPClient(MCPClient):
    """MCP over HTTP POST; replies may be plain JSON or a short SSE stream."""

    def __init__(self, cfg: MCPServerConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        super().__init__(cfg)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._id = 0
        self._session_id: str | None = None
        self._initialized = False
        self._initialize_lock = asyncio.Lock()

    async def start(self) -> None:
        if self._client is None:
            timeout = httpx.Timeout(
                connect=self.cfg.connect_timeout_seconds,
                read=self.cfg.read_timeout_seconds,
                write=self.cfg.read_timeout_seconds,
                pool=self.cfg.connect_timeout_seconds,
            )
            self._client = httpx.AsyncClient(timeout=timeout, follow_redirects=True, transport=self._transport)
        await self._ensure_initialized()

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
        self._initialized = False
        self._session_id = None

    def _headers(self) -> dict[str, str]:
        # Strict servers reject requests that do not accept both reply styles.
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            "MCP-Protocol-Version": PROTOCOL_VERSION,
        }
        if self._session_id:
            headers["mcp-session-id"] = self._session_id
        return headers

    async def _post(self, body: dict[str, Any]) -> httpx.Response:
        assert self._client is not None and self.cfg.url is not None
        try:
            response = await self._client.post(self.cfg.url, json=body, headers=self._headers())
        except httpx.HTTPError as exc:
            raise MCPError(f"MCP HTTP request to {self.cfg.server_id} failed: {exc}") from exc
        session_id = response.headers.get("mcp-session-id")
        if session_id and session_id != self._session_id:
            self._session_id = session_id
            LOG.info("MCP HTTP session id updated server_id=%s session_id=%s", self.cfg.server_id, session_id)
        if response.status_code >= 400:
            raise MCPError(
                f"MCP server {self.cfg.server_id} returned HTTP {response.status_code}: {response.text[:1000]}"
            )
        return response

    @staticmethod
    def _reply_from_sse(text: str, req_id: int) -> dict[str, Any] | None:
        for event in text.split("\n\n"):
            data = "\n".join(
                line[5:].lstrip() for line in event.splitlines() if line.startswith("data:")
            ).strip()
            if not data:
                continue
            try:
                payload = json.loads(data)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict) and str(payload.get("id")) == str(req_id):
                return payload
        return None

    async def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        async with self._initialize_lock:
            if self._initialized:
                return
            await self._request("initialize", self._initialize_params())
            try:
                await self._post({"jsonrpc": "2.0", "method": "notifications/initialized", "params": {}})
            except MCPError as exc:
                LOG.debug("MCP notifications/initialized failed server_id=%s error=%s", self.cfg.server_id, exc)
            self._initialized = True
            LOG.info("MCP HTTP session initialized server_id=%s session_id=%s", self.cfg.server_id, self._session_id)

    async def _request(self, method: str, params: dict[str, Any] | None) -> dict[str, Any]:
        self._id += 1
        req_id = self._id
        response = await self._post({"jsonrpc": "2.0", "id": req_id, "method": method, "params": params or {}})
        content_type = response.headers.get("content-type", "").lower()
        if "text/event-stream" in content_type:
            payload = self._reply_from_sse(response.text, req_id)
            if payload is None:
                raise MCPError(f"SSE reply from {self.cfg.server_id} did not contain a JSON-RPC response")
        else:
            try:
                payload = response.json()
            except json.JSONDecodeError as exc:
                raise MCPError(f"MCP server {self.cfg.server_id} returned a non-JSON body") from exc
        return _result_from_envelope(payload)

    async def _rpc(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        if self._client is None:
            await self.start()
        await self._ensure_initialized()
        return await self._request(method, params)


class StdioMCPClient(MCPClient):
    """MCP over a child process speaking newline-delimited JSON-RPC."""

    def __init__(self, cfg: MCPServerConfig) -> None:
        super().__init__(cfg)
        self._proc: asyncio.subprocess.Process | None = None
        self._write_lock = asyncio.Lock()
        self._next_id = 0
        self._pending: dict[int, asyncio.Future[dict[str, Any]]] = {}
        self._reader_task: asyncio.Task[None] | None = None
        self._stream_error: MCPError | None = None

    async def start(self) -> None:
        """Spawn the server process, start the reader loop, and initialize."""
        if self._proc is not None:
            return
        if not self.cfg.command:
            raise MCPError(f"Missing command for MCP server '{self.cfg.server_id}'")

        env = {**os.environ, **self.cfg.env} if self.cfg.env else None
        self._proc = await asyncio.create_subprocess_exec(
            self.cfg.command,
            *self.cfg.args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
            env=env,
        )
        self._stream_error = None
        self._reader_task = asyncio.create_task(self._reader_loop())
        await asyncio.wait_for(
            self._rpc("initialize", self._initialize_params()),
            timeout=self.cfg.connect_timeout_seconds,
        )
        await self._send({"jsonrpc": "2.0", "method": "notifications/initialized", "params": {}})
        LOG.info("MCP stdio server initialized server_id=%s pid=%s", self.cfg.server_id, self._proc.pid)

    async def close(self) -> None:
        if self._reader_task:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
            self._reader_task = None
        if self._proc:
            if self._proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    self._proc.terminate()
            await self._proc.wait()
            self._proc = None

    async def _send(self, payload: dict[str, Any]) -> None:
        assert self._proc is not None and self._proc.stdin is not None
        try:
            self._proc.stdin.write(json.dumps(payload, ensure_ascii=False).encode("utf-8") + b"\n")
            await self._proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise MCPError(f"MCP stdio server {self.cfg.server_id} is not accepting input: {exc}") from exc

    async def _reader_loop(self) -> None:
        """Route replies to waiting futures; notifications are ignored."""
        assert self._proc is not None and self._proc.stdout is not None
        stdout = self._proc.stdout
        try:
            while True:
                line = await stdout.readline()
                if not line:
                    raise MCPError(f"MCP stdio stream of {self.cfg.server_id} ended")
                try:
                    msg = json.loads(line.decode("utf-8"))
                except json.JSONDecodeError:
                    LOG.debug("ignoring non-JSON line from MCP server %s", self.cfg.server_id)
                    continue
                if not isinstance(msg, dict) or "id" not in msg or "method" in msg:
                    continue
                future = self._pending.pop(int(msg["id"]), None)
                if future and not future.done():
                    future.set_result(msg)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._stream_error = exc if isinstance(exc, MCPError) else MCPError(str(exc))
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(self._stream_error)
            self._pending.clear()
            LOG.warning("MCP reader loop stopped for %s: %s", self.cfg.server_id, exc)

    async def _rpc(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        if self._proc is None:
            await self.start()

        async with self._write_lock:
            if self._stream_error is not None:
                raise self._stream_error
            self._next_id += 1
            req_id = self._next_id
            future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
            self._pending[req_id] = future
            await self._send({"jsonrpc": "2.0", "id": req_id, "method": method, "params": params or {}})

        try:
            msg = await asyncio.wait_for(future, timeout=self.cfg.read_timeout_seconds)
        finally:
            self._pending.pop(req_id, None)
        return _result_from_envelope(msg)


def build_mcp_client(cfg: MCPServerConfig) -> MCPClient:
    """Instantiate the proper MCP client implementation for one server."""
    if cfg.transport == "http":
        return HTTPMCPClient(cfg)
    return StdioMCPClient(cfg)
