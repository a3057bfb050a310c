"""Tool discovery and invocation across configured MCP servers.

Tools are exposed to models as ``mcp_<server>_<tool>``. Server ids cannot
contain underscores, so the first two separators always delimit the parts
and the tool name keeps any underscores of its own.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable

from .config import MCPServerConfig
from .json_helpers import to_bounded_json
from .mcp_client import MCPClient, MCPError, build_mcp_client
from .schema import FunctionDefinition, Tool

LOG = logging.getLogger(__name__)

TOOL_NAME_PREFIX = "mcp"
DIRECTIVE_KEY = "mcp"
ALL_SERVERS = "all"


def encode_tool_name(server: str, tool: str) -> str:
    return f"{TOOL_NAME_PREFIX}_{server}_{tool}"


def decode_tool_name(name: str) -> tuple[str, str]:
    """Split ``mcp_<server>_<tool>`` into ``(server, tool)``; raise ValueError otherwise."""
    parts = name.split("_", 2)
    if len(parts) < 3 or parts[0] != TOOL_NAME_PREFIX or not parts[1] or not parts[2]:
        raise ValueError(f"invalid tool name {name!r}, expected {TOOL_NAME_PREFIX}_<server>_<tool>")
    return parts[1], parts[2]


def parse_tool_directive(directive: str | None, available: list[str]) -> list[str]:
    """Return the tool server names requested by a model-string directive.

    ``mcp=fetch,search`` selects named servers, ``mcp=all`` every available
    server in sorted order. Parameters are ``&``-separated and other keys are
    ignored. Names are deduplicated, keeping first occurrence.
    """
    if not directive:
        return []
    requested: list[str] = []
    for param in directive.split("&"):
        key, sep, value = param.partition("=")
        if not sep or key.strip() != DIRECTIVE_KEY:
            continue
        for name in value.split(","):
            name = name.strip()
            if name == ALL_SERVERS:
                requested.extend(sorted(available))
            elif name:
                requested.append(name)
    return list(dict.fromkeys(requested))


def flatten_tool_content(blocks: list[dict[str, Any]]) -> str:
    """Concatenate the text of textual content blocks and trim the result."""
    texts = [
        block["text"]
        for block in blocks
        if isinstance(block, dict) and block.get("type", "text") == "text" and isinstance(block.get("text"), str)
    ]
    return "".join(texts).strip()


def mcp_tool_to_spec(server: str, tool: dict[str, Any]) -> Tool:
    schema = tool.get("inputSchema") or {"type": "object", "properties": {}}
    return Tool(
        function=FunctionDefinition(
            name=encode_tool_name(server, str(tool["name"])),
            description=str(tool.get("description") or "").strip() or None,
            parameters=schema,
        )
    )


class ToolBridge(ABC):
    """Source of callable tools for the completion loop."""

    @abstractmethod
    def server_names(self) -> list[str]:
        """Names of every configured tool server."""

    @abstractmethod
    async def list_tools(self, server: str) -> list[Tool]:
        """List one server's tools as function tool definitions."""

    @abstractmethod
    async def call_tool(self, server: str, tool: str, arguments: dict[str, Any]) -> list[dict[str, Any]]:
        """Invoke a tool and return its content blocks; never returns an empty list."""

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None


class MCPToolBridge(ToolBridge):
    """Tool bridge that owns one MCP client per configured server."""

    def __init__(
        self,
        servers: list[MCPServerConfig],
        client_factory: Callable[[MCPServerConfig], MCPClient] = build_mcp_client,
    ) -> None:
        self._servers = {server.server_id: server for server in servers}
        self._clients: dict[str, MCPClient] = {sid: client_factory(cfg) for sid, cfg in self._servers.items()}
        self._server_errors: dict[str, str | None] = {sid: None for sid in self._servers}

    def server_names(self) -> list[str]:
        return list(self._servers)

    async def start(self) -> None:
        """Start every client; a failing server is recorded and skipped."""

        async def start_one(server_id: str, client: MCPClient) -> None:
            try:
                await client.start()
                self._server_errors[server_id] = None
            except Exception as exc:
                self._server_errors[server_id] = str(exc)
                LOG.warning("MCP start failed for %s: %s", server_id, exc)

        await asyncio.gather(*(start_one(sid, client) for sid, client in self._clients.items()))

    async def close(self) -> None:
        for server_id, client in self._clients.items():
            try:
                await client.close()
            except Exception as exc:
                LOG.debug("MCP close failed for %s: %s", server_id, exc)

    def get_health(self) -> dict[str, Any]:
        states = [
            {
                "server_id": server_id,
                "transport": cfg.transport,
                "ok": self._server_errors.get(server_id) is None,
                "error": self._server_errors.get(server_id),
            }
            for server_id, cfg in self._servers.items()
        ]
        degraded = any(not state["ok"] for state in states)
        return {"ok": not degraded, "degraded": degraded, "mcp_servers": states}

    def _client(self, server: str) -> MCPClient:
        client = self._clients.get(server)
        if client is None:
            raise MCPError(f"Unknown MCP server '{server}'")
        return client

    async def list_tools(self, server: str) -> list[Tool]:
        """Load all tools from one server, following cursor pagination."""
        client = self._client(server)
        tools: list[Tool] = []
        cursor: str | None = None
        try:
            while True:
                result = await client.tools_list(cursor=cursor)
                for item in result.get("tools") or []:
                    if isinstance(item, dict) and str(item.get("name") or "").strip():
                        tools.append(mcp_tool_to_spec(server, item))
                cursor = result.get("nextCursor")
                if not cursor:
                    break
        except MCPError as exc:
            self._server_errors[server] = str(exc)
            raise
        self._server_errors[server] = None
        LOG.info(
            "MCP tools discovered server_id=%s count=%s tools=%s",
            server,
            len(tools),
            ", ".join(tool.function.name for tool in tools) or "(none)",
        )
        return tools

    async def call_tool(self, server: str, tool: str, arguments: dict[str, Any]) -> list[dict[str, Any]]:
        client = self._client(server)
        timeout = client.cfg.tool_call_timeout_seconds
        LOG.info("dispatching MCP tool call server_id=%s tool=%s timeout=%s", server, tool, timeout)
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("MCP tool call args server_id=%s tool=%s args=%s", server, tool, to_bounded_json(arguments))

        try:
            result = await asyncio.wait_for(client.tools_call(tool, arguments), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise MCPError(f"Tool timeout on {server}/{tool} after {timeout}s") from exc

        content = result.get("content")
        blocks = [block for block in content if isinstance(block, dict)] if isinstance(content, list) else []
        if result.get("isError"):
            raise MCPError(flatten_tool_content(blocks) or f"tool {server}/{tool} reported an error")
        if not blocks:
            raise MCPError(f"tool {server}/{tool} returned no content")

        LOG.info("MCP tool call finished server_id=%s tool=%s blocks=%s", server, tool, len(blocks))
        return blocks
