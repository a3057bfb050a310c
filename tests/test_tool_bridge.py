import asyncio
from typing import Any

import pytest

from polyllm.config import MCPServerConfig
from polyllm.mcp_client import MCPClient, MCPError
from polyllm.tool_bridge import (
    MCPToolBridge,
    decode_tool_name,
    encode_tool_name,
    flatten_tool_content,
    parse_tool_directive,
)


class _FakeMCPClient(MCPClient):
    def __init__(self, cfg: MCPServerConfig, pages: list[dict[str, Any]], result: dict[str, Any] | None = None) -> None:
        super().__init__(cfg)
        self.pages = pages
        self.result = result or {"content": [{"type": "text", "text": "ok"}]}
        self.cursors: list[str | None] = []
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.started = False
        self.fail_start = False

    async def start(self) -> None:
        if self.fail_start:
            raise MCPError("spawn failed")
        self.started = True

    async def close(self) -> None:
        self.started = False

    async def _rpc(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        raise AssertionError("not used")

    async def tools_list(self, cursor: str | None = None) -> dict[str, Any]:
        self.cursors.append(cursor)
        return self.pages[len(self.cursors) - 1]

    async def tools_call(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        self.calls.append((name, arguments))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


def _server(server_id: str = "fetch", **overrides: Any) -> MCPServerConfig:
    raw = {"server_id": server_id, "transport": "http", "url": "http://mcp.test/mcp"}
    raw.update(overrides)
    return MCPServerConfig.model_validate(raw)


def _bridge(pages: list[dict[str, Any]], result: Any = None, **server_overrides: Any):
    clients: list[_FakeMCPClient] = []

    def factory(cfg: MCPServerConfig) -> MCPClient:
        clients.append(_FakeMCPClient(cfg, pages, result))
        return clients[-1]

    return MCPToolBridge([_server(**server_overrides)], factory), clients


def test_tool_name_round_trip_keeps_underscores_in_tool() -> None:
    name = encode_tool_name("web-search", "get_page_text")

    assert name == "mcp_web-search_get_page_text"
    assert decode_tool_name(name) == ("web-search", "get_page_text")


@pytest.mark.parametrize("name", ["mcp_fetch", "fetch_get_x", "mcp__get", "mcp_fetch_", "plain"])
def test_decode_rejects_malformed_names(name: str) -> None:
    with pytest.raises(ValueError):
        decode_tool_name(name)


def test_parse_tool_directive() -> None:
    available = ["search", "fetch", "calc"]

    assert parse_tool_directive("mcp=all", available) == ["calc", "fetch", "search"]
    assert parse_tool_directive("mcp=fetch,search", available) == ["fetch", "search"]
    assert parse_tool_directive("temperature=1&mcp=fetch&mcp=calc,fetch", available) == ["fetch", "calc"]
    assert parse_tool_directive("", available) == []
    assert parse_tool_directive("other=1", available) == []


def test_flatten_tool_content_joins_text_blocks_and_trims() -> None:
    blocks = [
        {"type": "text", "text": "  first "},
        {"type": "image", "data": "...", "mimeType": "image/png"},
        {"type": "text", "text": "second  "},
    ]

    assert flatten_tool_content(blocks) == "first second"


def test_list_tools_follows_pagination_and_encodes_names() -> None:
    pages = [
        {"tools": [{"name": "get", "description": " Fetch a URL ", "inputSchema": {"type": "object"}}], "nextCursor": "p2"},
        {"tools": [{"name": "head"}, {"description": "nameless"}]},
    ]
    bridge, clients = _bridge(pages)

    tools = asyncio.run(bridge.list_tools("fetch"))

    assert [t.function.name for t in tools] == ["mcp_fetch_get", "mcp_fetch_head"]
    assert tools[0].function.description == "Fetch a URL"
    assert tools[1].function.parameters == {"type": "object", "properties": {}}
    assert clients[0].cursors == [None, "p2"]


def test_call_tool_returns_blocks_and_raises_on_error_results() -> None:
    bridge, clients = _bridge([], {"content": [{"type": "text", "text": "body"}]})

    blocks = asyncio.run(bridge.call_tool("fetch", "get", {"url": "http://x"}))

    assert blocks == [{"type": "text", "text": "body"}]
    assert clients[0].calls == [("get", {"url": "http://x"})]

    bridge, _ = _bridge([], {"isError": True, "content": [{"type": "text", "text": "404 not found"}]})
    with pytest.raises(MCPError, match="404 not found"):
        asyncio.run(bridge.call_tool("fetch", "get", {}))

    bridge, _ = _bridge([], {"content": []})
    with pytest.raises(MCPError, match="no content"):
        asyncio.run(bridge.call_tool("fetch", "get", {}))


def test_call_tool_unknown_server_and_timeout() -> None:
    bridge, clients = _bridge([], tool_call_timeout_seconds=0.01)

    with pytest.raises(MCPError, match="Unknown MCP server"):
        asyncio.run(bridge.call_tool("nope", "get", {}))

    async def hang(name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        await asyncio.sleep(1)
        return {}

    clients[0].tools_call = hang
    with pytest.raises(MCPError, match="timeout"):
        asyncio.run(bridge.call_tool("fetch", "get", {}))


def test_start_records_failing_server_in_health() -> None:
    bridge, clients = _bridge([])
    clients[0].fail_start = True

    asyncio.run(bridge.start())
    health = bridge.get_health()

    assert health["degraded"] is True
    assert health["mcp_servers"][0]["error"] == "spawn failed"
    assert bridge.server_names() == ["fetch"]
