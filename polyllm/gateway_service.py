"""Gateway service runtime: owns the registry, tool bridge and orchestrator."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Callable, Mapping

from .chat_handlers import SSE_DONE, sse_data
from .config import GatewayConfig, MCPServerConfig, ProviderConfig
from .errors import RequestFailedError
from .mcp_client import MCPClient, build_mcp_client
from .model_cache import ModelCache
from .orchestrator import CompletionOrchestrator
from .providers import ProviderRegistry, RegistrationResult
from .schema import ChatCompletionRequest, ChatCompletionResponse
from .tool_bridge import MCPToolBridge
from .upstream import LLMClient, build_client

LOG = logging.getLogger(__name__)


class _Runtime:
    """One configuration's worth of live components."""

    def __init__(
        self,
        cfg: GatewayConfig,
        client_factory: Callable[[ProviderConfig], LLMClient],
        mcp_client_factory: Callable[[MCPServerConfig], MCPClient],
        environ: Mapping[str, str] | None,
    ) -> None:
        self.cfg = cfg
        self.cache = ModelCache(cfg.model_cache_dir)
        self.registry = ProviderRegistry(
            self.cache,
            client_factory,
            concurrency=cfg.registration_concurrency,
            environ=environ,
        )
        self.bridge = MCPToolBridge(cfg.mcp_servers, mcp_client_factory)
        self.orchestrator = CompletionOrchestrator(
            self.registry,
            self.bridge,
            max_tool_rounds=cfg.max_tool_rounds,
            max_tool_concurrency=cfg.max_tool_concurrency,
        )
        self.registration_results: list[RegistrationResult] = []

    async def start(self) -> None:
        await self.bridge.start()
        self.registration_results = await self.registry.register_all(self.cfg.effective_providers())
        registered = [result.provider for result in self.registration_results if result.ok]
        LOG.info("providers registered count=%s names=%s", len(registered), ", ".join(registered) or "(none)")

    async def close(self) -> None:
        await self.bridge.close()
        await self.registry.close()


class GatewayService:
    """Runtime container exposed to the HTTP app and the CLI."""

    def __init__(
        self,
        cfg: GatewayConfig,
        *,
        client_factory: Callable[[ProviderConfig], LLMClient] = build_client,
        mcp_client_factory: Callable[[MCPServerConfig], MCPClient] = build_mcp_client,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._client_factory = client_factory
        self._mcp_client_factory = mcp_client_factory
        self._environ = environ
        self._runtime = self._build(cfg)

    def _build(self, cfg: GatewayConfig) -> _Runtime:
        return _Runtime(cfg, self._client_factory, self._mcp_client_factory, self._environ)

    @property
    def cfg(self) -> GatewayConfig:
        return self._runtime.cfg

    @property
    def registry(self) -> ProviderRegistry:
        return self._runtime.registry

    @property
    def orchestrator(self) -> CompletionOrchestrator:
        return self._runtime.orchestrator

    @property
    def registration_results(self) -> list[RegistrationResult]:
        return self._runtime.registration_results

    async def start(self) -> None:
        await self._runtime.start()

    async def close(self) -> None:
        await self._runtime.close()

    async def reload(self, new_cfg: GatewayConfig) -> None:
        """Start components for ``new_cfg``, swap them in, then close the old ones.

        If the new components fail to start, the current ones stay active.
        """
        fresh = self._build(new_cfg)
        try:
            await fresh.start()
        except Exception:
            await fresh.close()
            raise
        old, self._runtime = self._runtime, fresh
        await old.close()

    def health(self) -> dict[str, Any]:
        runtime = self._runtime
        return {
            **runtime.bridge.get_health(),
            "providers": runtime.registry.provider_names,
            "models": len(runtime.registry.model_ids()),
        }

    async def list_models(self, provider: str | None = None) -> dict[str, Any]:
        """Return the OpenAI-compatible `/models` payload, optionally for one provider."""
        registry = self._runtime.registry
        models = await (registry.provider_models(provider) if provider else registry.list_models())
        return {"object": "list", "data": [model.to_wire() for model in models]}

    async def complete(self, request: ChatCompletionRequest) -> ChatCompletionResponse:
        """Run a non-streaming request; return the final response or raise its error."""
        request = request.model_copy(update={"stream": False})
        final: ChatCompletionResponse | None = None
        async for event in self._runtime.orchestrator.stream_chat_completion(request):
            if event.error is not None:
                raise event.error
            if event.response is not None:
                final = event.response
        if final is None:
            raise RequestFailedError("backend finished without a response")
        return final

    async def stream_chat(self, request: ChatCompletionRequest) -> AsyncIterator[bytes]:
        """Encode the event sequence as SSE: chunks, then `[DONE]` or one error payload."""
        request = request.model_copy(update={"stream": True})
        async for event in self._runtime.orchestrator.stream_chat_completion(request):
            if event.error is not None:
                LOG.info("chat stream ended with error kind=%s error=%s", event.error.kind, event.error)
                yield sse_data(event.error.as_payload())
                return
            if event.response is not None:
                yield sse_data(event.response.to_wire())
            if event.done:
                yield SSE_DONE
                return
