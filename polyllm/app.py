"""HTTP application for the polyllm gateway.

Exposes an OpenAI-compatible API: model listing across all registered
providers and chat completions with automatic MCP tool rounds.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import urlparse

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .chat_handlers import build_openai_error_payload, build_sse_response, error_response
from .config import GatewayConfig, config_path_from_env, load_config
from .config_reload import ConfigReloadWatcher, service_reloader
from .errors import PolyLLMError
from .gateway_service import GatewayService
from .json_helpers import to_bounded_json
from .logging_utils import setup_logging
from .mcp_client import MCPError
from .schema import ChatCompletionRequest

LOG = logging.getLogger(__name__)


def _bearer_token(request: Request) -> str | None:
    scheme, _, token = request.headers.get("authorization", "").strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token:
        return None
    return token


def _check_client_key(request: Request, cfg: GatewayConfig) -> None:
    """Reject the request unless it carries the configured gateway key."""
    if cfg.service_api_key and _bearer_token(request) != cfg.service_api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing gateway API key")


def _listen_address(cfg: GatewayConfig) -> tuple[str, int]:
    url = urlparse(cfg.service_base_url)
    assert url.hostname is not None and url.port is not None
    return url.hostname, url.port


def create_app(config_path: str | None = None, *, service: GatewayService | None = None) -> FastAPI:
    """Create and configure the FastAPI application instance."""
    config_file = Path(config_path_from_env(config_path))
    if service is None:
        cfg = load_config(str(config_file))
        setup_logging(cfg.logging)
        service = GatewayService(cfg)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        """Application startup/shutdown lifecycle."""
        await service.start()
        reload_task: asyncio.Task[None] | None = None
        if config_file.parent.is_dir():
            watcher = ConfigReloadWatcher(config_file, service_reloader(service))
            reload_task = asyncio.create_task(watcher.run_forever())
        try:
            yield
        finally:
            if reload_task:
                reload_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await reload_task
            await service.close()

    app = FastAPI(title="polyllm", version="0.1.0", lifespan=lifespan)

    @app.get("/healthz")
    async def healthz() -> JSONResponse:
        return JSONResponse(
            {
                "service": "polyllm",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                **service.health(),
            }
        )

    @app.get("/v1/models")
    @app.get("/models")
    async def list_models(request: Request) -> JSONResponse:
        """OpenAI-compatible model listing endpoint."""
        _check_client_key(request, service.cfg)
        return JSONResponse(await service.list_models())

    @app.post("/v1/chat/completions")
    @app.post("/chat/completions")
    async def chat_completions(request: Request):
        """OpenAI-compatible chat completions endpoint."""
        _check_client_key(request, service.cfg)
        try:
            payload = await request.json()
            chat_request = ChatCompletionRequest.model_validate(payload)
        except (json.JSONDecodeError, ValidationError) as exc:
            return JSONResponse(
                build_openai_error_payload(f"invalid chat completion request: {exc}", code=400),
                status_code=400,
            )
        LOG.debug("incoming chat.completions request payload=%s", to_bounded_json(payload))

        if chat_request.stream:
            return build_sse_response(service.stream_chat(chat_request))

        try:
            response = await service.complete(chat_request)
        except (PolyLLMError, MCPError) as exc:
            return error_response(exc)
        return JSONResponse(response.to_wire())

    return app


def main(argv: list[str] | None = None) -> None:
    """Run the gateway under uvicorn at the configured service_base_url."""
    import uvicorn

    parser = argparse.ArgumentParser(prog="polyllm-server", description="OpenAI-compatible multi-provider LLM gateway")
    parser.add_argument("--config", default=None, help="Config YAML (default: $POLYLLM_CONFIG or polyllm.yaml)")
    args = parser.parse_args(argv)

    try:
        cfg = load_config(args.config)
    except ValidationError as exc:
        print(f"ERROR: Invalid configuration: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc
    except (OSError, ValueError) as exc:
        print(f"ERROR: Failed to load configuration: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    setup_logging(cfg.logging)
    app = create_app(args.config, service=GatewayService(cfg))
    host, port = _listen_address(cfg)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
