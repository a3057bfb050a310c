"""Command line interface: run the server, list models, or chat once."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import TextIO

from pydantic import ValidationError

from .config import GatewayConfig, load_config
from .errors import PolyLLMError
from .gateway_service import GatewayService
from .logging_utils import setup_logging
from .schema import ChatCompletionMessage, ChatCompletionRequest, StreamEvent

LOG = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="polyllm", description="Unified gateway for OpenAI-compatible LLM providers")
    parser.add_argument("--config", default=None, help="Path to config YAML")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the HTTP gateway")
    models = sub.add_parser("models", help="List models of all configured providers")
    models.add_argument("-p", "--provider", default=None, help="Only list this provider's models")

    chat = sub.add_parser("chat", help="Send one prompt and print the answer")
    chat.add_argument("prompt", help="User message; '-' reads stdin")
    chat.add_argument("-m", "--model", required=True, help="Model id, optionally with a directive like '?mcp=all'")
    chat.add_argument("-s", "--system", default=None, help="Optional system prompt")
    chat.add_argument("--no-stream", action="store_true", help="Wait for the complete answer")
    return parser


def _event_text(event: StreamEvent) -> str:
    if event.response is None:
        return ""
    choice = event.response.primary_choice()
    if choice is None:
        return ""
    carrier = choice.delta or choice.message
    content = carrier.content if carrier else None
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(part.get("text", "") for part in content if isinstance(part, dict))
    return ""


async def list_models(cfg: GatewayConfig, provider: str | None = None, out: TextIO = sys.stdout) -> int:
    service = GatewayService(cfg)
    await service.start()
    try:
        payload = await service.list_models(provider)
    except PolyLLMError as exc:
        print(f"ERROR: {exc.kind}: {exc}", file=sys.stderr)
        return 1
    finally:
        await service.close()
    for model in payload["data"]:
        print(model["id"], file=out)
    return 0


async def chat_once(
    cfg: GatewayConfig,
    *,
    model: str,
    prompt: str,
    system: str | None = None,
    stream: bool = True,
    out: TextIO = sys.stdout,
) -> int:
    messages = []
    if system:
        messages.append(ChatCompletionMessage(role="system", content=system))
    messages.append(ChatCompletionMessage(role="user", content=prompt))
    request = ChatCompletionRequest(model=model, messages=messages, stream=stream)

    service = GatewayService(cfg)
    await service.start()
    failure: PolyLLMError | None = None

    def on_event(event: StreamEvent) -> None:
        nonlocal failure
        if event.error is not None:
            failure = event.error
            return
        text = _event_text(event)
        if text:
            out.write(text)
            out.flush()

    try:
        await service.orchestrator.chat_completion(request, on_event)
    finally:
        await service.close()
    out.write("\n")

    if failure is not None:
        print(f"ERROR: {failure.kind}: {failure}", file=sys.stderr)
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "serve":
        from .app import main as serve_main

        serve_main(["--config", args.config] if args.config else [])
        return 0

    try:
        cfg = load_config(args.config)
    except (ValidationError, OSError, ValueError) as exc:
        print(f"ERROR: Invalid configuration: {exc}", file=sys.stderr)
        return 2
    setup_logging(cfg.logging)

    if args.command == "models":
        return asyncio.run(list_models(cfg, args.provider))

    prompt = sys.stdin.read() if args.prompt == "-" else args.prompt
    return asyncio.run(
        chat_once(cfg, model=args.model, prompt=prompt, system=args.system, stream=not args.no_stream)
    )


if __name__ == "__main__":
    raise SystemExit(main())
