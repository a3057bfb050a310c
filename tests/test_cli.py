import asyncio
import functools
import io

import pytest

import polyllm.cli as cli
from polyllm.config import GatewayConfig, ProviderConfig
from polyllm.errors import RequestFailedError
from polyllm.gateway_service import GatewayService
from polyllm.schema import ChatCompletionResponse, Model, StreamEvent
from polyllm.upstream import LLMClient


class _WordClient(LLMClient):
    async def list_models(self) -> list[Model]:
        return []

    async def chat_completion(self, request):
        if request.messages[-1].content == "boom":
            yield StreamEvent(error=RequestFailedError("backend down"))
            return
        for word in ("Hello", " world"):
            yield StreamEvent(
                response=ChatCompletionResponse.model_validate({"choices": [{"index": 0, "delta": {"content": word}}]})
            )
        yield StreamEvent(done=True)


@pytest.fixture
def cfg(tmp_path, monkeypatch) -> GatewayConfig:
    monkeypatch.setattr(cli, "GatewayService", functools.partial(GatewayService, client_factory=_WordClient, environ={}))
    provider = ProviderConfig(name="local", base_url="http://b/v1", api_key="k", models=["m1", "m2"])
    return GatewayConfig(include_builtin_providers=False, model_cache_dir=str(tmp_path), providers=[provider])


def test_models_command_prints_one_id_per_line(cfg) -> None:
    out = io.StringIO()

    assert asyncio.run(cli.list_models(cfg, out=out)) == 0
    assert out.getvalue() == "m1\nm2\n"


def test_models_command_rejects_unknown_provider(cfg, capsys) -> None:
    assert asyncio.run(cli.list_models(cfg, "nope", out=io.StringIO())) == 1
    assert "ProviderNotFound" in capsys.readouterr().err


def test_chat_once_streams_text(cfg) -> None:
    out = io.StringIO()

    code = asyncio.run(cli.chat_once(cfg, model="m1", prompt="hi", system="be brief", out=out))

    assert code == 0
    assert out.getvalue() == "Hello world\n"


def test_chat_once_reports_errors(cfg, capsys) -> None:
    out = io.StringIO()

    code = asyncio.run(cli.chat_once(cfg, model="m1", prompt="boom", out=out))

    assert code == 1
    assert "RequestFailed: backend down" in capsys.readouterr().err


def test_parser_requires_model_for_chat() -> None:
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["chat", "hello"])

    args = cli.build_parser().parse_args(["--config", "x.yaml", "chat", "-m", "gpt-4?mcp=all", "-"])
    assert (args.config, args.model, args.prompt, args.no_stream) == ("x.yaml", "gpt-4?mcp=all", "-", False)
