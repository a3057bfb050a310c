import asyncio
import json

import httpx
import pytest

from polyllm.config import ProviderConfig
from polyllm.errors import APIKeyNotSetError, RequestFailedError
from polyllm.schema import ChatCompletionMessage, ChatCompletionRequest
from polyllm.upstream import OpenAICompatibleClient


def _provider(**overrides: object) -> ProviderConfig:
    raw = {"name": "deepseek", "base_url": "http://backend.test/v1", "api_key": "sk-test", "model_prefix": "deepseek/"}
    raw.update(overrides)
    return ProviderConfig.model_validate(raw)


def _request(stream: bool) -> ChatCompletionRequest:
    return ChatCompletionRequest(
        model="deepseek-chat",
        messages=[ChatCompletionMessage(role="user", content="Hi")],
        stream=stream,
        temperature=0.2,
    )


def _run(client: OpenAICompatibleClient, request: ChatCompletionRequest) -> list:
    async def collect() -> list:
        try:
            return [event async for event in client.chat_completion(request)]
        finally:
            await client.close()

    return asyncio.run(collect())


def _sse(*lines: str) -> bytes:
    return "".join(f"{line}\n\n" for line in lines).encode("utf-8")


def test_missing_api_key_is_rejected() -> None:
    with pytest.raises(APIKeyNotSetError):
        OpenAICompatibleClient(_provider(api_key=None))


def test_list_models_prefixes_ids_and_sends_bearer() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"object": "list", "data": [{"id": "deepseek-chat", "owned_by": "ds"}]})

    client = OpenAICompatibleClient(_provider(), transport=httpx.MockTransport(handler))

    models = asyncio.run(client.list_models())
    asyncio.run(client.close())

    assert [(m.id, m.name, m.owned_by) for m in models] == [("deepseek/deepseek-chat", "deepseek-chat", "ds")]
    assert seen[0].url.path == "/v1/models"
    assert seen[0].headers["authorization"] == "Bearer sk-test"


def test_list_models_skips_malformed_entries() -> None:
    body = {"data": [{"id": "good"}, {"id": "fractional", "created": 1.5}, {"id": 7}, {"object": "model"}]}
    client = OpenAICompatibleClient(_provider(), transport=httpx.MockTransport(lambda request: httpx.Response(200, json=body)))

    models = asyncio.run(client.list_models())

    assert [m.id for m in models] == ["deepseek/good"]


def test_list_models_http_error_raises_request_failed() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(401, json={"error": {"message": "bad key"}}))
    client = OpenAICompatibleClient(_provider(), transport=transport)

    with pytest.raises(RequestFailedError, match="bad key") as excinfo:
        asyncio.run(client.list_models())

    assert excinfo.value.status_code == 401


def test_non_stream_returns_single_terminal_with_response() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "id": "x",
                "object": "chat.completion",
                "choices": [{"index": 0, "message": {"role": "assistant", "content": "Hello"}, "finish_reason": "stop"}],
                "usage": {"total_tokens": 5},
            },
        )

    events = _run(OpenAICompatibleClient(_provider(), transport=httpx.MockTransport(handler)), _request(False))

    assert len(events) == 1
    assert events[0].done and events[0].response.choices[0].message.content == "Hello"
    assert events[0].response.to_wire()["usage"] == {"total_tokens": 5}
    assert bodies[0]["stream"] is False
    assert bodies[0]["temperature"] == 0.2
    assert "tools" not in bodies[0]


def test_stream_yields_chunks_then_done() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["accept"] == "text/event-stream"
        body = _sse(
            ": keep-alive",
            'data: {"id":"x","choices":[{"index":0,"delta":{"content":"Hel"}}]}',
            'data: {"id":"x","choices":[{"index":0,"delta":{"content":"lo"},"finish_reason":"stop"}]}',
            "data: [DONE]",
        )
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    events = _run(OpenAICompatibleClient(_provider(), transport=httpx.MockTransport(handler)), _request(True))

    assert [e.response.choices[0].delta.content for e in events[:-1]] == ["Hel", "lo"]
    assert events[-1].done and events[-1].response is None


def test_stream_without_done_marker_still_terminates() -> None:
    body = _sse('data: {"choices":[{"index":0,"delta":{"content":"x"}}]}')
    transport = httpx.MockTransport(lambda request: httpx.Response(200, content=body))

    events = _run(OpenAICompatibleClient(_provider(), transport=transport), _request(True))

    assert len(events) == 2
    assert events[-1].done


def test_stream_bad_json_ends_with_error() -> None:
    body = _sse('data: {"choices":[{"index":0,"delta":{"content":"x"}}]}', "data: {oops", "data: [DONE]")
    transport = httpx.MockTransport(lambda request: httpx.Response(200, content=body))

    events = _run(OpenAICompatibleClient(_provider(), transport=transport), _request(True))

    assert len(events) == 2
    assert isinstance(events[-1].error, RequestFailedError)
    assert not events[-1].done


def test_stream_http_status_becomes_request_failed_event() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(429, json={"error": {"message": "slow down"}}))

    events = _run(OpenAICompatibleClient(_provider(), transport=transport), _request(True))

    assert len(events) == 1
    assert events[0].error.status_code == 429
    assert "slow down" in str(events[0].error)


def test_connect_error_becomes_error_event() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    events = _run(OpenAICompatibleClient(_provider(), transport=httpx.MockTransport(handler)), _request(False))

    assert len(events) == 1
    assert events[0].error.kind == "RequestFailed"


def test_non_utf8_body_becomes_error_event() -> None:
    body = b'{"choices":[{"index":0,"message":{"role":"assistant","content":"\xff\xfe"}}]}'
    transport = httpx.MockTransport(lambda request: httpx.Response(200, content=body))

    events = _run(OpenAICompatibleClient(_provider(), transport=transport), _request(False))

    assert len(events) == 1
    assert isinstance(events[0].error, RequestFailedError)
    assert not events[0].done


def test_non_utf8_model_list_raises_request_failed() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(200, content=b'{"data":[{"id":"\xff"}]}'))
    client = OpenAICompatibleClient(_provider(), transport=transport)

    with pytest.raises(RequestFailedError, match="invalid model list"):
        asyncio.run(client.list_models())
