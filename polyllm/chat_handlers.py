"""SSE encoding and error mapping for the HTTP surface."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator

from fastapi.responses import JSONResponse, StreamingResponse

from .errors import PolyLLMError
from .mcp_client import MCPError

SSE_DONE = b"data: [DONE]\n\n"


def sse_data(payload: dict[str, Any]) -> bytes:
    """Encode one SSE `data:` event."""
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")


def build_sse_response(stream: AsyncIterator[bytes]) -> StreamingResponse:
    """Build standard SSE response with consistent proxy-safe headers."""
    return StreamingResponse(
        stream,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


def build_openai_error_payload(message: str, *, code: str | int, error_type: str = "invalid_request_error") -> dict[str, Any]:
    """Build OpenAI-style error response payload."""
    return {"error": {"message": message, "type": error_type, "code": code}}


def error_status(exc: Exception) -> int:
    if isinstance(exc, PolyLLMError):
        return exc.http_status
    if isinstance(exc, MCPError):
        return 502
    return 500


def error_response(exc: Exception) -> JSONResponse:
    """Map a gateway error to an OpenAI-style JSON error response."""
    if isinstance(exc, PolyLLMError):
        payload = exc.as_payload()
    else:
        payload = build_openai_error_payload(str(exc), code=error_status(exc), error_type="server_error")
    return JSONResponse(payload, status_code=error_status(exc))
