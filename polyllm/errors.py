"""Error taxonomy shared by the registry, backends, and orchestrator."""

from __future__ import annotations

from typing import Any


class PolyLLMError(Exception):
    """Base class for every gateway error carried in a stream event."""

    kind = "Error"
    http_status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def as_payload(self) -> dict[str, Any]:
        """Render the OpenAI-style error body."""
        return {
            "error": {
                "message": self.message,
                "type": self.kind,
                "code": self.http_status,
            }
        }


class ProviderNotFoundError(PolyLLMError):
    kind = "ProviderNotFound"
    http_status = 404


class ModelNotFoundError(PolyLLMError):
    kind = "ModelNotFound"
    http_status = 404


class InvalidConfigurationError(PolyLLMError):
    kind = "InvalidConfiguration"
    http_status = 500


class APIKeyNotSetError(PolyLLMError):
    kind = "APIKeyNotSet"
    http_status = 500


class RequestFailedError(PolyLLMError):
    """A backend call returned a non-success status or broke mid-transfer."""

    kind = "RequestFailed"
    http_status = 502

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class UnsupportedOperationError(PolyLLMError):
    kind = "UnsupportedOperation"
    http_status = 400


class ToolLoopExceededError(UnsupportedOperationError):
    """Raised when a conversation keeps requesting tools past the round limit."""

    def __init__(self, max_rounds: int) -> None:
        super().__init__(f"Maximum tool rounds reached ({max_rounds})")
        self.max_rounds = max_rounds
