"""Provider registration and model-to-provider resolution."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Mapping

from .config import ProviderConfig
from .errors import APIKeyNotSetError, InvalidConfigurationError, ModelNotFoundError, ProviderNotFoundError
from .model_cache import ModelCache
from .schema import Model
from .upstream import LLMClient, build_client

LOG = logging.getLogger(__name__)

QUALIFIED_SEPARATOR = ":"
DIRECTIVE_SEPARATOR = "?"


@dataclass
class RegistrationResult:
    """Outcome of registering one provider."""

    provider: str
    models: list[str] = field(default_factory=list)
    collisions: list[str] = field(default_factory=list)
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class Resolution:
    """Where a public model string is served and under which backend name."""

    client: LLMClient
    provider: ProviderConfig
    backend_model: str
    directive: str


@dataclass
class _Binding:
    provider: ProviderConfig
    client: LLMClient
    public_id: str


def static_models(provider: ProviderConfig) -> list[Model]:
    """Models declared in configuration: plain ids, then alias names."""
    models = [Model(id=model_id, name=model_id, owned_by=provider.name) for model_id in provider.models]
    models.extend(
        Model(id=alias, name=backend, owned_by=provider.name) for alias, backend in provider.model_alias.items()
    )
    return models


def backend_model_name(provider: ProviderConfig, public_id: str) -> str:
    """Translate a public model id into the name the provider expects."""
    if public_id in provider.model_alias:
        return provider.model_alias[public_id]
    if provider.model_prefix and public_id.startswith(provider.model_prefix):
        return public_id[len(provider.model_prefix):]
    return public_id


class ProviderRegistry:
    """Maps public model ids to the provider and client that serve them.

    When two providers expose the same id the first registration keeps it;
    every model also stays reachable as ``<provider>:<model-id>``.
    """

    def __init__(
        self,
        cache: ModelCache,
        client_factory: Callable[[ProviderConfig], LLMClient] = build_client,
        *,
        concurrency: int = 4,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._cache = cache
        self._client_factory = client_factory
        self._concurrency = max(1, concurrency)
        self._environ = environ
        self._providers: dict[str, tuple[ProviderConfig, LLMClient]] = {}
        self._models: dict[str, _Binding] = {}

    @property
    def provider_names(self) -> list[str]:
        return list(self._providers)

    def model_ids(self) -> list[str]:
        """Registered public model ids, without the provider-qualified forms."""
        return [model_id for model_id, binding in self._models.items() if binding.public_id == model_id]

    async def _model_list(self, provider: ProviderConfig, client: LLMClient) -> list[Model]:
        declared = static_models(provider)
        if declared:
            return declared
        return await self._cache.cached_models(provider.name, client.list_models)

    async def _prepare(self, provider: ProviderConfig) -> tuple[ProviderConfig, LLMClient, list[Model]]:
        cfg = provider.with_env_overrides(self._environ)
        if not cfg.api_key:
            raise APIKeyNotSetError(f"API key not set for provider '{cfg.name}'")
        if cfg.name in self._providers:
            raise InvalidConfigurationError(f"provider '{cfg.name}' is already registered")
        client = self._client_factory(cfg)
        try:
            models = await self._model_list(cfg, client)
        except BaseException:
            await client.close()
            raise
        return cfg, client, models

    def _apply(self, cfg: ProviderConfig, client: LLMClient, models: list[Model]) -> RegistrationResult:
        result = RegistrationResult(provider=cfg.name)
        self._providers[cfg.name] = (cfg, client)
        for model in models:
            existing = self._models.get(model.id)
            if existing is not None and existing.provider.name != cfg.name:
                result.collisions.append(model.id)
                LOG.warning(
                    "model id collision model=%s kept_provider=%s rejected_provider=%s",
                    model.id,
                    existing.provider.name,
                    cfg.name,
                )
            elif existing is None:
                self._models[model.id] = _Binding(cfg, client, model.id)
                result.models.append(model.id)
            qualified = f"{cfg.name}{QUALIFIED_SEPARATOR}{model.id}"
            self._models.setdefault(qualified, _Binding(cfg, client, model.id))
        LOG.info(
            "provider registered name=%s models=%s collisions=%s",
            cfg.name,
            len(result.models),
            len(result.collisions),
        )
        return result

    @staticmethod
    def _failed(provider: ProviderConfig, exc: Exception) -> RegistrationResult:
        if isinstance(exc, APIKeyNotSetError):
            LOG.debug("skipping provider without API key name=%s", provider.name)
        else:
            LOG.warning("provider registration failed name=%s error=%s", provider.name, exc)
        return RegistrationResult(provider=provider.name, error=exc)

    async def register(self, provider: ProviderConfig) -> RegistrationResult:
        """Register one provider; failures are reported in the result."""
        try:
            cfg, client, models = await self._prepare(provider)
        except Exception as exc:
            return self._failed(provider, exc)
        return self._apply(cfg, client, models)

    async def register_all(self, providers: list[ProviderConfig]) -> list[RegistrationResult]:
        """Register providers, loading model lists concurrently.

        Mappings are applied in the given order once every load finished, so
        collision outcomes do not depend on network timing.
        """
        semaphore = asyncio.Semaphore(self._concurrency)

        async def prepare(provider: ProviderConfig) -> tuple[ProviderConfig, LLMClient, list[Model]]:
            async with semaphore:
                return await self._prepare(provider)

        outcomes = await asyncio.gather(*(prepare(p) for p in providers), return_exceptions=True)
        results: list[RegistrationResult] = []
        for provider, outcome in zip(providers, outcomes):
            if isinstance(outcome, Exception):
                results.append(self._failed(provider, outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(self._apply(*outcome))
        return results

    def resolve(self, model_string: str) -> Resolution:
        """Resolve ``<model-id>[?<directive>]`` to a client and backend model name."""
        model_id, _, directive = model_string.partition(DIRECTIVE_SEPARATOR)
        binding = self._models.get(model_id)
        if binding is None:
            raise ModelNotFoundError(f"model '{model_id}' not found")
        return Resolution(
            client=binding.client,
            provider=binding.provider,
            backend_model=backend_model_name(binding.provider, binding.public_id),
            directive=directive,
        )

    async def provider_models(self, name: str) -> list[Model]:
        """List one registered provider's models; its failures propagate."""
        entry = self._providers.get(name)
        if entry is None:
            raise ProviderNotFoundError(f"provider '{name}' is not registered")
        return await self._model_list(*entry)

    async def list_models(self) -> list[Model]:
        """List models of all registered providers, skipping providers that fail."""
        seen: set[str] = set()
        out: list[Model] = []
        for name, (cfg, client) in self._providers.items():
            try:
                models = await self._model_list(cfg, client)
            except Exception as exc:
                LOG.warning("listing models failed provider=%s error=%s", name, exc)
                continue
            for model in models:
                if model.id not in seen:
                    seen.add(model.id)
                    out.append(model)
        return out

    async def close(self) -> None:
        for name, (_cfg, client) in self._providers.items():
            try:
                await client.close()
            except Exception as exc:
                LOG.debug("closing client failed provider=%s error=%s", name, exc)
        self._providers.clear()
        self._models.clear()
