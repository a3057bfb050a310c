import pytest
from pydantic import ValidationError

from polyllm.config import BUILTIN_PROVIDERS, GatewayConfig, ProviderConfig, load_config, parse_model_alias
from polyllm.errors import InvalidConfigurationError


def test_load_config_merges_yaml_and_env(tmp_path, monkeypatch) -> None:
    cfg_file = tmp_path / "polyllm.yaml"
    cfg_file.write_text(
        """
service_base_url: http://0.0.0.0:9000
include_builtin_providers: false
providers:
  - name: local
    base_url: http://localhost:11434/v1
    api_key: none
    models: [llama3]
mcp_servers:
  - server_id: fetch
    transport: stdio
    command: uvx
    args: [mcp-server-fetch]
logging:
  level: DEBUG
""",
        encoding="utf-8",
    )
    monkeypatch.setenv("POLYLLM_MAX_TOOL_ROUNDS", "3")
    monkeypatch.setenv("POLYLLM_LOG_JSON", "yes")

    cfg = load_config(str(cfg_file))

    assert cfg.service_base_url == "http://0.0.0.0:9000"
    assert cfg.max_tool_rounds == 3
    assert cfg.logging.level == "DEBUG"
    assert cfg.logging.json_logs is True
    assert [p.name for p in cfg.effective_providers()] == ["local"]
    assert cfg.mcp_servers[0].args == ["mcp-server-fetch"]


def test_missing_config_file_gives_defaults(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("POLYLLM_MAX_TOOL_ROUNDS", raising=False)

    cfg = load_config(str(tmp_path / "absent.yaml"))

    assert cfg.max_tool_rounds == 8
    assert [p.name for p in cfg.effective_providers()] == [p.name for p in BUILTIN_PROVIDERS]


def test_configured_provider_replaces_builtin_in_place() -> None:
    cfg = GatewayConfig(
        providers=[
            ProviderConfig(name="extra", base_url="http://x/v1"),
            ProviderConfig(name="deepseek", base_url="http://proxy/v1", model_prefix="ds/"),
        ]
    )

    providers = cfg.effective_providers()
    names = [p.name for p in providers]

    assert names.index("deepseek") == 1
    assert providers[1].base_url == "http://proxy/v1"
    assert names[-1] == "extra"
    assert names.count("deepseek") == 1


@pytest.mark.parametrize(
    "raw",
    [
        {"service_base_url": "http://localhost"},
        {"max_tool_rounds": 0},
        {"providers": [{"name": "a"}, {"name": "a"}]},
        {"mcp_servers": [{"server_id": "web_search", "transport": "http", "url": "http://x"}]},
        {"mcp_servers": [{"server_id": "fetch", "transport": "stdio"}]},
        {"unknown_field": 1},
    ],
)
def test_invalid_configs_are_rejected(raw: dict) -> None:
    with pytest.raises(ValidationError):
        GatewayConfig.model_validate(raw)


def test_provider_env_overrides_only_apply_with_prefix() -> None:
    provider = ProviderConfig(name="qwen", env_prefix="QWEN_", base_url="http://default/v1")
    environ = {"QWEN_BASE_URL": "http://override/v1", "QWEN_API_KEY": " sk ", "QWEN_TIMEOUT": "1.5"}

    updated = provider.with_env_overrides(environ)

    assert updated.base_url == "http://override/v1"
    assert updated.api_key == "sk"
    assert updated.timeout_seconds == 1.5
    assert provider.api_key is None
    assert ProviderConfig(name="plain").with_env_overrides(environ).api_key is None


def test_parse_model_alias() -> None:
    assert parse_model_alias("a:model-a, b:org/model-b,") == {"a": "model-a", "b": "org/model-b"}
    with pytest.raises(InvalidConfigurationError):
        parse_model_alias("broken")


@pytest.mark.parametrize("raw", ["abc", "0", "-2"])
def test_provider_timeout_override_must_be_positive_seconds(raw: str) -> None:
    provider = ProviderConfig(name="qwen", env_prefix="QWEN_")

    with pytest.raises(InvalidConfigurationError, match="QWEN_TIMEOUT"):
        provider.with_env_overrides({"QWEN_TIMEOUT": raw})
