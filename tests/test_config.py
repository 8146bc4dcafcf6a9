import pytest

from vaultbridge.cli import build_parser, generate_token
from vaultbridge.mcp.utils.config import (
    EmbeddedConfig,
    HostLinkConfig,
    RelayConfig,
    validate_config,
    validate_relay_config,
)


def test_embedded_config_from_env(monkeypatch) -> None:
    monkeypatch.setenv("VAULTBRIDGE_VAULT", "/notes")
    monkeypatch.setenv("VAULTBRIDGE_HOST", "0.0.0.0")
    monkeypatch.setenv("VAULTBRIDGE_PORT", "5000")
    monkeypatch.setenv("VAULTBRIDGE_AUTH_TOKEN", "secret")

    config = EmbeddedConfig.from_env()
    assert config.vault_path == "/notes"
    assert config.port == 5000
    assert config.auth_token == "secret"
    assert config.network_access is True


def test_relay_config_defaults(monkeypatch) -> None:
    for name in ("HOST", "WS_PORT", "HTTP_PORT", "VAULTBRIDGE_REQUEST_TIMEOUT"):
        monkeypatch.delenv(name, raising=False)
    config = RelayConfig.from_env()
    assert (config.ws_port, config.http_port) == (4124, 4125)
    assert config.request_timeout == 30.0


def test_bad_numbers_in_env(monkeypatch) -> None:
    monkeypatch.setenv("WS_PORT", "many")
    with pytest.raises(ValueError, match="WS_PORT"):
        RelayConfig.from_env()


def test_host_link_config_from_env(monkeypatch) -> None:
    monkeypatch.delenv("VAULTBRIDGE_RELAY_URL", raising=False)
    monkeypatch.setenv("VAULTBRIDGE_MAX_RECONNECT_ATTEMPTS", "4")
    config = HostLinkConfig.from_env()
    assert config.url == "ws://127.0.0.1:4124/mcp"
    assert config.max_reconnect_attempts == 4
    assert config.reconnect_interval == 5.0


def test_network_access_needs_a_token() -> None:
    result = validate_config(70000, network_access=True, auth_token="")
    assert not result
    assert any("token" in error for error in result.errors)
    assert any("65535" in error for error in result.errors)


def test_relay_ports_must_differ() -> None:
    result = validate_relay_config(RelayConfig(ws_port=80, http_port=80, request_timeout=0))
    assert not result
    assert len(result.errors) >= 3


def test_cli_parses_commands() -> None:
    parser = build_parser()
    args = parser.parse_args(["serve", "--vault", "v", "--plugin", "a=m:x", "--plugin", "b=m:y"])
    assert args.vault == "v"
    assert args.plugin == ["a=m:x", "b=m:y"]

    args = parser.parse_args(["--debug", "call", "vault_get_note", "--args", '{"path": "a.md"}'])
    assert args.debug is True
    assert args.name == "vault_get_note"
    assert args.url == "http://127.0.0.1:4123/mcp"


def test_generate_token() -> None:
    token = generate_token()
    assert len(token) == 32
    assert token.isalnum()
    assert generate_token() != token
