import pytest

from roomlink.config import (
    ClientRuntimeConfig,
    HubRuntimeConfig,
    apply_config_data,
    apply_env,
    load_toml,
)


def test_apply_config_data_reads_section_and_logging() -> None:
    data = {
        "hub": {"health_port": 6000, "cors_origin": "https://chat.example"},
        "logging": {"level": "DEBUG", "file": ""},
        "config_path": "/elsewhere.toml",
        "unknown_key": 1,
    }
    cfg = apply_config_data(HubRuntimeConfig(config_path="/etc/roomlinkd.toml"), data)
    assert cfg.health_port == 6000
    assert cfg.cors_origin == "https://chat.example"
    assert cfg.log_level == "DEBUG"
    assert cfg.log_file is None
    assert cfg.config_path == "/etc/roomlinkd.toml"


def test_apply_config_data_client_section() -> None:
    data = {"client": {"relay_destination": "ab" * 16, "encrypt_direct": False}}
    cfg = apply_config_data(ClientRuntimeConfig(), data, section="client")
    assert cfg.relay_destination == "ab" * 16
    assert cfg.encrypt_direct is False


def test_env_overrides() -> None:
    env = {
        "ROOMLINK_CORS_ORIGIN": "https://chat.example",
        "ROOMLINK_HEALTH_PORT": "7000",
        "ROOMLINK_LOG_LEVEL": "debug",
        "ROOMLINK_RELAY_DESTINATION": "cd" * 16,
    }
    hub = apply_env(HubRuntimeConfig(), env)
    assert hub.cors_origin == "https://chat.example"
    assert hub.health_port == 7000
    assert hub.log_level == "debug"

    client = apply_env(ClientRuntimeConfig(), env)
    assert client.relay_destination == "cd" * 16
    assert client.log_level == "debug"


def test_env_ignores_blank_values() -> None:
    cfg = apply_env(HubRuntimeConfig(), {"ROOMLINK_HEALTH_PORT": "  "})
    assert cfg.health_port == HubRuntimeConfig().health_port


def test_env_rejects_bad_numbers() -> None:
    with pytest.raises(ValueError, match="ROOMLINK_HEALTH_PORT"):
        apply_env(HubRuntimeConfig(), {"ROOMLINK_HEALTH_PORT": "lots"})


def test_load_toml(tmp_path) -> None:
    path = tmp_path / "roomlinkd.toml"
    path.write_text('[hub]\nhub_name = "basement"\n', encoding="utf-8")
    cfg = apply_config_data(HubRuntimeConfig(), load_toml(str(path)))
    assert cfg.hub_name == "basement"
