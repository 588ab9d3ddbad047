import json
import os
from datetime import date

import pytest

from exchange_simulator.models import AppConfig
from exchange_simulator.websocket_server.factories.ConfigFactory import ConfigFactory
from exchange_simulator.websocket_server.factories.serverFactory import create_server_from_config


def test_no_path_gives_defaults():
    config = ConfigFactory.load_config(None)
    assert config == AppConfig()
    assert config.server.uri.port == 8000
    assert config.persistence.max_retries == 10


def test_load_yaml_with_env_expansion(tmp_path, monkeypatch):
    monkeypatch.setenv("EXCHANGE_PORT", "9123")
    config_file = tmp_path / "exchange.yaml"
    config_file.write_text(
        "server:\n"
        "  uri:\n"
        "    host: 127.0.0.1\n"
        "    port: ${EXCHANGE_PORT}\n"
        "storage:\n"
        "  data_dir: data\n"
        "clock:\n"
        "  start_date: '2022-01-03'\n"
        "  tick_seconds: 0.5\n"
        "persistence:\n"
        "  max_retries: 4\n"
    )

    config = ConfigFactory.load_config(str(config_file))

    assert config.server.uri.host == "127.0.0.1"
    assert config.server.uri.port == 9123
    assert config.clock.start_date == date(2022, 1, 3)
    assert config.clock.tick_seconds == 0.5
    assert config.persistence.max_retries == 4
    # relative data dirs resolve against the config file location
    assert config.storage.data_dir == os.path.join(str(tmp_path), "data")


def test_load_json(tmp_path):
    config_file = tmp_path / "exchange.json"
    config_file.write_text(json.dumps({"broadcast": {"delivery_timeout": 0.25}}))
    config = ConfigFactory.load_config(str(config_file))
    assert config.broadcast.delivery_timeout == 0.25


def test_invalid_values_raise(tmp_path):
    config_file = tmp_path / "bad.yaml"
    config_file.write_text("clock:\n  tick_seconds: 0\n")
    with pytest.raises(ValueError):
        ConfigFactory.load_config(str(config_file))


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        ConfigFactory.load_config(str(tmp_path / "missing.yaml"))


@pytest.mark.asyncio
async def test_create_server_from_config(tmp_path):
    config = AppConfig()
    config.storage.data_dir = str(tmp_path)
    config.server.uri.host = "127.0.0.1"
    config.server.uri.port = 0

    server = create_server_from_config(config)

    assert server.uri == "ws://127.0.0.1:0"
    assert server.trading_system.clock.settings.start_date == date(2021, 11, 3)
    assert server.connection_manager.max_in_flight_messages == 10
