import json

from smartcar_client.config import DEFAULT_HOST, DEFAULT_PORT, LinkConfig, load_config


def test_defaults_match_car_access_point() -> None:
    config = LinkConfig()

    assert (config.host, config.port) == (DEFAULT_HOST, DEFAULT_PORT)
    assert config.connect_timeout_s == 10.0
    assert config.io_timeout_s == 15.0
    assert config.timings.heartbeat_timeout_s == 30.0
    assert config.timings.reconnect_delay_s == 2.0


def test_robot_section_from_json(tmp_path) -> None:
    path = tmp_path / "application.json"
    path.write_text(
        json.dumps({"Robot": {"IpAddress": "10.0.0.7", "Port": 2001, "ConnectionTimeoutMs": 2500}}),
        encoding="utf-8",
    )

    config = LinkConfig.from_json_file(path)

    assert config.host == "10.0.0.7"
    assert config.port == 2001
    assert config.connect_timeout_s == 2.5


def test_missing_or_broken_file_falls_back(tmp_path) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")

    assert LinkConfig.from_json_file(tmp_path / "missing.json") == LinkConfig()
    assert LinkConfig.from_json_file(broken) == LinkConfig()


def test_env_overrides_file(tmp_path, monkeypatch) -> None:
    path = tmp_path / "application.json"
    path.write_text(json.dumps({"Robot": {"IpAddress": "10.0.0.7", "Port": 2001}}), encoding="utf-8")
    monkeypatch.setenv("SMARTCAR_PORT", "3000")
    monkeypatch.setenv("SMARTCAR_AUTO_RECONNECT", "0")
    monkeypatch.delenv("SMARTCAR_HOST", raising=False)
    monkeypatch.delenv("SMARTCAR_CONNECT_TIMEOUT_MS", raising=False)

    config = load_config(path)

    assert config.host == "10.0.0.7"
    assert config.port == 3000
    assert config.auto_reconnect is False
