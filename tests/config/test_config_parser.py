"""
Brief: Tests for config variable merging, YAML loading and target normalization.

Inputs:
  - None

Outputs:
  - None
"""

import pytest

from qdispatch.config.config_parser import (
    load_engine_settings,
    normalize_targets,
    parse_config_file,
    parse_config_variables,
)
from qdispatch.errors import ConfigurationError


def test_variable_precedence_cli_over_env_over_file():
    cfg = {"vars": {"TIMEOUT": 100, "KEEP": "x"}}
    merged = parse_config_variables(
        cfg,
        cli_vars=["TIMEOUT=300"],
        environ={"QDISPATCH_TIMEOUT": "200", "QDISPATCH_LIST": "[1, 2]", "OTHER": "1"},
    )
    assert merged == {"TIMEOUT": 300, "KEEP": "x", "LIST": [1, 2]}
    assert cfg["vars"] is merged


def test_variable_errors():
    with pytest.raises(ValueError):
        parse_config_variables({}, cli_vars=["NOEQUALS"], environ={})
    with pytest.raises(ValueError):
        parse_config_variables({}, cli_vars=["lower=1"], environ={})
    with pytest.raises(ValueError):
        parse_config_variables({"vars": [1]}, environ={})


def test_env_with_lowercase_name_is_ignored():
    assert parse_config_variables({}, environ={"QDISPATCH_lower": "1"}) == {}


def test_parse_config_file(tmp_path):
    path = tmp_path / "cfg.yaml"
    path.write_text(
        "vars:\n"
        "  RETRY: 1\n"
        "engine:\n"
        "  send_retry: $RETRY\n"
        "targets:\n"
        "  - transport: udp\n"
        "    host: 127.0.0.1:27015\n"
        "    packets: [ff]\n"
    )
    cfg = parse_config_file(str(path), cli_vars=["RETRY=4"], environ={})
    assert cfg["engine"]["send_retry"] == 4
    assert load_engine_settings(cfg).send_retry == 4


def test_parse_config_file_rejects_non_mapping(tmp_path):
    path = tmp_path / "cfg.yaml"
    path.write_text("- 1\n- 2\n")
    with pytest.raises(ValueError):
        parse_config_file(str(path), environ={})


def test_parse_config_file_reports_schema_errors(tmp_path):
    path = tmp_path / "cfg.yaml"
    path.write_text("engine:\n  read_timeout: soon\n")
    with pytest.raises(ValueError) as excinfo:
        parse_config_file(str(path), environ={})
    assert str(path) in str(excinfo.value)


def test_load_engine_settings_defaults_and_errors():
    assert load_engine_settings({}).read_timeout == 600
    with pytest.raises(ConfigurationError):
        load_engine_settings({"engine": {"send_retry": -1}})


def test_normalize_targets():
    cfg = {
        "targets": [
            {"transport": "udp", "host": "127.0.0.1:27015", "packets": ["ff00"], "response_count": 1},
            {
                "id": "proxied",
                "queue": "info",
                "transport": "udp",
                "addr": "10.0.0.1",
                "port": 7777,
                "connect_host": "127.0.0.1:9000",
                "packets": ["aa", "bb"],
                "no_retry": True,
            },
            {"transport": "unix", "path": "/tmp/q.sock", "packets": [""]},
        ]
    }
    out = normalize_targets(cfg)
    assert out[0] == {
        "target": "127.0.0.1:27015",
        "queue": 0,
        "options": {
            "transport": "udp",
            "packets": [b"\xff\x00"],
            "response_count": 1,
            "address": "127.0.0.1",
            "port": 27015,
        },
    }
    assert out[1]["target"] == "proxied"
    assert out[1]["queue"] == "info"
    assert out[1]["options"]["address"] == "127.0.0.1"
    assert out[1]["options"]["port"] == 9000
    assert out[1]["options"]["packets"] == [b"\xaa", b"\xbb"]
    assert out[1]["options"]["no_retry"] is True
    assert out[2]["options"] == {"transport": "unix", "packets": [b""], "path": "/tmp/q.sock"}
    assert out[2]["target"] == "/tmp/q.sock"


@pytest.mark.parametrize(
    "target",
    [
        {"transport": "udp", "host": "127.0.0.1", "packets": ["ff"]},
        {"transport": "udp", "host": "127.0.0.1:1", "packets": []},
        {"transport": "udp", "host": "127.0.0.1:1", "packets": ["zz"]},
        {"transport": "unix", "packets": ["ff"]},
        {"transport": "tcp", "packets": ["ff"]},
    ],
)
def test_normalize_targets_rejects(target):
    with pytest.raises(ConfigurationError):
        normalize_targets({"targets": [target]})


def test_normalize_targets_empty():
    assert normalize_targets({}) == []
