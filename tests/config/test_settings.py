"""
Brief: Tests for EngineSettings defaults, validation and build_settings().

Inputs:
  - None

Outputs:
  - None
"""

import pytest

from qdispatch.config.settings import EngineSettings, build_settings
from qdispatch.errors import ConfigurationError


def test_defaults():
    s = EngineSettings()
    assert s.connect_timeout == 1
    assert s.send_once_udp == 5
    assert s.send_once_stream == 5
    assert s.usleep_udp == 100
    assert s.usleep_stream == 100
    assert s.read_timeout == 600
    assert s.read_retry_timeout == 200
    assert s.read_got_timeout == 20
    assert s.loop_timeout == 2
    assert s.socket_buffer == 8192
    assert s.send_retry == 1


def test_timeout_for_attempt_and_long_wait():
    s = EngineSettings(read_timeout=300, read_retry_timeout=900)
    assert s.timeout_for_attempt(1) == 300
    assert s.timeout_for_attempt(2) == 900
    assert s.long_wait == 900


def test_build_settings_overrides_on_base():
    base = build_settings(overrides={"send_retry": 3})
    s = build_settings(base, {"read_timeout": 50})
    assert s.send_retry == 3
    assert s.read_timeout == 50
    assert base.read_timeout == 600


@pytest.mark.parametrize(
    "overrides",
    [
        {"unknown_option": 1},
        {"send_retry": "3"},
        {"send_retry": True},
        {"send_retry": 1.5},
        {"read_timeout": -1},
        {"send_once_udp": 0},
    ],
)
def test_build_settings_rejects(overrides):
    with pytest.raises(ConfigurationError):
        build_settings(overrides=overrides)


def test_settings_are_frozen():
    s = EngineSettings()
    with pytest.raises(Exception):
        s.send_retry = 5
