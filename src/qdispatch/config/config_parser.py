"""Configuration parsing and normalization helpers for qdispatch.

Brief:
  This module contains the configuration-parsing utilities used by the CLI
  entrypoint. It centralizes:
    - reading YAML config files
    - merging variables from config/env/CLI
    - JSON Schema validation (via validate_config)
    - building EngineSettings and allocation requests from the result

Inputs:
  - YAML config dicts and paths

Outputs:
  - Normalized config dicts, EngineSettings and target request lists
"""

from __future__ import annotations

import os
import re
from typing import Any, Dict, List, Optional

import yaml

from ..errors import ConfigurationError
from ..resolver import fill_query_connect_hosts
from .config_schema import validate_config
from .settings import EngineSettings, build_settings


def _is_var_key(key: str) -> bool:
    """Brief: Validate whether a string is a supported variable key name.

    Inputs:
      - key: Candidate variable name.

    Outputs:
      - bool: True when the name is ALL_UPPERCASE and matches [A-Z_][A-Z0-9_]*.
    """

    return bool(key) and bool(re.fullmatch(r"[A-Z_][A-Z0-9_]*", key))


def _parse_yaml_value(text: str) -> Any:
    """Brief: Parse a CLI/environment variable value as YAML.

    Inputs:
      - text: String containing YAML scalar/list/dict.

    Outputs:
      - Any: Parsed value (falls back to original string on parse errors).
    """

    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def parse_config_variables(
    cfg: Dict[str, Any],
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Merge config/environment/CLI variables into cfg['vars'].

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).
      - cli_vars: Optional list of CLI `KEY=YAML` assignments.
      - environ: Optional environment mapping (defaults to os.environ). Only
        `QDISPATCH_*` names are considered, with the prefix stripped.

    Outputs:
      - dict: The merged variables mapping stored back onto cfg['vars'].

    Precedence:
      - CLI (-v/--var) overrides environment overrides config-file variables.

    Example:
      >>> cfg = {'vars': {'TIMEOUT': 100}}
      >>> parse_config_variables(cfg, cli_vars=['TIMEOUT=300'], environ={})['TIMEOUT']
      300
    """

    base = cfg.get("vars")
    if base is None:
        merged: Dict[str, Any] = {}
    elif isinstance(base, dict):
        merged = dict(base)
    else:
        raise ValueError("config.vars must be a mapping when present")

    env = os.environ if environ is None else environ
    for k, v in env.items():
        if not k.startswith("QDISPATCH_"):
            continue
        name = k[len("QDISPATCH_") :]
        if _is_var_key(name):
            merged[name] = _parse_yaml_value(str(v))

    for assignment in cli_vars or []:
        if "=" not in assignment:
            raise ValueError(
                "Invalid -v/--var value (expected KEY=YAML), got: %r" % assignment
            )
        k, raw = assignment.split("=", 1)
        k = k.strip()
        if not _is_var_key(k):
            raise ValueError(
                "Invalid variable name %r (must be ALL_UPPERCASE and match [A-Z_][A-Z0-9_]*)"
                % k
            )
        merged[k] = _parse_yaml_value(raw)

    if merged:
        cfg["vars"] = merged
    return merged


def parse_config_file(
    config_path: str,
    *,
    cli_vars: Optional[List[str]] = None,
    environ: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """Brief: Read, variable-merge, and schema-validate a YAML config file.

    Inputs:
      - config_path: Path to the YAML configuration file.
      - cli_vars: Optional list of CLI `KEY=YAML` assignments (from -v/--var).
      - environ: Optional environment mapping.

    Outputs:
      - dict: Parsed configuration mapping with variables expanded.

    Raises:
      - ValueError: When schema validation fails or variables are invalid.
    """

    with open(config_path, "r") as f:
        cfg = yaml.safe_load(f) or {}

    if not isinstance(cfg, dict):
        raise ValueError("Configuration root must be a mapping")

    parse_config_variables(cfg, cli_vars=list(cli_vars or []), environ=environ)
    validate_config(cfg, config_path=config_path)
    return cfg


def load_engine_settings(cfg: Dict[str, Any]) -> EngineSettings:
    """Brief: Build EngineSettings from cfg['engine'].

    Inputs:
      - cfg: Validated configuration mapping.

    Outputs:
      - EngineSettings

    Raises:
      - ConfigurationError: Unknown option or invalid value.
    """

    engine_cfg = cfg.get("engine") or {}
    if not isinstance(engine_cfg, dict):
        raise ConfigurationError("config.engine must be a mapping")
    return build_settings(overrides=engine_cfg)


def _decode_packets(raw: Any, where: str) -> List[bytes]:
    if not isinstance(raw, list) or not raw:
        raise ConfigurationError(f"{where}.packets must be a non-empty list of hex strings")
    packets = []
    for item in raw:
        try:
            packets.append(bytes.fromhex(str(item)))
        except ValueError as exc:
            raise ConfigurationError(f"{where}.packets: invalid hex {item!r}") from exc
    return packets


def normalize_targets(cfg: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Brief: Turn cfg['targets'] into allocate() requests.

    Inputs:
      - cfg: Validated configuration mapping. Each target entry has
        'transport', hex 'packets' and either 'host'/'addr'(+'port') or
        'path' (unix), plus optional 'id', 'queue', 'connect_*',
        'no_retry' and 'response_count'.

    Outputs:
      - list of dicts with keys 'target', 'queue' and 'options' (the mapping
        passed to DispatchEngine.allocate()).

    Raises:
      - ConfigurationError: Missing address fields or bad packets.

    Example:
      >>> normalize_targets({'targets': [{'transport': 'udp', 'host': '127.0.0.1:9',
      ...     'packets': ['ff']}]})[0]['options']['port']
      9
    """

    out: List[Dict[str, Any]] = []
    for idx, t in enumerate(cfg.get("targets") or []):
        where = f"targets[{idx}]"
        if not isinstance(t, dict):
            raise ConfigurationError(f"{where} must be a mapping")
        transport = str(t.get("transport", "")).lower()
        options: Dict[str, Any] = {
            "transport": transport,
            "packets": _decode_packets(t.get("packets"), where),
        }
        if "no_retry" in t:
            options["no_retry"] = bool(t["no_retry"])
        if t.get("response_count") is not None:
            options["response_count"] = int(t["response_count"])

        if transport == "unix":
            if not t.get("path"):
                raise ConfigurationError(f"{where}: unix transport requires 'path'")
            options["path"] = str(t["path"])
            default_id = options["path"]
        else:
            server_addr, server_port, connect_addr, connect_port = (
                fill_query_connect_hosts(t)
            )
            if connect_port is None:
                raise ConfigurationError(f"{where}: missing port")
            options["address"] = connect_addr
            options["port"] = int(connect_port)
            default_id = f"{server_addr}:{server_port or connect_port}"

        out.append(
            {
                "target": t.get("id", default_id),
                "queue": t.get("queue", idx),
                "options": options,
            }
        )
    return out
