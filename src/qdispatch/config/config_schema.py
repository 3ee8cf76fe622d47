"""JSON Schema-based validation for qdispatch YAML configuration.

This module validates the parsed ``config.yaml`` against the JSON Schema
shipped next to it (``config-schema.json``) after expanding ``${VAR}``
references from the top-level ``vars`` group.
"""

from __future__ import annotations

import copy
import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator, ValidationError

logger = logging.getLogger(__name__)

_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)\}")
_VAR_NAME = re.compile(r"[A-Z_][A-Z0-9_]*")


def expand_variables(cfg: Dict[str, Any]) -> None:
    """Brief: Expand top-level `vars` into the config and remove the group.

    Inputs:
      - cfg: Parsed YAML configuration mapping (mutated in-place).

    Outputs:
      - None.

    Behavior:
      - A string value that is exactly `$KEY` or `${KEY}` is replaced by the
        variable's YAML value (int/list/dict/...).
      - `${KEY}` occurrences inside longer strings are replaced textually.
      - Unknown variables are left untouched; cycles raise ValueError.
    """

    variables = cfg.pop("vars", None)
    if variables is None:
        return
    if not isinstance(variables, dict):
        raise ValueError("config.vars must be a mapping when present")
    for k in variables:
        if not isinstance(k, str) or not _VAR_NAME.fullmatch(k):
            raise ValueError(f"config.vars key {k!r} must match [A-Z_][A-Z0-9_]*")

    resolved: Dict[str, Any] = {}

    def _resolve_var(key: str, stack: set[str]) -> Any:
        if key in resolved:
            return resolved[key]
        if key in stack:
            raise ValueError(f"config.vars contains a cycle at {key}")
        if key not in variables:
            raise KeyError(key)
        stack.add(key)
        value = _expand_obj(variables[key], stack)
        stack.remove(key)
        resolved[key] = value
        return value

    def _expand_string(text: str, stack: set[str]) -> Any:
        if text.startswith("${") and text.endswith("}") and text[2:-1] in variables:
            return copy.deepcopy(_resolve_var(text[2:-1], stack))
        if text.startswith("$") and text[1:] in variables:
            return copy.deepcopy(_resolve_var(text[1:], stack))

        def _repl(match: re.Match[str]) -> str:
            try:
                v = _resolve_var(match.group(1), stack)
            except KeyError:
                return match.group(0)
            if isinstance(v, bool):
                return "true" if v else "false"
            if isinstance(v, (int, float, str)):
                return str(v)
            return json.dumps(v)

        return _VAR_PATTERN.sub(_repl, text)

    def _expand_obj(obj: Any, stack: set[str]) -> Any:
        if isinstance(obj, str):
            return _expand_string(obj, stack)
        if isinstance(obj, list):
            return [_expand_obj(item, stack) for item in obj]
        if isinstance(obj, dict):
            return {k: _expand_obj(v, stack) for k, v in obj.items()}
        return obj

    for key in list(cfg.keys()):
        cfg[key] = _expand_obj(cfg[key], set())


def get_default_schema_path() -> Path:
    """Brief: Path of the JSON Schema bundled with the package."""

    return Path(__file__).resolve().parent / "config-schema.json"


def _load_schema(schema_path: Optional[Path] = None) -> Dict[str, Any]:
    path = schema_path or get_default_schema_path()
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _format_errors(errors: List[ValidationError], *, config_path: Optional[str]) -> str:
    """Brief: Format jsonschema validation errors into a human-readable string.

    Inputs:
      - errors: List of jsonschema.ValidationError instances.
      - config_path: Optional path to the YAML config being validated.

    Outputs:
      - String suitable for display in logs or CLI output.
    """

    lines: List[str] = [f"Invalid configuration in {config_path or '<config dict>'}:"]
    for err in errors:
        instance_path = "/".join(str(p) for p in err.path) or "<root>"
        schema_path = "/".join(str(p) for p in err.schema_path)
        lines.append(f"- {instance_path}: {err.message} (schema: {schema_path})")
    return "\n".join(lines)


def validate_config(
    cfg: Dict[str, Any],
    *,
    schema_path: Optional[Path] = None,
    config_path: Optional[str] = None,
) -> None:
    """Brief: Expand variables and validate a configuration mapping.

    Inputs:
      - cfg: Dict loaded from YAML (mutated: `vars` is expanded and removed).
      - schema_path: Optional explicit JSON Schema path.
      - config_path: Optional YAML path, used only in error messages.

    Outputs:
      - None on success.

    Raises:
      - ValueError: Listing every validation error with its instance path.

    Example:
      >>> validate_config({"engine": {"read_timeout": 100}})
    """

    expand_variables(cfg)
    schema = _load_schema(schema_path)
    validator = Draft202012Validator(schema)
    errors = sorted(validator.iter_errors(cfg), key=lambda e: list(map(str, e.path)))
    if errors:
        raise ValueError(_format_errors(errors, config_path=config_path))
