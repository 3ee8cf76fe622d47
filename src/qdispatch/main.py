from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Dict, List

from .config.config_parser import (
    load_engine_settings,
    normalize_targets,
    parse_config_file,
)
from .config.logging_config import init_logging
from .config.settings import EngineSettings, build_settings
from .engine import DispatchEngine
from .errors import ConfigurationError, ResolutionError, SocketError
from .resolver import parse_host

logger = logging.getLogger("qdispatch.main")


def _parse_set(assignments: List[str]) -> Dict[str, int]:
    """
    Parse `--set KEY=INT` assignments into engine overrides.

    Inputs:
      - assignments: list of 'key=value' strings
    Outputs:
      - dict: option name -> int

    Raises ConfigurationError for malformed entries.
    """
    out: Dict[str, int] = {}
    for item in assignments:
        key, sep, raw = item.partition("=")
        if not sep:
            raise ConfigurationError(f"Invalid --set value (expected KEY=INT): {item!r}")
        try:
            out[key.strip()] = int(raw)
        except ValueError:
            raise ConfigurationError(f"Value for {key.strip()!r} must be int, got {raw!r}")
    return out


def _cli_targets(args: argparse.Namespace) -> List[Dict[str, Any]]:
    packets = []
    for h in args.payload_hex or []:
        try:
            packets.append(bytes.fromhex(h))
        except ValueError:
            raise ConfigurationError(f"Invalid --payload-hex value {h!r}")

    common: Dict[str, Any] = {"packets": packets}
    if args.no_retry:
        common["no_retry"] = True
    if args.response_count is not None:
        common["response_count"] = args.response_count

    targets = []
    for transport in ("udp", "tcp"):
        for host in getattr(args, transport) or []:
            addr, port = parse_host(host)
            if port is None:
                raise ConfigurationError(f"--{transport} needs HOST:PORT, got {host!r}")
            targets.append(
                {
                    "target": host,
                    "queue": "cli",
                    "options": {"transport": transport, "address": addr, "port": port, **common},
                }
            )
    for path in args.unix or []:
        targets.append(
            {
                "target": path,
                "queue": "cli",
                "options": {"transport": "unix", "path": path, **common},
            }
        )
    return targets


def main(argv: List[str] | None = None) -> int:
    """
    Command line entry point: allocate targets, run once, print JSON results.

    Args:
        argv: Command-line arguments.

    Returns:
        0 on success, 1 on configuration/resolution/socket errors, 2 when no
        targets were given.

    Example use:
        CLI:
            qdispatch --udp 127.0.0.1:27015 --payload-hex ffffffff54 --response-count 1
            PYTHONPATH=src python -m qdispatch.main --config config.yaml
    """
    parser = argparse.ArgumentParser(
        description="Send request packets to many targets and collect the replies"
    )
    parser.add_argument("--config", default=None, help="Path to YAML config")
    parser.add_argument("--udp", action="append", metavar="HOST:PORT", help="UDP target")
    parser.add_argument("--tcp", action="append", metavar="HOST:PORT", help="TCP target")
    parser.add_argument("--unix", action="append", metavar="PATH", help="unix stream target")
    parser.add_argument(
        "--payload-hex", action="append", metavar="HEX", help="Packet to send (repeatable, in order)"
    )
    parser.add_argument("--response-count", type=int, default=None)
    parser.add_argument("--no-retry", action="store_true")
    parser.add_argument(
        "--set", action="append", default=[], metavar="KEY=INT", help="Engine tunable override"
    )
    parser.add_argument(
        "-v", "--var", action="append", default=[], metavar="KEY=YAML", help="Config variable"
    )
    args = parser.parse_args(argv)

    cfg: Dict[str, Any] = {}
    try:
        if args.config:
            cfg = parse_config_file(args.config, cli_vars=args.var)
        init_logging(cfg.get("logging"))
        settings: EngineSettings = build_settings(
            load_engine_settings(cfg), _parse_set(args.set)
        )
        targets = normalize_targets(cfg) + _cli_targets(args)
    except (OSError, ValueError) as exc:
        print(str(exc), file=sys.stderr)
        return 1

    if not targets:
        print("no targets given", file=sys.stderr)
        return 2

    with DispatchEngine(settings) as engine:
        try:
            for t in targets:
                engine.allocate(t["target"], t["queue"], t["options"])
        except (ConfigurationError, ResolutionError, SocketError) as exc:
            logger.error("Allocation failed: %s", exc)
            return 1
        results = engine.run()

    json.dump(
        {sid: r.to_dict(hex_payloads=True) for sid, r in results.items()},
        sys.stdout,
        indent=2,
        sort_keys=True,
    )
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
