"""Application entrypoint."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from projects_ux.interfaces.cli import build_host, execute_single_command, run_cli


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="projects-ux local harness")
    parser.add_argument("--config", default=None, help="JSON file with plugin config")
    parser.add_argument("--storage-path", default=None)
    parser.add_argument("--channel", default="telegram")
    parser.add_argument("--sender", default="local")
    parser.add_argument("--log-level", default=None)
    parser.add_argument("command", nargs=argparse.REMAINDER)
    return parser.parse_args(argv)


def _load_dotenv(path: Path) -> None:
    """Load .env key/value pairs into process env without overriding existing env vars."""
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        raw = line.strip()
        if not raw or raw.startswith("#") or "=" not in raw:
            continue
        key, value = raw.split("=", 1)
        key = key.strip()
        value = value.strip()
        if not key:
            continue
        if value and ((value[0] == value[-1]) and value[0] in {'"', "'"}):
            value = value[1:-1]
        os.environ.setdefault(key, value)


def _load_plugin_config(path: str | None) -> dict[str, Any]:
    if not path:
        return {}
    raw = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: plugin config must be a JSON object")
    return raw


def main(argv: list[str] | None = None) -> int:
    _load_dotenv(Path(".env"))
    args = parse_args(argv)
    try:
        plugin_config = _load_plugin_config(args.config)
    except (OSError, ValueError) as exc:
        print(f"Could not read config: {exc}")
        return 2
    overrides: dict[str, str] = {}
    if args.storage_path:
        overrides["storagePath"] = str(args.storage_path)
    if args.log_level:
        overrides["logLevel"] = str(args.log_level)

    level = str(args.log_level or os.getenv("PROJECTS_UX_LOG_LEVEL") or plugin_config.get("logLevel") or "info").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    host, plugin = build_host(plugin_config, overrides)
    if args.command:
        command_line = " ".join(args.command).strip()
        return execute_single_command(host, command_line, channel=args.channel, sender_id=args.sender)

    run_cli(host, plugin, channel=args.channel, sender_id=args.sender)
    return 0


if __name__ == "__main__":
    sys.exit(main())
