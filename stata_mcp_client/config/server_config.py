"""Worker launch configuration.

The launch command comes from the first ``mcp.json`` entry that names one,
falling back to ``uvx --from <spec> <package>``. Environment variables from
every candidate file are merged; they survive a forced refresh even though the
configured command and arguments do not.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path

from stata_mcp_client.config.settings import StataClientSettings

logger = logging.getLogger(__name__)

_BLOCK_COMMENT = re.compile(r"/\*.*?\*/", re.DOTALL)
_LINE_COMMENT = re.compile(r"(^|\s)//.*$", re.MULTILINE)
_TRAILING_COMMA = re.compile(r",\s*([}\]])")


@dataclass
class LaunchConfig:
    command: str
    args: list[str]
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None

    def to_transport_config(self) -> dict:
        return {"command": self.command, "args": list(self.args), "env": dict(self.env), "cwd": self.cwd}


def parse_lenient_json(raw: str) -> dict:
    """Parse JSON that may carry comments or trailing commas (JSONC)."""
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        stripped = _BLOCK_COMMENT.sub("", raw)
        stripped = _LINE_COMMENT.sub(r"\1", stripped)
        stripped = _TRAILING_COMMA.sub(r"\1", stripped)
        try:
            value = json.loads(stripped)
        except json.JSONDecodeError:
            return {}
    return value if isinstance(value, dict) else {}


def host_mcp_config_path() -> Path | None:
    """User-level mcp.json for the default editor host on this platform."""
    home = Path.home()
    if sys.platform == "darwin":
        return home / "Library" / "Application Support" / "Code" / "User" / "mcp.json"
    if sys.platform == "win32":
        roaming = os.environ.get("APPDATA") or str(home / "AppData" / "Roaming")
        return Path(roaming) / "Code" / "User" / "mcp.json"
    return home / ".config" / "Code" / "User" / "mcp.json"


def candidate_config_paths(settings: StataClientSettings) -> list[Path]:
    paths: list[Path] = [Path(p).expanduser() for p in settings.mcp_config_paths]
    if settings.workspace_root:
        paths.append(Path(settings.workspace_root) / ".vscode" / "mcp.json")
    host = host_mcp_config_path()
    if host is not None:
        paths.append(host)
    seen: set[str] = set()
    unique: list[Path] = []
    for path in paths:
        key = str(path)
        if key in seen:
            continue
        seen.add(key)
        unique.append(path)
    return unique


def _server_entry(parsed: dict, server_id: str) -> dict | None:
    for key in ("servers", "mcpServers"):
        servers = parsed.get(key)
        if isinstance(servers, dict) and isinstance(servers.get(server_id), dict):
            return servers[server_id]
    return None


def default_launch_args(settings: StataClientSettings, *, refresh: bool = False) -> list[str]:
    args = ["--refresh"] if refresh else []
    return [*args, "--from", settings.package_spec, settings.package_name]


def load_launch_config(
    settings: StataClientSettings,
    *,
    ignore_command_args: bool = False,
    paths: list[Path] | None = None,
) -> LaunchConfig:
    """Build the worker launch config from settings and mcp.json files."""
    env: dict[str, str] = {}
    command: str | None = None
    args: list[str] | None = None
    for path in paths if paths is not None else candidate_config_paths(settings):
        try:
            if not path.is_file():
                continue
            parsed = parse_lenient_json(path.read_text(encoding="utf-8"))
        except OSError as exc:
            logger.warning("Failed to read MCP config from %s: %s", path, exc)
            continue
        entry = _server_entry(parsed, settings.server_id)
        if entry is None:
            continue
        entry_env = entry.get("env")
        if isinstance(entry_env, dict):
            env.update({str(k): str(v) for k, v in entry_env.items() if k and v is not None})
        if command is None and isinstance(entry.get("command"), str) and entry["command"].strip():
            command = entry["command"].strip()
            raw_args = entry.get("args")
            args = [str(a) for a in raw_args] if isinstance(raw_args, list) else []

    env.setdefault(
        "STATA_SETUP_TIMEOUT",
        os.environ.get("STATA_SETUP_TIMEOUT") or str(settings.setup_timeout_seconds),
    )
    if ignore_command_args or command is None:
        return LaunchConfig(
            command=settings.uvx_command,
            args=default_launch_args(settings, refresh=ignore_command_args),
            env=env,
            cwd=settings.workspace_root,
        )
    return LaunchConfig(command=command, args=args or [], env=env, cwd=settings.workspace_root)
