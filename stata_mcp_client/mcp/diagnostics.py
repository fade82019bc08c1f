"""Recent worker side-channel output, scanned to explain connection failures."""

from __future__ import annotations

import re
from collections import deque

from stata_mcp_client.config.defaults import RECENT_DIAGNOSTICS_LIMIT

MISSING_PACKAGE_PATTERNS = [
    re.compile(r"No module named ['\"]?([\w.\-]+)", re.IGNORECASE),
    re.compile(r"ModuleNotFoundError", re.IGNORECASE),
    re.compile(r"not found in the package registry", re.IGNORECASE),
]
MISSING_ENGINE_PATTERNS = [
    re.compile(r"Stata not found", re.IGNORECASE),
    re.compile(r"STATA_PATH"),
    re.compile(r"could not locate Stata", re.IGNORECASE),
]
SUCCESS_PATTERNS = [
    re.compile(r"Stata initialized", re.IGNORECASE),
    re.compile(r"Starting MCP server", re.IGNORECASE),
    re.compile(r"server started", re.IGNORECASE),
]

MISSING_PACKAGE_HINT = (
    "The mcp-stata worker is missing a required Python package. "
    "Check that uv can install the package, or force a refresh."
)
MISSING_ENGINE_HINT = (
    "The worker could not find a Stata installation. "
    "Set STATA_PATH in the mcp.json env block for the mcp_stata server."
)


class DiagnosticsBuffer:
    def __init__(self, limit: int = RECENT_DIAGNOSTICS_LIMIT) -> None:
        self._lines: deque[str] = deque(maxlen=limit)

    def record(self, line: str) -> None:
        text = (line or "").rstrip()
        if not text.strip():
            return
        if any(p.search(text) for p in SUCCESS_PATTERNS):
            self._lines.clear()
            return
        self._lines.append(text)

    def clear(self) -> None:
        self._lines.clear()

    def lines(self) -> list[str]:
        return list(self._lines)

    def hints(self) -> list[str]:
        joined = "\n".join(self._lines)
        found: list[str] = []
        if any(p.search(joined) for p in MISSING_PACKAGE_PATTERNS):
            found.append(MISSING_PACKAGE_HINT)
        if any(p.search(joined) for p in MISSING_ENGINE_PATTERNS):
            found.append(MISSING_ENGINE_HINT)
        return found

    def enrich(self, message: str) -> str:
        """Append recognized hints and the last few side-channel lines."""
        hints = self.hints()
        if hints:
            message = f"{message}. {' '.join(hints)}"
        if self._lines:
            message = f"{message} (recent stderr: {' | '.join(list(self._lines)[-5:])})"
        return message
