"""Helpers for SMCL log text emitted by the worker.

The worker wraps every run in its own log/return management commands; those
lines are noise for callers and are filtered out before log text is used as
output.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

INTERNAL_PATTERNS = [
    re.compile(r"capture\s+log\s+close\s+_mcp_smcl_", re.IGNORECASE),
    re.compile(r"capture\s+_return\s+hold\s+mcp_hold_", re.IGNORECASE),
    re.compile(r"^\s*(\{smcl\})?\s*$", re.IGNORECASE),
    re.compile(r"(\s*\{[^}]+\})*\s*log\s+type:\s+.*smcl", re.IGNORECASE),
    re.compile(r"(\s*\{[^}]+\})*\s*opened\s+on:\s+", re.IGNORECASE),
    re.compile(r"(\s*\{[^}]+\})*\s*log:\s+.*(mcp_smcl_|<unnamed>)", re.IGNORECASE),
    re.compile(r"(\s*\{[^}]+\})*\s*name:\s+.*(_mcp_smcl_|<unnamed>)", re.IGNORECASE),
    re.compile(r"\{txt\}\{sf\}\{ul off\}\{\.-\}", re.IGNORECASE),
]

_RC_PATTERN = re.compile(r"(?:^|[^\w.])r\((\d+)\);|\{search r\((\d+)\)")
_ERR_BLOCK = re.compile(r"\{err\}(.*?)(?=\{txt\}|\{res\}|\{com\}|$)", re.DOTALL)


@dataclass
class SmclSummary:
    rc: int | None
    error_context: str | None
    has_error: bool


def filter_internal_lines(text: str) -> str:
    """Drop worker-internal log lines; blank lines are kept."""
    if not text:
        return ""
    kept: list[str] = []
    for line in re.split(r"\r?\n", text):
        if not line.strip():
            kept.append(line)
            continue
        if any(pattern.search(line) for pattern in INTERNAL_PATTERNS):
            continue
        kept.append(line)
    return "\n".join(kept)


def parse_smcl(smcl_text: str) -> SmclSummary:
    """Extract the last return code and any {err} context from SMCL text."""
    if not smcl_text:
        return SmclSummary(rc=None, error_context=None, has_error=False)

    rc: int | None = None
    for match in _RC_PATTERN.finditer(smcl_text):
        rc = int(match.group(1) or match.group(2))

    errors: list[str] = []
    for match in _ERR_BLOCK.finditer(smcl_text):
        content = match.group(1).strip()
        if content and "capture log close" not in content:
            errors.append(content if content.lower().startswith("error") else f"Error: {content}")

    return SmclSummary(
        rc=rc,
        error_context="\n".join(errors) if errors else None,
        has_error=bool(errors),
    )
