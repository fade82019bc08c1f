"""Client exceptions.

Typed errors let callers tell a cancelled run from a failed one, and let the
connection layer surface enriched messages without string scraping.
"""

from __future__ import annotations

import traceback


class StataClientError(RuntimeError):
    """Base class for client errors.

    Run-level failures carry whatever log text was captured before the
    failure so callers can still show partial output.
    """

    def __init__(self, message: str, *, log_text: str = "", log_path: str | None = None):
        super().__init__(message)
        self.message = message
        self.log_text = log_text
        self.log_path = log_path

    def __str__(self) -> str:
        return self.message


class ConnectionTimeout(StataClientError):
    """Worker connection did not complete within the configured timeout."""


class ConnectionFailed(StataClientError):
    """Worker connection could not be established."""


class CapabilityMissing(StataClientError):
    """Required tools are absent even after a forced refresh."""

    def __init__(self, required: list[str], available: list[str]):
        self.required = list(required)
        self.available = list(available)
        available_text = ", ".join(self.available) if self.available else "(none)"
        super().__init__(
            "Required tools still missing after refresh. "
            f"Required tools: {', '.join(self.required)}. "
            f"Available tools: {available_text}"
        )


class Cancelled(StataClientError):
    """The run or request was cancelled."""

    def __init__(self, message: str = "Request cancelled", **kwargs):
        super().__init__(message, **kwargs)


class RunTimeout(StataClientError):
    """A queued operation exceeded its time budget."""


class ToolCallFailed(StataClientError):
    """A tools/call request failed for a reason other than cancellation."""

    def __init__(self, tool_name: str, detail: str):
        self.tool_name = tool_name
        self.detail = detail
        super().__init__(f"MCP tool {tool_name} failed: {detail}")


class ResponseShapeError(StataClientError):
    """Embedded JSON in a response could not be decoded."""


class ArtifactExportFailed(StataClientError):
    """A single graph export failed; never fatal for a batch."""

    def __init__(self, label: str, detail: str):
        self.label = label
        self.detail = detail
        super().__init__(f"Export failed: {detail}")


def full_error_message(exc: BaseException) -> str:
    """Return full exception details including traceback."""
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).strip()
