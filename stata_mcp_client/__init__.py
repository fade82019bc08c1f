"""Async client for the mcp-stata worker."""

from stata_mcp_client.client import StataClient, configure_logging
from stata_mcp_client.errors import (
    ArtifactExportFailed,
    Cancelled,
    CapabilityMissing,
    ConnectionFailed,
    ConnectionTimeout,
    ResponseShapeError,
    RunTimeout,
    StataClientError,
    ToolCallFailed,
)
from stata_mcp_client.schemas.results import Artifact, NormalizedResult, VariableInfo
from stata_mcp_client.services.cancellation import CancellationToken

__all__ = [
    "StataClient",
    "configure_logging",
    "CancellationToken",
    "Artifact",
    "NormalizedResult",
    "VariableInfo",
    "StataClientError",
    "ConnectionTimeout",
    "ConnectionFailed",
    "CapabilityMissing",
    "Cancelled",
    "RunTimeout",
    "ToolCallFailed",
    "ResponseShapeError",
    "ArtifactExportFailed",
]
