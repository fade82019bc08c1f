from __future__ import annotations

import base64
import logging
import os
from pathlib import Path
from typing import Any

from stata_mcp_client.config.defaults import TOOL_EXPORT_GRAPH, TOOL_EXPORT_GRAPHS_ALL, TOOL_LIST_GRAPHS
from stata_mcp_client.errors import ArtifactExportFailed, Cancelled, CapabilityMissing
from stata_mcp_client.mcp.connection_manager import ConnectionManager
from stata_mcp_client.schemas.results import Artifact
from stata_mcp_client.services.cancellation import CancellationToken
from stata_mcp_client.services.task_invoker import TaskInvoker
from stata_mcp_client.utils.json_helpers import stringify_safe, try_parse_json

logger = logging.getLogger(__name__)

PREVIEW_MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".svg": "image/svg+xml",
}
_LABEL_KEYS = ("name", "label", "graph_name")
_PATH_KEYS = ("file_path", "path", "url", "href", "file", "filename")


def _first_str(obj: dict, keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = obj.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _inline_data_uri(graph: dict) -> str | None:
    if graph.get("data") and graph.get("mimeType"):
        return f"data:{graph['mimeType']};base64,{graph['data']}"
    image = graph.get("image")
    if isinstance(image, dict) and image.get("data") and image.get("mimeType"):
        return f"data:{image['mimeType']};base64,{image['data']}"
    for item in graph.get("content") or []:
        if not isinstance(item, dict):
            continue
        if item.get("data") and item.get("mimeType"):
            return f"data:{item['mimeType']};base64,{item['data']}"
        url = item.get("url")
        if isinstance(url, str) and url.startswith("data:"):
            return url
    return None


def file_preview_data_uri(path: str | None) -> str | None:
    """Inline an image file as a data URI; PDFs and missing files yield None."""
    if not path or path.startswith(("data:", "http://", "https://")):
        return None
    mime = PREVIEW_MIME_TYPES.get(Path(path).suffix.lower())
    if mime is None:
        return None
    try:
        raw = Path(path).read_bytes()
    except OSError as exc:
        logger.debug("No preview for %s: %s", path, exc)
        return None
    return f"data:{mime};base64,{base64.b64encode(raw).decode('ascii')}"


def _looks_like_path(text: str) -> bool:
    return text.startswith("data:") or "/" in text or "\\" in text or bool(os.path.splitext(text)[1])


def graph_ref_to_artifact(ref: Any, base_dir: str | None = None) -> Artifact | None:
    """Project a graph reference as the worker reported it; never exports."""
    if isinstance(ref, str):
        text = ref.strip()
        if not text:
            return None
        if not _looks_like_path(text):
            return Artifact(label=text, baseDir=base_dir)
        preview = text if text.startswith("data:") else None
        label = "graph" if preview else (os.path.basename(text) or "graph")
        return Artifact(label=label, path=text, previewDataUri=preview, baseDir=base_dir)
    if not isinstance(ref, dict):
        return None
    if isinstance(ref.get("text"), str):
        parsed = try_parse_json(ref["text"])
        if isinstance(parsed, dict):
            return graph_ref_to_artifact(parsed.get("graph") if isinstance(parsed.get("graph"), dict) else parsed, base_dir)
        return graph_ref_to_artifact(ref["text"], base_dir)
    href = _first_str(ref, _PATH_KEYS)
    preview = _inline_data_uri(ref) or (href if href and href.startswith("data:") else None)
    label = _first_str(ref, _LABEL_KEYS) or (os.path.basename(href) if href else None) or "graph"
    base = _first_str(ref, ("baseDir", "base_dir")) or base_dir
    error = ref.get("error") if isinstance(ref.get("error"), str) else None
    return Artifact(label=label, path=href or preview, previewDataUri=preview, baseDir=base, error=error)


def is_resolved_ref(ref: Any) -> bool:
    if isinstance(ref, str):
        return _looks_like_path(ref.strip())
    if not isinstance(ref, dict):
        return False
    return _first_str(ref, _PATH_KEYS) is not None or _inline_data_uri(ref) is not None


def ref_name(ref: Any) -> str | None:
    if isinstance(ref, str):
        return ref.strip() or None
    if isinstance(ref, dict):
        return _first_str(ref, _LABEL_KEYS)
    return None


def export_response_to_artifact(response: Any, label: str, base_dir: str | None = None) -> Artifact | None:
    candidates: list[Any] = []
    if isinstance(response, dict):
        structured = response.get("structuredContent")
        if isinstance(structured, dict) and isinstance(structured.get("result"), str):
            parsed = try_parse_json(structured["result"])
            candidates.append(parsed if isinstance(parsed, dict) else structured["result"])
        if is_resolved_ref(response):
            candidates.append(response)
        candidates.extend(response.get("content") or [])
    else:
        candidates.append(response)
    for candidate in candidates:
        if isinstance(candidate, dict) and isinstance(candidate.get("graph"), dict):
            candidate = candidate["graph"]
        artifact = graph_ref_to_artifact(candidate, base_dir)
        if artifact is not None and artifact.path:
            artifact.label = label
            if artifact.previewDataUri is None:
                artifact.previewDataUri = file_preview_data_uri(artifact.path)
            return artifact
    return None


def disambiguate_labels(artifacts: list[Artifact]) -> list[Artifact]:
    seen: dict[str, int] = {}
    for artifact in artifacts:
        count = seen.get(artifact.label, 0) + 1
        seen[artifact.label] = count
        if count > 1:
            artifact.label = f"{artifact.label} ({count})"
    return artifacts


def walk_graph_refs(candidate: Any) -> list[Any]:
    """Graph references anywhere in a list/export response, deduplicated in order."""
    collected: list[Any] = []

    def visit(node: Any) -> None:
        if not node:
            return
        if isinstance(node, list):
            collected.extend(node)
            return
        if isinstance(node, str):
            parsed = try_parse_json(node)
            if parsed is not None:
                visit(parsed)
            return
        if not isinstance(node, dict):
            return
        if isinstance(node.get("graphs"), list):
            collected.extend(node["graphs"])
        structured = node.get("structuredContent")
        if isinstance(structured, dict) and isinstance(structured.get("result"), str):
            visit(structured["result"])
        if isinstance(node.get("text"), str):
            parsed = try_parse_json(node["text"])
            if parsed is not None:
                visit(parsed)
        if isinstance(node.get("content"), list):
            for item in node["content"]:
                visit(item)

    visit(candidate)
    seen: set[str] = set()
    unique: list[Any] = []
    for ref in collected:
        key = f"s:{ref}" if isinstance(ref, str) else f"j:{stringify_safe(ref)}"
        if key in seen:
            continue
        seen.add(key)
        unique.append(ref)
    return unique


class ArtifactResolver:
    def __init__(self, invoker: TaskInvoker, connections: ConnectionManager, *, use_base64: bool = False):
        self._invoker = invoker
        self._connections = connections
        self._use_base64 = use_base64

    async def _call(
        self,
        tool: str,
        args: dict,
        cancel_token: CancellationToken | None = None,
        *,
        allow_refresh: bool = True,
    ) -> dict:
        connection = await self._connections.ensure_connection()
        return await self._invoker.invoke(
            connection, tool, args, cancel_token=cancel_token, allow_refresh=allow_refresh
        )

    async def _export_preferred(self, name: str, cancel_token: CancellationToken | None) -> dict:
        # Exports are best-effort; a missing tool never restarts the worker.
        args = {"graph_name": name, "format": "pdf"}
        try:
            return await self._call(TOOL_EXPORT_GRAPH, args, cancel_token, allow_refresh=False)
        except Cancelled:
            raise
        except CapabilityMissing:
            raise
        except Exception as exc:
            logger.debug("export_graph pdf failed for %s, using server default: %s", name, exc)
            return await self._call(TOOL_EXPORT_GRAPH, {"graph_name": name}, cancel_token, allow_refresh=False)

    async def _export_one(self, name: str, base_dir: str | None, cancel_token: CancellationToken | None) -> Artifact:
        try:
            response = await self._export_preferred(name, cancel_token)
        except Cancelled:
            raise
        except Exception as exc:
            failure = ArtifactExportFailed(name, str(exc))
            logger.warning("Graph export failed for %s: %s", name, exc)
            return Artifact(label=name, error=failure.message)
        artifact = export_response_to_artifact(response, name, base_dir)
        if artifact is None:
            failure = ArtifactExportFailed(name, "no file returned")
            logger.warning("Graph export returned no file for %s", name)
            return Artifact(label=name, error=failure.message)
        return artifact

    async def resolve(
        self,
        refs: list[Any],
        base_dir: str | None = None,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> list[Artifact]:
        """One artifact per reference, in order; export failures stay per item."""
        artifacts: list[Artifact] = []
        for ref in refs:
            if is_resolved_ref(ref):
                artifact = graph_ref_to_artifact(ref, base_dir)
                if artifact is not None:
                    artifacts.append(artifact)
                continue
            name = ref_name(ref)
            if name is None:
                logger.debug("No graph name in %s", stringify_safe(ref))
                artifacts.append(Artifact(label="graph", error="Graph reference has no name or path"))
                continue
            artifacts.append(await self._export_one(name, base_dir, cancel_token))
        return disambiguate_labels(artifacts)

    async def list_graphs(self, base_dir: str | None = None) -> list[Artifact]:
        response = await self._call(TOOL_LIST_GRAPHS, {})
        return await self.resolve(walk_graph_refs(response), base_dir)

    async def collect(self, base_dir: str | None = None) -> list[Artifact]:
        """Export every graph in memory after a run; failures yield an empty list."""
        connection = await self._connections.ensure_connection()
        if TOOL_EXPORT_GRAPHS_ALL not in connection.capabilities:
            logger.debug("Worker has no %s; skipping graph collection", TOOL_EXPORT_GRAPHS_ALL)
            return []
        try:
            response = await self._call(
                TOOL_EXPORT_GRAPHS_ALL, {"use_base64": self._use_base64}, allow_refresh=False
            )
            logger.debug("export_graphs_all response: %s", stringify_safe(response))
            return await self.resolve(walk_graph_refs(response), base_dir)
        except Exception as exc:
            logger.warning("Graph collection failed: %s", exc)
            return []

    async def fetch(self, name: str, fmt: str | None = None, base_dir: str | None = None) -> Artifact:
        args: dict[str, Any] = {"graph_name": name}
        if fmt:
            args["format"] = fmt
        response = await self._call(TOOL_EXPORT_GRAPH, args)
        artifact = export_response_to_artifact(response, name, base_dir)
        if artifact is None:
            raise ArtifactExportFailed(name, "no file returned")
        return artifact
