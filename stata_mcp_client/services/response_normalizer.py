"""Turn any worker response encoding into one ``NormalizedResult``.

Payload sources are tried in priority order: the structured-content
envelope, JSON embedded in text content (or a bare JSON string), then flat
top-level fields. An error object, wherever it is found first, wins over
everything else and suppresses parsed output.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable

from stata_mcp_client.errors import ResponseShapeError
from stata_mcp_client.schemas.results import NormalizedResult, VariableInfo
from stata_mcp_client.services.artifact_resolver import graph_ref_to_artifact
from stata_mcp_client.utils.json_helpers import flatten_content
from stata_mcp_client.utils.smcl import filter_internal_lines, parse_smcl

logger = logging.getLogger(__name__)

GRAPH_KEYS = ("graphs", "graph_artifacts")
RICH_ERROR_KEYS = ("smcl", "smcl_output")
GENERIC_ERROR_MESSAGE = "Command failed"


@dataclass
class ResultMeta:
    command: str | None = None
    label: str | None = None
    log_text: str = ""
    log_path: str | None = None
    cwd: str | None = None
    file_path: str | None = None
    started_at: float | None = None
    ended_at: float | None = None
    duration_ms: float | None = None


def parse_embedded_json(text: str) -> Any | None:
    """Decode text that claims to be JSON; None when it does not look like JSON."""
    trimmed = text.strip()
    if not trimmed.startswith(("{", "[")):
        return None
    try:
        return json.loads(trimmed)
    except json.JSONDecodeError as exc:
        raise ResponseShapeError(f"Malformed embedded JSON: {exc}") from exc


def _safe_embedded(text: Any) -> Any | None:
    if not isinstance(text, str):
        return None
    try:
        return parse_embedded_json(text)
    except ResponseShapeError as exc:
        logger.debug("Treating response text as opaque: %s", exc)
        return None


def structured_envelope(response: Any) -> dict | None:
    if not isinstance(response, dict):
        return None
    structured = response.get("structuredContent")
    if not isinstance(structured, dict):
        return None
    result = structured.get("result")
    if isinstance(result, str):
        parsed = _safe_embedded(result)
        if isinstance(parsed, dict):
            return parsed
    elif isinstance(result, dict):
        return result
    remainder = {k: v for k, v in structured.items() if k != "result"}
    return remainder or None


def structured_text(response: Any) -> str:
    """``structuredContent.result`` text that is not a JSON object, kept verbatim."""
    if not isinstance(response, dict):
        return ""
    structured = response.get("structuredContent")
    if not isinstance(structured, dict):
        return ""
    result = structured.get("result")
    if not isinstance(result, str) or not result.strip():
        return ""
    return "" if isinstance(_safe_embedded(result), dict) else result


def embedded_content(response: Any) -> dict | None:
    if isinstance(response, str):
        parsed = _safe_embedded(response)
    elif isinstance(response, dict):
        parsed = _safe_embedded(flatten_content(response.get("content")))
    else:
        parsed = None
    return parsed if isinstance(parsed, dict) else None


def flat_fields(response: Any) -> dict | None:
    return response if isinstance(response, dict) else None


PAYLOAD_EXTRACTORS: list[Callable[[Any], dict | None]] = [
    structured_envelope,
    embedded_content,
    flat_fields,
]


def payload_sources(response: Any) -> list[dict]:
    """Every payload the extractors can find, most specific first."""
    sources: list[dict] = []
    for extractor in PAYLOAD_EXTRACTORS:
        source = extractor(response)
        if isinstance(source, dict) and source not in sources:
            sources.append(source)
    return sources


def _text(value: Any) -> str | None:
    return value if isinstance(value, str) and value.strip() else None


def _int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return None


def _first_text(sources: list[dict], key: str) -> str | None:
    for source in sources:
        value = _text(source.get(key))
        if value is not None:
            return value
    return None


def first_error(sources: list[dict]) -> dict | None:
    """The first present error field; only None, False and blank text mean none."""
    for source in sources:
        err = source.get("error")
        if err is None or err is False:
            continue
        if isinstance(err, dict):
            return err
        if isinstance(err, str):
            if err.strip():
                return {"message": err}
            continue
        return {"message": GENERIC_ERROR_MESSAGE}
    return None


def _error_stderr(err: dict) -> str:
    for key in RICH_ERROR_KEYS:
        rich = _text(err.get(key))
        if rich is not None:
            return rich
    parts = [p for p in (_text(err.get("message")), _text(err.get("snippet"))) if p]
    return "\n".join(parts)


def _derive_rc(err: dict | None, sources: list[dict]) -> int | None:
    if err is not None:
        rc = _int(err.get("rc"))
        if rc is not None:
            return rc
    for source in sources:
        nested = source.get("error")
        if isinstance(nested, dict):
            rc = _int(nested.get("rc"))
            if rc is not None:
                return rc
        rc = _int(source.get("rc"))
        if rc is not None:
            return rc
    return None


def _flag_failure(response: Any, sources: list[dict]) -> bool:
    if isinstance(response, dict) and response.get("isError") is True:
        return True
    return any(s.get("success") is False or s.get("isError") is True for s in sources)


def collect_graph_refs(sources: list[dict]) -> list[Any]:
    for source in sources:
        for key in GRAPH_KEYS:
            graphs = source.get(key)
            if isinstance(graphs, list) and graphs:
                return list(graphs)
    return []


def normalize(response: Any, meta: ResultMeta | None = None) -> NormalizedResult:
    meta = meta or ResultMeta()
    sources = payload_sources(response)
    err = first_error(sources)
    rc = _derive_rc(err, sources)

    if err is not None:
        success = False
    elif rc is not None:
        success = rc == 0
    else:
        success = not _flag_failure(response, sources)

    content_text = ""
    if isinstance(response, dict):
        flattened = flatten_content(response.get("content"))
        if flattened and embedded_content(response) is None:
            content_text = flattened
        else:
            content_text = structured_text(response)
    elif isinstance(response, str) and embedded_content(response) is None:
        content_text = response

    log_text = filter_internal_lines(meta.log_text or "")
    stdout = ""
    stderr = ""
    error_message: str | None = None
    if err is not None:
        stderr = _error_stderr(err) or _first_text(sources, "stderr") or ""
        error_message = (
            _text(err.get("message")) or (stderr.strip().splitlines() or [None])[0] or GENERIC_ERROR_MESSAGE
        )
        content_text = ""
    else:
        stdout = (
            _first_text(sources, "stdout")
            or _text(content_text)
            or _first_text(sources, "result")
            or (log_text if log_text.strip() else "")
        )
        if not content_text:
            content_text = _first_text(sources, "stdout") or ""
        stderr = _first_text(sources, "stderr") or ""

    if not success:
        summary = parse_smcl(meta.log_text or "")
        if rc is None:
            rc = summary.rc
        if not stderr and summary.error_context:
            stderr = summary.error_context
        if rc is None or rc == 0:
            error_message = error_message or stderr.strip() or GENERIC_ERROR_MESSAGE

    graph_refs = collect_graph_refs(sources)
    artifacts = [a for a in (graph_ref_to_artifact(g) for g in graph_refs) if a is not None]

    log_path = meta.log_path or _first_text(sources, "log_path")
    if log_path is None and err is not None:
        log_path = _text(err.get("log_path"))
    duration = meta.duration_ms
    if duration is None and meta.started_at is not None and meta.ended_at is not None:
        duration = meta.ended_at - meta.started_at

    return NormalizedResult(
        success=success,
        rc=rc,
        stdout=stdout,
        stderr=stderr,
        contentText=content_text,
        error=error_message,
        command=meta.command or _first_text(sources, "command") or meta.label,
        label=meta.label,
        startedAt=meta.started_at,
        endedAt=meta.ended_at,
        durationMs=duration,
        artifacts=artifacts,
        graphArtifacts=graph_refs,
        logPath=log_path,
        cwd=meta.cwd or (os.path.dirname(meta.file_path) if meta.file_path else None),
        filePath=meta.file_path,
        raw=response,
    )


_VARIABLE_LIST_KEYS = ("variables", "vars", "data", "list")


def _first_variable_list(candidate: Any) -> list | None:
    if candidate is None:
        return None
    if isinstance(candidate, list):
        return candidate
    if isinstance(candidate, str):
        parsed = _safe_embedded(candidate)
        return _first_variable_list(parsed) if parsed is not None else None
    if not isinstance(candidate, dict):
        return None
    for key in _VARIABLE_LIST_KEYS:
        if isinstance(candidate.get(key), list):
            return candidate[key]
    structured = candidate.get("structuredContent")
    if isinstance(structured, dict):
        for nested in (structured.get("result"), structured):
            found = _first_variable_list(nested)
            if found is not None:
                return found
    content = candidate.get("content")
    if isinstance(content, list):
        for item in content:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                found = _first_variable_list(item["text"])
            else:
                found = _first_variable_list(item) if isinstance(item, dict) else None
            if found is not None:
                return found
    return None


def normalize_variable_list(response: Any) -> list[VariableInfo]:
    """Variables from ``get_variable_list``; accepts names or descriptor objects."""
    source = _first_variable_list(response) or []
    variables: list[VariableInfo] = []
    for item in source:
        if isinstance(item, str):
            if item.strip():
                variables.append(VariableInfo(name=item))
            continue
        if not isinstance(item, dict):
            continue
        name = item.get("name") or item.get("variable") or item.get("var") or item.get("key") or item.get("label")
        if not name:
            continue
        label = item.get("label") or item.get("desc") or item.get("description") or ""
        variables.append(VariableInfo(name=str(name), label=str(label)))
    return variables
