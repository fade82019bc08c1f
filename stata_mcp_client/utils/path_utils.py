"""Working-directory resolution for do-file runs."""

from __future__ import annotations

import os
import re
from pathlib import Path

_TEMPLATE_VAR = re.compile(r"\$\{([^}]+)\}")


def resolve_run_file_cwd(
    file_path: str,
    *,
    template: str = "",
    workspace_root: str | None = None,
) -> str:
    """Resolve the working directory for a do-file run.

    An empty template means the do-file's own folder. Supported variables are
    ``${workspaceFolder}``, ``${workspaceRoot}`` and ``${fileDir}``; unknown
    variables expand to nothing. Relative results resolve against the
    workspace root when one is known.
    """
    file_dir = os.path.dirname(file_path)
    if not (template or "").strip():
        return os.path.normpath(file_dir)

    root = workspace_root or ""
    replacements = {
        "workspaceFolder": root,
        "workspaceRoot": root,
        "fileDir": file_dir,
    }
    expanded = _TEMPLATE_VAR.sub(lambda m: replacements.get(m.group(1), "") or "", template).strip()
    if not expanded:
        return os.path.normpath(file_dir)

    if expanded.startswith("~"):
        expanded = str(Path.home()) + expanded[1:]

    if os.path.isabs(expanded):
        return os.path.normpath(expanded)
    if root:
        return os.path.normpath(os.path.join(root, expanded))
    return os.path.normpath(os.path.abspath(expanded))
