from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from stata_mcp_client.config.defaults import DEFAULT_MAX_LOG_BUFFER_CHARS
from stata_mcp_client.services.cancellation import CancellationToken

logger = logging.getLogger(__name__)

LogCallback = Callable[[str], Any]
ProgressCallback = Callable[[float | None, float | None, str | None], Any]


@dataclass
class RunState:
    """Mutable state of the single in-flight run."""

    label: str
    run_id: str
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    task_id: str | None = None
    log_path: str | None = None
    log_offset: int = 0
    log_buffer: str = ""
    progress_token: str | None = None
    on_log: LogCallback | None = None
    on_progress: ProgressCallback | None = None
    max_buffer_chars: int = DEFAULT_MAX_LOG_BUFFER_CHARS

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.cancelled

    def append_log(self, text: str) -> None:
        if not text:
            return
        combined = self.log_buffer + text
        if self.max_buffer_chars and len(combined) > self.max_buffer_chars:
            combined = combined[-self.max_buffer_chars:]
        self.log_buffer = combined

    def advance_offset(self, next_offset: int | None, data: str) -> int:
        """Move the log offset forward; it never moves backward."""
        if next_offset is None:
            self.log_offset += len(data.encode("utf-8"))
        elif next_offset >= self.log_offset:
            self.log_offset = next_offset
        else:
            logger.debug(
                "Ignoring backward log offset %s (current %s) for %s",
                next_offset, self.log_offset, self.log_path,
            )
        return self.log_offset
