from typing import Any

from pydantic import BaseModel, Field, model_validator


class Artifact(BaseModel):
    label: str
    path: str | None = None
    previewDataUri: str | None = None
    baseDir: str | None = None
    error: str | None = None


class VariableInfo(BaseModel):
    name: str
    label: str = ""


class NormalizedResult(BaseModel):
    success: bool = True
    rc: int | None = None
    stdout: str = ""
    stderr: str = ""
    contentText: str = ""
    error: str | None = None
    command: str | None = None
    label: str | None = None
    startedAt: float | None = None
    endedAt: float | None = None
    durationMs: float | None = None
    artifacts: list[Artifact] = Field(default_factory=list)
    graphArtifacts: list[Any] = Field(default_factory=list)
    logPath: str | None = None
    cwd: str | None = None
    filePath: str | None = None
    raw: Any = None

    @model_validator(mode="after")
    def _failure_is_explained(self) -> "NormalizedResult":
        if not self.success and (self.rc is None or self.rc == 0) and not self.error:
            self.error = self.stderr.strip() or "Command failed"
        return self

