from enum import StrEnum
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from jobrunner.domain.errors import ConfigNotFoundError, InvalidConfigSchemaError

class OutputKind(StrEnum):
    STDOUT = "stdout"
    SILENT = "silent"
    FILE = "file"

class Output(BaseModel):
    """Where a scheduled job's output goes: `stdout`, `silent` or `{file: path}`."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: OutputKind = OutputKind.STDOUT
    path: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _parse(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"kind": value}
        if isinstance(value, dict) and set(value) == {"file"}:
            return {"kind": OutputKind.FILE, "path": value["file"]}
        return value

    @model_validator(mode="after")
    def _file_needs_path(self) -> "Output":
        if self.kind == OutputKind.FILE and not self.path:
            raise ValueError("file output requires a path")
        return self

    def __str__(self) -> str:
        return f"file:{self.path}" if self.kind == OutputKind.FILE else str(self.kind)

class ScheduledJob(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    # Shell command, or task/job name followed by key:value arguments
    run: str
    shell: bool = False
    run_on_start: bool = False
    cron: str
    tags: tuple[str, ...] = ()
    output: Optional[Output] = None

class SchedulerConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    jobs: dict[str, ScheduledJob] = Field(default_factory=dict)
    output: Output = Field(default_factory=Output)

    @classmethod
    def from_yaml(cls, text: str) -> "SchedulerConfig":
        try:
            data = yaml.safe_load(text) or {}
            return cls.model_validate(data)
        except (yaml.YAMLError, ValidationError) as e:
            raise InvalidConfigSchemaError(e) from e

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "SchedulerConfig":
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigNotFoundError(path, e) from e
        return cls.from_yaml(text)
