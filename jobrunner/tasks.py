import logging
import shlex
import sys
from dataclasses import dataclass, field
from typing import Optional, TextIO

from jobrunner.domain.errors import TaskNotFoundError
from jobrunner.registry import Registry

logger = logging.getLogger(__name__)

@dataclass
class TaskContext:
    vars: dict[str, str] = field(default_factory=dict)
    out: TextIO = field(default_factory=lambda: sys.stdout)

    def arg(self, key: str) -> str:
        if key not in self.vars:
            raise KeyError(f"The argument {key} does not exist")
        return self.vars[key]

class Task:
    """An operator task, runnable by name from the scheduler or tooling."""

    name: str = ""
    detail: str = ""

    def task_name(self) -> str:
        return self.name or type(self).__name__

    async def run(self, ctx: TaskContext) -> None:
        raise NotImplementedError

def parse_run(run: str) -> tuple[str, dict[str, str]]:
    """
    Splits a `run` string like "cleanup days:7 dry_run:true" into the task
    name and its key:value arguments. Tokens without a colon are ignored.
    """
    tokens = shlex.split(run)
    if not tokens:
        return "", {}
    name, rest = tokens[0], tokens[1:]
    vars = {}
    for token in rest:
        key, sep, value = token.partition(":")
        if sep:
            vars[key] = value
        else:
            logger.warning("Ignoring task argument %r without key:value form", token)
    return name, vars

class TaskRegistry(Registry[Task]):
    def __init__(self):
        super().__init__("Task")

    def register(self, task: Task, name: Optional[str] = None) -> None:
        super().register(name or task.task_name(), task)

    def get(self, name: str) -> Task:
        if name not in self:
            raise TaskNotFoundError(name)
        return super().get(name)

    def describe(self) -> list[tuple[str, str]]:
        return [(name, self.get(name).detail) for name in self.list()]

    async def run(self, name: str, vars: Optional[dict[str, str]] = None, out: Optional[TextIO] = None) -> None:
        task = self.get(name)
        ctx = TaskContext(vars=dict(vars or {}), out=out or sys.stdout)
        logger.info("Running task %s", name)
        await task.run(ctx)
