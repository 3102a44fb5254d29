import asyncio
import inspect
import logging
import typing
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, Sequence, TypeVar, Union

from pydantic import TypeAdapter, ValidationError

from jobrunner.domain.errors import (
    DuplicateRegistrationError,
    RegistryFrozenError,
    SerializationError,
    UnknownJobError,
)
from jobrunner.domain.models import normalize_tags

logger = logging.getLogger(__name__)

T = TypeVar("T")
A = TypeVar("A")

Handler = Callable[[Any], Awaitable[Any]]

class Registry(Generic[T]):
    """Name keyed registry that can be frozen once the runtime starts."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        if self._frozen:
            raise RegistryFrozenError(
                f"Cannot register '{name}' in {self.name.lower()} registry: registry is frozen"
            )
        if name in self._implementations:
            raise DuplicateRegistrationError(f"{self.name} '{name}' is already registered")
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        if name not in self._implementations:
            raise KeyError(f"No {self.name.lower()} registered with name: {name}")
        return self._implementations[name]

    def list(self) -> list[str]:
        return sorted(self._implementations)

    def values(self) -> "list[T]":
        return [self._implementations[name] for name in self.list()]

    def freeze(self) -> None:
        self._frozen = True

    def is_frozen(self) -> bool:
        return self._frozen

    def __contains__(self, name: object) -> bool:
        return name in self._implementations

    def __len__(self) -> int:
        return len(self._implementations)

class BackgroundWorker(Generic[A]):
    """
    Base class for typed jobs.

    Subclasses implement `perform(args)`. The payload is validated against
    `args_type` before `perform` runs; when unset it is taken from the
    annotation of perform's `args` parameter.

        class SendWelcome(BackgroundWorker[WelcomeArgs]):
            queue = "mailer"

            async def perform(self, args: WelcomeArgs) -> None:
                ...
    """

    queue: Optional[str] = None
    max_attempts: Optional[int] = None
    tags: tuple[str, ...] = ()
    priority: int = 0
    args_type: Any = None

    @classmethod
    def class_name(cls) -> str:
        return cls.__name__

    @classmethod
    def resolve_args_type(cls) -> Any:
        if cls.args_type is not None:
            return cls.args_type
        hints = typing.get_type_hints(cls.perform)
        return hints.get("args", Any)

    async def perform(self, args: A) -> Any:
        raise NotImplementedError

@dataclass(frozen=True)
class WorkerRegistration:
    name: str
    handler: Handler
    queue: Optional[str] = None
    max_attempts: Optional[int] = None
    tags: tuple[str, ...] = ()
    priority: int = 0

def _as_async(handler: Callable[[Any], Any]) -> Handler:
    if inspect.iscoroutinefunction(handler):
        return handler

    # Blocking handlers run off the event loop
    async def run_in_thread(payload):
        return await asyncio.to_thread(handler, payload)
    return run_in_thread

def _typed_handler(worker: BackgroundWorker) -> Handler:
    name = worker.class_name()
    adapter = TypeAdapter(worker.resolve_args_type())

    async def handle(payload):
        try:
            args = adapter.validate_python(payload)
        except ValidationError as e:
            raise SerializationError(f"{name}: payload does not match the expected arguments: {e}") from e
        return await worker.perform(args)

    return handle

class WorkerRegistry(Registry[WorkerRegistration]):
    """
    Maps job names to handlers. Frozen by the Processor when it starts, read
    only afterwards.
    """

    def __init__(self):
        super().__init__("Worker")

    def register(
        self,
        name: str,
        handler: Union[Callable[[Any], Any], WorkerRegistration],
        queue: Optional[str] = None,
        max_attempts: Optional[int] = None,
        tags: Optional[Sequence[str]] = None,
        priority: int = 0,
    ) -> WorkerRegistration:
        if isinstance(handler, WorkerRegistration):
            registration = handler
        else:
            registration = WorkerRegistration(
                name=name,
                handler=_as_async(handler),
                queue=queue,
                max_attempts=max_attempts,
                tags=normalize_tags(tags),
                priority=priority,
            )
        super().register(name, registration)
        logger.debug("Registered worker %s", name)
        return registration

    def register_worker(self, worker: Union[type[BackgroundWorker], BackgroundWorker]) -> WorkerRegistration:
        instance = worker() if isinstance(worker, type) else worker
        name = instance.class_name()
        return self.register(
            name,
            WorkerRegistration(
                name=name,
                handler=_typed_handler(instance),
                queue=instance.queue,
                max_attempts=instance.max_attempts,
                tags=normalize_tags(instance.tags),
                priority=instance.priority,
            ),
        )

    def get(self, name: str) -> WorkerRegistration:
        if name not in self:
            raise UnknownJobError(name)
        return super().get(name)

    def handler_for(self, name: str) -> Handler:
        return self.get(name).handler
