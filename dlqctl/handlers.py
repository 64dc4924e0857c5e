import importlib
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from .exceptions import ConfigurationError, HandlerNotFoundError


class JobHandler(Protocol):
    """Re-runs one kind of job. Returning means success; raising means failure."""

    def execute(self, payload: Dict[str, Any]) -> None:
        ...


class FunctionHandler:
    def __init__(self, func: Callable[[Dict[str, Any]], Any]):
        self.func = func

    def execute(self, payload: Dict[str, Any]) -> None:
        self.func(payload)

    def __repr__(self):
        return f"FunctionHandler({getattr(self.func, '__name__', self.func)!r})"


class HandlerRegistry:
    def __init__(self):
        self._handlers: Dict[str, JobHandler] = {}

    def register(self, job_type: str,
                 handler: Union[JobHandler, Callable, None] = None):
        """Register a handler object or function for ``job_type``.

        Without ``handler`` this returns a decorator:

            @registry.register("email")
            def send_email(payload): ...
        """
        if not job_type:
            raise ConfigurationError("Job type must be a non-empty string")

        def _add(h):
            self._handlers[job_type] = h if hasattr(h, 'execute') else FunctionHandler(h)
            return h

        if handler is None:
            return _add
        return _add(handler)

    def unregister(self, job_type: str):
        self._handlers.pop(job_type, None)

    def get(self, job_type: str) -> JobHandler:
        handler = self._handlers.get(job_type)
        if handler is None:
            raise HandlerNotFoundError(job_type)
        return handler

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._handlers

    def job_types(self) -> List[str]:
        return sorted(self._handlers)


def load_registry(target: Optional[str]) -> HandlerRegistry:
    """Resolve ``package.module:attribute`` to a HandlerRegistry."""
    if not target:
        return HandlerRegistry()

    module_name, _, attr = target.partition(':')
    if not module_name or not attr:
        raise ConfigurationError(f"Handler target must look like 'module:attribute', got '{target}'")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"Cannot import handler module '{module_name}': {e}") from e

    registry = getattr(module, attr, None)
    if callable(registry) and not isinstance(registry, HandlerRegistry):
        registry = registry()
    if not isinstance(registry, HandlerRegistry):
        raise ConfigurationError(f"'{target}' is not a HandlerRegistry")
    return registry
