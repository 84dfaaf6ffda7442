"""Registry of host supplied callbacks."""

import inspect
from typing import Any, Callable, Mapping

import structlog

log = structlog.stdlib.get_logger()

Hook = Callable[..., Any]


class UnknownHookError(KeyError):
    """Raised when a relationship names a hook the host never registered."""

    pass


class HookRegistry:
    """Name to callable table for field functions and relationship hooks.

    Hooks may be plain functions or coroutine functions; ``call`` awaits
    whichever result they produce.
    """

    def __init__(self, hooks: Mapping[str, Hook] | None = None):
        self._hooks: dict[str, Hook] = dict(hooks or {})

    def register(self, name: str, hook: Hook) -> None:
        if not callable(hook):
            raise TypeError(f"hook '{name}' is not callable")
        self._hooks[name] = hook
        log.debug("hook_registered", name=name)

    def __contains__(self, name: str) -> bool:
        return name in self._hooks

    def get(self, name: str) -> Hook:
        try:
            return self._hooks[name]
        except KeyError:
            raise UnknownHookError(name) from None

    async def call(self, name: str, *args: Any, **kwargs: Any) -> Any:
        result = self.get(name)(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result
