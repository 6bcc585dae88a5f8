"""Ordered lifecycle hooks.

Callbacks are registered per record type and phase with ``Model.on``::

    @Author.on(Phase.SAVING)
    def require_name(author, options):
        if not author.get("name"):
            raise ValueError("authors need a name")

Hooks of base classes run before hooks of subclasses, each list in
registration order.  A callback may be a plain function or a coroutine
function; an exception raised by any callback aborts the phase and
propagates to the caller unchanged.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Mapping
from enum import Enum
from typing import Any, Final, Union


Hook = Callable[[Any, Mapping[str, Any]], Union[Awaitable[None], None]]

_HOOKS_ATTR: Final[str] = "__hooks__"


class Phase(str, Enum):
    FETCHING = "fetching"
    LOADED = "loaded"
    FETCHED = "fetched"
    SAVING = "saving"
    SAVED = "saved"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"


def register(owner: type[Any], phase: Phase, callback: Hook) -> Hook:
    """Append *callback* to the *phase* hooks declared on *owner* itself."""
    hooks: dict[Phase, list[Hook]] | None = owner.__dict__.get(_HOOKS_ATTR)
    if hooks is None:
        hooks = {}
        setattr(owner, _HOOKS_ATTR, hooks)

    hooks.setdefault(Phase(phase), []).append(callback)
    return callback


def unregister(owner: type[Any], phase: Phase, callback: Hook) -> None:
    hooks: dict[Phase, list[Hook]] = owner.__dict__.get(_HOOKS_ATTR) or {}
    callbacks = hooks.get(Phase(phase), [])
    if callback in callbacks:
        callbacks.remove(callback)


def hooks_for(owner: type[Any], phase: Phase) -> list[Hook]:
    """Every callback that applies to *owner*, base classes first."""
    collected: list[Hook] = []
    for klass in reversed(owner.__mro__):
        hooks: dict[Phase, list[Hook]] | None = klass.__dict__.get(_HOOKS_ATTR)
        if hooks:
            collected.extend(hooks.get(phase, ()))

    return collected


async def run(owner: type[Any], phase: Phase, target: Any, options: Mapping[str, Any]) -> None:
    for callback in hooks_for(owner, phase):
        result = callback(target, options)
        if inspect.isawaitable(result):
            await result
