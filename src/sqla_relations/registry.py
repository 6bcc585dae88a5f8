from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import TYPE_CHECKING, Union, final

from .errors import ConfigurationError


if TYPE_CHECKING:
    from .model import Model

ModelRef = Union[str, "type[Model]"]


@final
class Registry(Mapping[str, "type[Model]"]):
    """Name -> record type mapping for one declarative base.

    Concrete models register themselves under their class name (or
    ``__registry_name__``) when they are defined.  Relations may reference a
    target by that name before the target class exists; the name is looked
    up only when the relation is first used, so mutually referencing models
    can be declared in any order.
    """

    __slots__ = ("_models",)

    def __init__(self) -> None:
        self._models: dict[str, type[Model]] = {}

    def register(self, name: str, model: type[Model]) -> None:
        """Register *model* under *name*.

        Raises:
            ConfigurationError: If another type already uses *name*.
        """
        existing = self._models.get(name)
        if existing is not None and existing is not model:
            raise ConfigurationError(
                f"A record type named {name!r} is already registered ({existing.__qualname__})",
                record_type=model,
            )
        self._models[name] = model

    def resolve(self, ref: ModelRef) -> type[Model]:
        """Turn a relation target reference into a record type.

        Args:
            ref: A record type, or the name it was registered under.

        Raises:
            ConfigurationError: If *ref* is a name nobody registered.
        """
        if not isinstance(ref, str):
            return ref

        try:
            return self._models[ref]
        except KeyError:
            raise ConfigurationError(
                f"No record type registered as {ref!r}. Known: {sorted(self._models)}"
            ) from None

    def __getitem__(self, name: str) -> type[Model]:
        """Look up a record type by name, raising ``KeyError`` if not found."""
        return self._models[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._models)

    def __len__(self) -> int:
        return len(self._models)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {sorted(self._models)!r}>"

    def reset(self) -> None:
        """Forget every registration (primarily for tests)."""
        self._models.clear()
