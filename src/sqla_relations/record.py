from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, overload

from .tools import DEFAULT_ID_ATTRIBUTE, pivot_label


if TYPE_CHECKING:
    from .relations import RelationDescriptor


class Record:
    """A single row: a flat attribute mapping plus attached relations.

    ``relations`` maps a relation name to the related :class:`Record` (or
    record set) attached by eager loading; ``pivot`` holds the join-table
    attributes of a record reached through a joined relation.  A record with
    no attributes stands for an unmatched single-valued relation.
    """

    __slots__ = ("attributes", "id_attribute", "parent", "pivot", "related_data", "relations", "table_name")

    def __init__(
        self,
        attributes: Mapping[str, Any] | None = None,
        /,
        *,
        table_name: str | None = None,
        id_attribute: str = DEFAULT_ID_ATTRIBUTE,
        **kwargs: Any,
    ) -> None:
        self.attributes: dict[str, Any] = {**(attributes or {}), **kwargs}
        self.table_name = table_name
        self.id_attribute = id_attribute
        self.relations: dict[str, Any] = {}
        self.pivot: Record | None = None
        self.related_data: RelationDescriptor | None = None
        self.parent: Record | None = None

    def get(self, key: str, default: Any = None) -> Any:
        return self.attributes.get(key, default)

    @overload
    def set(self, key: str, value: Any, /) -> Record: ...
    @overload
    def set(self, key: Mapping[str, Any], /) -> Record: ...
    def set(self, key: str | Mapping[str, Any], value: Any = None, /) -> Record:
        if isinstance(key, Mapping):
            self.attributes.update(key)
        else:
            self.attributes[key] = value

        return self

    def has(self, key: str) -> bool:
        return self.attributes.get(key) is not None

    def unset(self, key: str) -> Record:
        self.attributes.pop(key, None)
        return self

    def clear(self) -> Record:
        self.attributes.clear()
        return self

    @property
    def id(self) -> Any:
        return self.attributes.get(self.id_attribute)

    def is_new(self) -> bool:
        return self.id is None

    @property
    def is_empty(self) -> bool:
        return not self.attributes

    def to_dict(self, *, shallow: bool = False, omit_pivot: bool = False) -> dict[str, Any]:
        """Serialize attributes, pivot attributes and (unless *shallow*) relations.

        Pivot attributes are flattened back under their prefixed names; an
        unmatched single-valued relation serializes as ``None``.
        """
        out = dict(self.attributes)
        if self.pivot is not None and not omit_pivot:
            out.update({pivot_label(k): v for k, v in self.pivot.attributes.items()})

        if shallow:
            return out

        for name, value in self.relations.items():
            if isinstance(value, Record):
                out[name] = None if value.is_empty else value.to_dict(omit_pivot=omit_pivot)
            else:
                out[name] = [item.to_dict(omit_pivot=omit_pivot) for item in value]

        return out

    def __repr__(self) -> str:
        name = self.table_name or type(self).__name__
        return f"<{name} {self.attributes!r}>"

