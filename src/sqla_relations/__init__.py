"""Declarative relations and batched eager loading on SQLAlchemy Core.

sqla_relations maps record types onto tables, describes the relations
between them (``has_one``, ``has_many``, ``belongs_to``, ``belongs_to_many``,
the polymorphic ``morph_one``/``morph_many``/``morph_to`` and the ``through``
modifier) and loads nested relation trees such as ``"books.reviews"`` with
one query per relation level.  Statements run on an async engine or
connection bound to the declarative base with ``Base.bind(...)``.
"""

from typing import Any

from ._version import __version__, __version_tuple__
from .bridge import constrain_for_fetch, constrain_for_write, fetch_constrained, parse_pivot
from .eager import EagerBranch, EagerLoader, FetchOptions, eager_load, parse_with_related
from .errors import (
    ConfigurationError,
    EmptyResultError,
    ErrorKind,
    NoRowsDeletedError,
    NoRowsUpdatedError,
    NotFoundError,
    RelationsError,
    StoreError,
    UnknownRelationError,
)
from .hooks import Phase
from .model import Model, RecordSet
from .pivot import attach, detach, update_pivot
from .record import Record
from .registry import Registry
from .relations import (
    RelationDescriptor,
    RelationKind,
    belongs_to,
    belongs_to_many,
    has_many,
    has_one,
    morph_many,
    morph_one,
    morph_to,
)
from .store import Store
from .tools import PIVOT_PREFIX, add_conditions, get_id_attribute, get_table_name


def relations_cache_info() -> dict[str, Any]:
    """Return LRU cache statistics for all internal caches."""
    from .eager import _resolve_path
    from .tools import _get_id_attribute, _get_table, _get_table_name, singularize

    return {
        fn.__name__: fn.cache_info()
        for fn in (_resolve_path, _get_table, _get_table_name, _get_id_attribute, singularize)
    }


def relations_cache_clear() -> None:
    """Clear all internal LRU caches."""
    from .eager import _resolve_path
    from .tools import _get_id_attribute, _get_table, _get_table_name, singularize

    for fn in (_resolve_path, _get_table, _get_table_name, _get_id_attribute, singularize):
        fn.cache_clear()


__all__ = (
    "PIVOT_PREFIX",
    "ConfigurationError",
    "EagerBranch",
    "EagerLoader",
    "EmptyResultError",
    "ErrorKind",
    "FetchOptions",
    "Model",
    "NoRowsDeletedError",
    "NoRowsUpdatedError",
    "NotFoundError",
    "Phase",
    "Record",
    "RecordSet",
    "Registry",
    "RelationDescriptor",
    "RelationKind",
    "RelationsError",
    "Store",
    "StoreError",
    "UnknownRelationError",
    "__version__",
    "__version_tuple__",
    "add_conditions",
    "attach",
    "belongs_to",
    "belongs_to_many",
    "constrain_for_fetch",
    "constrain_for_write",
    "detach",
    "eager_load",
    "fetch_constrained",
    "get_id_attribute",
    "get_table_name",
    "has_many",
    "has_one",
    "morph_many",
    "morph_one",
    "morph_to",
    "parse_pivot",
    "parse_with_related",
    "relations_cache_clear",
    "relations_cache_info",
    "update_pivot",
)
