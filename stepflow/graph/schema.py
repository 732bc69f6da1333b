"""
Schema lookup - the collaborator that knows collection field names.

The visibility resolver and the compiler need a record's field names to
expose nested paths (``foundData.email``). The lookup is injected, never
read from global state, and must not raise: unknown collections yield None.
"""

import logging
from collections.abc import Mapping
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class SchemaLookup(Protocol):
    """Anything that can list the field names of a collection."""

    def schema_fields(self, collection: str) -> list[str] | None: ...


class NullSchemaLookup:
    """Lookup that knows no collections."""

    def schema_fields(self, collection: str) -> list[str] | None:
        return None


class DictSchemaLookup:
    """
    Lookup backed by a ``{collection: [field, ...]}`` mapping.

    Matching is case-insensitive and tolerates a singular/plural mismatch
    ("user" finds "users" and vice versa).
    """

    def __init__(self, schemas: Mapping[str, list[str]] | None = None):
        self._schemas: dict[str, list[str]] = {
            str(name): list(fields) for name, fields in (schemas or {}).items()
        }

    def register(self, collection: str, fields: list[str]) -> None:
        self._schemas[collection] = list(fields)

    def schema_fields(self, collection: str) -> list[str] | None:
        if not collection or not isinstance(collection, str):
            return None
        key = collection.lower()

        if collection in self._schemas:
            return list(self._schemas[collection])

        for name, fields in self._schemas.items():
            lowered = name.lower()
            if lowered == key or lowered == key + "s" or lowered + "s" == key:
                return list(fields)
        return None

    def to_dict(self) -> dict[str, list[str]]:
        return {name: list(fields) for name, fields in self._schemas.items()}


def safe_schema_fields(lookup: SchemaLookup | None, collection: object) -> list[str]:
    """Call lookup without letting a misbehaving collaborator break resolution."""
    if lookup is None or not isinstance(collection, str) or not collection:
        return []
    try:
        return list(lookup.schema_fields(collection) or [])
    except Exception as e:
        logger.warning(f"Schema lookup failed for collection '{collection}': {e}")
        return []
