"""
In-memory collections and the db handlers that run against them.

Useful for local runs, demos and tests. MemoryCollections also satisfies
the SchemaLookup protocol, so the compiler and resolver can expose nested
record fields from what is stored.
"""

import copy
import logging
import uuid
from collections.abc import Mapping
from typing import Any

from stepflow.errors import StepExecutionError
from stepflow.graph.node import NodeKind
from stepflow.graph.schema import DictSchemaLookup
from stepflow.handlers.base import HandlerRegistry, StepOutcome
from stepflow.runtime.scope import ScopeView

logger = logging.getLogger(__name__)


def _matches(record: dict[str, Any], filters: Mapping[str, Any]) -> bool:
    return all(record.get(key) == value for key, value in filters.items())


class MemoryCollections:
    """
    Named lists of records with equality filters.

    Args:
        seed: initial records per collection
        schemas: declared field names per collection (merged with stored keys)
        unique: field names that must be unique per collection
    """

    def __init__(
        self,
        seed: Mapping[str, list[dict[str, Any]]] | None = None,
        schemas: Mapping[str, list[str]] | None = None,
        unique: Mapping[str, list[str]] | None = None,
    ):
        self._collections: dict[str, list[dict[str, Any]]] = {
            name: [copy.deepcopy(r) for r in records] for name, records in (seed or {}).items()
        }
        self._declared = DictSchemaLookup(schemas)
        self._unique = {name: list(fields) for name, fields in (unique or {}).items()}

    # === SchemaLookup ===

    def schema_fields(self, collection: str) -> list[str] | None:
        declared = self._declared.schema_fields(collection)
        records = self._collections.get(collection)
        if declared is None and records is None:
            return None
        fields = list(declared or [])
        for record in records or []:
            for key in record:
                if key not in fields:
                    fields.append(key)
        return fields

    # === Operations ===

    def records(self, collection: str) -> list[dict[str, Any]]:
        return copy.deepcopy(self._collections.get(collection, []))

    def find(
        self, collection: str, filters: Mapping[str, Any] | None = None, many: bool = False
    ) -> Any:
        matches = [
            copy.deepcopy(r)
            for r in self._collections.get(collection, [])
            if _matches(r, filters or {})
        ]
        if many:
            return matches
        return matches[0] if matches else None

    def insert(self, collection: str, data: Mapping[str, Any]) -> dict[str, Any]:
        records = self._collections.setdefault(collection, [])
        for field_name in self._unique.get(collection, []):
            value = data.get(field_name)
            if value is not None and any(r.get(field_name) == value for r in records):
                raise StepExecutionError(
                    "duplicate key", {"collection": collection, "field": field_name}
                )
        record = {"_id": uuid.uuid4().hex[:24], **copy.deepcopy(dict(data))}
        records.append(record)
        logger.debug(f"Inserted record {record['_id']} into {collection}")
        return copy.deepcopy(record)

    def update(
        self, collection: str, filters: Mapping[str, Any], data: Mapping[str, Any]
    ) -> dict[str, Any] | None:
        changes = data.get("$set", data)
        for record in self._collections.get(collection, []):
            if _matches(record, filters):
                record.update(copy.deepcopy(dict(changes)))
                return copy.deepcopy(record)
        return None

    def delete(self, collection: str, filters: Mapping[str, Any]) -> dict[str, Any] | None:
        records = self._collections.get(collection, [])
        for i, record in enumerate(records):
            if _matches(record, filters):
                return records.pop(i)
        return None


class MemoryDbHandler:
    """Runs dbFind/dbInsert/dbUpdate/dbDelete steps against MemoryCollections."""

    def __init__(self, collections: MemoryCollections, kind: NodeKind):
        self.collections = collections
        self.kind = kind

    async def execute(self, fields: dict[str, Any], scope: ScopeView) -> StepOutcome:
        collection = fields.get("collection")
        if not isinstance(collection, str) or not collection:
            return StepOutcome.failure(f"{self.kind} requires a collection")

        try:
            match self.kind:
                case NodeKind.DB_FIND:
                    many = fields.get("findType") == "findMany"
                    value = self.collections.find(collection, fields.get("filters") or {}, many)
                case NodeKind.DB_INSERT:
                    value = self.collections.insert(collection, fields.get("data") or {})
                case NodeKind.DB_UPDATE:
                    value = self.collections.update(
                        collection, fields.get("filter") or {}, fields.get("data") or {}
                    )
                case NodeKind.DB_DELETE:
                    value = self.collections.delete(collection, fields.get("filter") or {})
                case _:
                    return StepOutcome.failure(f"Unsupported db kind: {self.kind}")
        except StepExecutionError as e:
            return StepOutcome.failure(e.reason, e.details)
        return StepOutcome.success(value)


def register_memory_handlers(
    registry: HandlerRegistry, collections: MemoryCollections
) -> HandlerRegistry:
    for kind in (NodeKind.DB_FIND, NodeKind.DB_INSERT, NodeKind.DB_UPDATE, NodeKind.DB_DELETE):
        registry.register(kind, MemoryDbHandler(collections, kind))
    return registry
