"""
Schema cache for schema-tagged (Avro) payloads.

Schemas are flat records of string fields derived from an ordered field list
and a logical name. The cache key is the (fields, name) pair so a table shape
change across deploys yields a new schema instead of silently reusing the old.
"""

from __future__ import annotations

import io
import threading
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Sequence

import fastavro
from fastavro.schema import SchemaParseException
from loguru import logger

from .errors import SchemaBuildError


@dataclass(frozen=True)
class SchemaDescriptor:
    name: str
    fields: tuple[str, ...]

    @property
    def definition(self) -> dict[str, Any]:
        """Plain Avro schema document (JSON-serialisable)."""
        return {
            "type": "record",
            "name": self.name,
            "fields": [{"name": f, "type": "string"} for f in self.fields],
        }


@dataclass(frozen=True)
class CachedSchema:
    descriptor: SchemaDescriptor
    parsed: Any

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def fields(self) -> tuple[str, ...]:
        return self.descriptor.fields


class SchemaCache:
    """Thread-safe cache of parsed schemas keyed by (fields, name).

    Shared by every converter and sink in the process; ``clear()`` is called
    on sink shutdown.
    """

    def __init__(self) -> None:
        self._schemas: dict[tuple[tuple[str, ...], str], CachedSchema] = {}
        self._lock = threading.Lock()

    def get_schema(self, fields: Sequence[str], name: Optional[str]) -> CachedSchema:
        if not name:
            raise SchemaBuildError("schema name cannot be empty")
        if not fields:
            raise SchemaBuildError(f"schema {name!r} needs at least one field")

        key = (tuple(fields), name)
        with self._lock:
            cached = self._schemas.get(key)
            if cached is not None:
                return cached

            descriptor = SchemaDescriptor(name=name, fields=key[0])
            try:
                parsed = fastavro.parse_schema(descriptor.definition)
            except (SchemaParseException, ValueError, TypeError) as exc:
                raise SchemaBuildError(f"cannot build schema {name!r}: {exc}") from exc

            cached = CachedSchema(descriptor=descriptor, parsed=parsed)
            self._schemas[key] = cached
            logger.debug(f"Schema built: name={name} fields={list(key[0])}")
            return cached

    def encode(self, fields: Sequence[str], name: Optional[str], record: Mapping[str, Any]) -> bytes:
        """Serialize ``record`` as schemaless Avro binary; missing fields become ''."""
        schema = self.get_schema(fields, name)
        datum = {f: _as_str(record.get(f)) for f in schema.fields}
        buf = io.BytesIO()
        fastavro.schemaless_writer(buf, schema.parsed, datum)
        return buf.getvalue()

    def decode(self, fields: Sequence[str], name: Optional[str], payload: bytes) -> dict[str, Any]:
        schema = self.get_schema(fields, name)
        return fastavro.schemaless_reader(io.BytesIO(payload), schema.parsed)

    def clear(self) -> None:
        with self._lock:
            n = len(self._schemas)
            self._schemas.clear()
        logger.debug(f"Schema cache cleared ({n} entries)")

    def __len__(self) -> int:
        return len(self._schemas)


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


# --- Singleton accessor for in-process use ---

_cache: Optional[SchemaCache] = None


def schema_cache() -> SchemaCache:
    """Process-wide SchemaCache shared by converters and sinks."""
    global _cache
    if _cache is None:
        _cache = SchemaCache()
    return _cache
