"""
Table/field exclusion index and table→topic→schema routes.

Both are parsed from the compact strings used in settings:

    table_fields_filter:  test\\..*;test1.test2;test1.test3:id,name
    table_to_topic_map:   db.tbl1:topic1:schema1;db.tbl2:topic2
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional

from ..errors import ConfigurationError
from .router import PatternRouter

NOT_SET_FIELD = "__notSet"


def _split_items(spec: str) -> list[str]:
    return [item.strip() for item in spec.split(";") if item.strip()]


def _compile_check(pattern: str) -> None:
    try:
        re.compile(pattern)
    except re.error as exc:
        raise ConfigurationError(f"invalid table pattern {pattern!r}: {exc}") from exc


class FieldFilterIndex:
    """Two-level exclusion lookup: (table qualifier, field or sentinel) → excluded.

    A table-level rule (sentinel field) excludes every row of matching
    tables regardless of any field rules registered for the same pattern.
    """

    def __init__(self, cache_size: int = 4096):
        self._tables: PatternRouter[bool] = PatternRouter(cache_size)
        self._fields: PatternRouter[set[str]] = PatternRouter(cache_size)
        self._field_sets: dict[str, set[str]] = {}

    @classmethod
    def parse(cls, spec: Optional[str], cache_size: int = 4096) -> "FieldFilterIndex":
        index = cls(cache_size)
        if not spec:
            return index
        for item in _split_items(spec):
            if ":" in item:
                parts = item.split(":")
                if len(parts) != 2:
                    raise ConfigurationError(
                        "table_fields_filter format incorrect eg: test1\\..*;db.tbl1:id,name"
                    )
                table = parts[0].strip()
                fields = [f.strip() for f in parts[1].split(",") if f.strip()]
                if not table or not fields:
                    raise ConfigurationError(f"table_fields_filter entry incomplete: {item!r}")
                _compile_check(table)
                index.exclude_fields(table, fields)
            else:
                _compile_check(item)
                index.exclude_table(item)
        return index

    def exclude_table(self, pattern: str) -> None:
        self._tables.put(pattern, True)

    def exclude_fields(self, pattern: str, fields: Iterable[str]) -> None:
        excluded = self._field_sets.setdefault(pattern, set())
        excluded.update(fields)
        self._fields.put(pattern, excluded)

    def contains(self, qualifier: str, field: str = NOT_SET_FIELD) -> bool:
        if field == NOT_SET_FIELD:
            return bool(self._tables.get(qualifier, False))
        excluded = self._fields.get(qualifier)
        return bool(excluded) and field in excluded

    def is_table_excluded(self, qualifier: str) -> bool:
        return self.contains(qualifier)

    def is_field_excluded(self, qualifier: str, field: str) -> bool:
        return self.contains(qualifier, field)

    def __bool__(self) -> bool:
        return bool(len(self._tables) or len(self._fields))


@dataclass(frozen=True)
class TopicRoute:
    table_pattern: str
    topic: str
    schema_name: Optional[str] = None


class TopicRoutes:
    """Table pattern → topic routing plus the topic → schema name map."""

    def __init__(self, routes: Iterable[TopicRoute] = (), cache_size: int = 4096):
        self._router: PatternRouter[str] = PatternRouter(cache_size)
        self._schemas: dict[str, str] = {}
        self.routes: list[TopicRoute] = []
        for route in routes:
            self.add(route)

    @classmethod
    def parse(
        cls,
        spec: Optional[str],
        *,
        require_schema: bool = False,
        cache_size: int = 4096,
    ) -> "TopicRoutes":
        routes = []
        for item in _split_items(spec or ""):
            parts = [p.strip() for p in item.split(":")]
            if len(parts) not in (2, 3):
                raise ConfigurationError(
                    "table_to_topic_map format incorrect eg: db.tbl1:topic1:schema1"
                )
            if not parts[0]:
                raise ConfigurationError("db.table cannot be empty")
            if not parts[1]:
                raise ConfigurationError("topic cannot be empty")
            schema = parts[2] if len(parts) == 3 else None
            if len(parts) == 3 and not schema:
                raise ConfigurationError("schema cannot be empty")
            if require_schema and not schema:
                raise ConfigurationError(
                    f"table_to_topic_map entry {item!r} needs a schema name when avro is enabled"
                )
            _compile_check(parts[0])
            routes.append(TopicRoute(parts[0], parts[1], schema))
        return cls(routes, cache_size)

    def add(self, route: TopicRoute) -> None:
        self._router.put(route.table_pattern, route.topic)
        if route.schema_name:
            self._schemas[route.topic] = route.schema_name
        self.routes.append(route)

    def topic_for(self, qualifier: str, default: Optional[str] = None) -> Optional[str]:
        return self._router.get(qualifier, default)

    def schema_for(self, topic: str) -> Optional[str]:
        return self._schemas.get(topic)

    @property
    def topics(self) -> list[str]:
        return list(dict.fromkeys(r.topic for r in self.routes))

    @property
    def router(self) -> PatternRouter[str]:
        return self._router

    def __len__(self) -> int:
        return len(self.routes)
