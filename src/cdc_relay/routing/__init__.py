"""Pattern-keyed routing: literal table/field identifiers resolved against regex rules."""

from .router import PatternRouter
from .filters import NOT_SET_FIELD, FieldFilterIndex, TopicRoute, TopicRoutes

__all__ = [
    "PatternRouter",
    "FieldFilterIndex",
    "NOT_SET_FIELD",
    "TopicRoute",
    "TopicRoutes",
]
