"""Entry → OutboundMessage conversion (per-row or transaction-batched)."""

from __future__ import annotations

from typing import Optional

from ..counters import CounterService
from ..schema_cache import SchemaCache, schema_cache
from ..settings import RelaySettings
from .base import BaseEntryConverter, EntryConverter, decode_row_change, decode_transaction_end
from .row import RowEntryConverter
from .transaction import TransactionEntryConverter


def build_converter(
    settings: RelaySettings,
    *,
    cache: Optional[SchemaCache] = None,
    counters: Optional[CounterService] = None,
) -> BaseEntryConverter:
    """Pick the converter variant named by ``settings.converter_mode``."""
    cls = TransactionEntryConverter if settings.converter_mode == "transaction" else RowEntryConverter
    return cls(settings, cache if cache is not None else schema_cache(), counters)


__all__ = [
    "EntryConverter",
    "BaseEntryConverter",
    "RowEntryConverter",
    "TransactionEntryConverter",
    "build_converter",
    "decode_row_change",
    "decode_transaction_end",
]
