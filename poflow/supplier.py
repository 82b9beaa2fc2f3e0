"""Supplier name extraction from AI parsing output.

The canonical AI output carries ``supplier.name``. Older or differently
prompted model runs have produced a handful of other shapes, so extraction
tries an explicit, ordered list of strategies and returns the first usable
name. There is deliberately no recursive search: an output matching none of
these shapes is treated as a parsing problem.
"""

from __future__ import annotations

from typing import Any, Callable, Optional

SupplierStrategy = Callable[[dict[str, Any]], Optional[str]]

_REJECTED = {"", "unknown", "n/a", "none", "null"}


def _path(*keys: str) -> SupplierStrategy:
    def strategy(data: dict[str, Any]) -> Optional[str]:
        current: Any = data
        for key in keys:
            if not isinstance(current, dict):
                return None
            current = current.get(key)
        return current if isinstance(current, str) else None

    strategy.__name__ = ".".join(keys)
    return strategy


SUPPLIER_STRATEGIES: tuple[SupplierStrategy, ...] = (
    _path("supplier", "name"),
    _path("supplier"),
    _path("supplierName"),
    _path("extractedData", "supplier", "name"),
    _path("extractedData", "supplierName"),
    _path("extractedData", "vendor", "name"),
    _path("rawData", "supplier", "name"),
    _path("vendor", "name"),
)


def usable_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return None if value.lower() in _REJECTED else value


def extract_supplier_name(
    ai_result: dict[str, Any],
    strategies: tuple[SupplierStrategy, ...] = SUPPLIER_STRATEGIES,
) -> Optional[str]:
    """Return the first usable supplier name found by ``strategies``."""
    for strategy in strategies:
        name = usable_name(strategy(ai_result))
        if name:
            return name
    return None
