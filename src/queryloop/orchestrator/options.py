"""Sparse per-item option resolution."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TypeVar

T = TypeVar("T")


def resolve_option(index: int, values: Sequence[T], default: T) -> T:
    """Return the option for item ``index``.

    An empty sequence yields ``default`` for every index. Otherwise the value at
    ``index`` is used, and indexes past the end reuse the last supplied value,
    so ``-D db1 -D db2`` for five queries runs items 2..4 against ``db2``.
    """

    if not values:
        return default
    return values[min(index, len(values) - 1)]
