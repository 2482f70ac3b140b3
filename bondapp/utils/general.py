"""Helpers for the plain-JSON values stored in synchronised collections.

Collections are lists of dicts.  Whatever a screen puts in them has to
survive ``json.dumps`` on the way to SQLite and the jsonb column on the way
to Supabase, and both sides must see the same value afterwards.  Values are
therefore normalised once, where they enter the sync layer.
"""

from __future__ import annotations

import copy
import math
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Union

__all__ = ["JsonValue", "clone_collection", "convert_to_json_safe"]

JsonValue = Union[None, str, int, bool, float, Dict[str, "JsonValue"], List["JsonValue"]]


def _finite(value: float) -> Union[float, None]:
    # jsonb rejects NaN and Infinity.
    return value if math.isfinite(value) else None


def _temporal(value: date) -> str:
    return value.isoformat()


_SCALAR_CONVERTERS: Dict[type, Callable[[Any], JsonValue]] = {
    float: _finite,
    Decimal: lambda value: _finite(float(value)),
    datetime: _temporal,
    date: _temporal,
}


def convert_to_json_safe(data: Any) -> JsonValue:
    """Return *data* rewritten with only JSON-native values.

    * ``str``, ``int``, ``bool`` and ``None`` pass through.
    * ``float`` and ``Decimal`` become floats; non-finite ones become ``None``.
    * ``date`` and ``datetime`` become ISO-8601 strings.
    * Mapping keys become strings; tuples and sets become lists.
    * pydantic models are dumped first.
    * Anything else is stored as ``str(value)``.
    """
    if data is None or isinstance(data, (str, bool, int)):
        return data

    for kind in type(data).__mro__:
        converter = _SCALAR_CONVERTERS.get(kind)
        if converter is not None:
            return converter(data)

    if isinstance(data, dict):
        return {str(field): convert_to_json_safe(value) for field, value in data.items()}
    if isinstance(data, (list, tuple, set, frozenset)):
        return [convert_to_json_safe(item) for item in data]

    dump = getattr(data, "model_dump", None)
    if callable(dump):
        return convert_to_json_safe(dump())

    return str(data)


def clone_collection(data: List[JsonValue]) -> List[JsonValue]:
    """Deep copy, so a repair never edits a list the caller still holds."""
    return copy.deepcopy(data)
