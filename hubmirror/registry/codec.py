"""
JSON field codec.

Two-way conversion between the typed sub-structures of a record and their
stored JSON text. Object-shaped fields default to ``{}`` and array-shaped
fields to ``[]``; ``null`` is never stored. Array order is preserved.
"""

from __future__ import annotations

import copy
import json
import math
from collections.abc import Mapping
from typing import Any

from hubmirror.registry.errors import (
    MalformedJsonError,
    SchemaMismatchError,
    ValidationError,
)
from hubmirror.registry.record import Sibling


OBJECT_FIELDS: tuple[str, ...] = ("config", "card_data", "transformers_info", "safetensors")
ARRAY_FIELDS: tuple[str, ...] = ("tags", "widget_data", "siblings", "spaces")

JSON_FIELDS: dict[str, type] = {
    **{name: dict for name in OBJECT_FIELDS},
    **{name: list for name in ARRAY_FIELDS},
}

STRING_ARRAY_FIELDS: tuple[str, ...] = ("tags", "spaces")


def _shape(field: str) -> type:
    try:
        return JSON_FIELDS[field]
    except KeyError:
        raise KeyError(f"Not a JSON field: {field}") from None


def shape_default(field: str) -> dict | list:
    return {} if _shape(field) is dict else []


def sibling_from_json(field: str, item: Any) -> Sibling:
    """
    Build a Sibling from any of the manifest shapes the registry uses.

    Accepts detail entries (``rfilename``/``size``), tree entries
    (``path``/``size``/``lfs.size``) and already-typed siblings.
    """
    if isinstance(item, Sibling):
        return item
    if not isinstance(item, Mapping):
        raise SchemaMismatchError(field, f"sibling entry must be an object, got {type(item).__name__}")

    name = item.get("rfilename") or item.get("relative_filename") or item.get("path")
    size = item.get("size_in_bytes", item.get("size"))
    lfs = item.get("lfs")
    if isinstance(lfs, Mapping) and lfs.get("size") is not None:
        size = lfs["size"]

    try:
        return Sibling(relative_filename=name, size_in_bytes=size)
    except ValidationError as e:
        raise SchemaMismatchError(field, str(e)) from e


def sibling_to_json(sibling: Sibling) -> dict[str, Any]:
    return {"rfilename": sibling.relative_filename, "size": sibling.size_in_bytes}


def _require_finite(field: str, value: Any):
    # NaN and Infinity have no JSON spelling
    if isinstance(value, float):
        if not math.isfinite(value):
            raise SchemaMismatchError(field, f"non-finite number {value!r}")
    elif isinstance(value, Mapping):
        for item in value.values():
            _require_finite(field, item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _require_finite(field, item)


def _check(field: str, value: Any) -> Any:
    shape = _shape(field)
    if value is None:
        return shape_default(field)

    if shape is list:
        if not isinstance(value, (list, tuple)):
            raise SchemaMismatchError(field, f"expected array, got {type(value).__name__}")
        if field == "siblings":
            return [sibling_from_json(field, item) for item in value]
        if field in STRING_ARRAY_FIELDS:
            for item in value:
                if not isinstance(item, str):
                    raise SchemaMismatchError(
                        field, f"array items must be strings, got {type(item).__name__}"
                    )
            return list(value)
        _require_finite(field, value)
        return copy.deepcopy(list(value))

    if not isinstance(value, Mapping):
        raise SchemaMismatchError(field, f"expected object, got {type(value).__name__}")
    _require_finite(field, value)
    return copy.deepcopy(dict(value))


def decode_field(field: str, text: str | bytes | None) -> Any:
    """
    Decode stored JSON text into the field's typed value.

    Raises:
        MalformedJsonError: text is not valid JSON
        SchemaMismatchError: JSON value has the wrong shape for the field
    """
    if text is None or (isinstance(text, (str, bytes, bytearray)) and not text.strip()):
        return shape_default(field)
    try:
        value = json.loads(text)
    except (TypeError, ValueError) as e:
        raise MalformedJsonError(field, str(e)) from e
    return _check(field, value)


def coerce_field(field: str, value: Any) -> Any:
    """Accept decoded values or JSON text; return the checked, decoded value."""
    if isinstance(value, (str, bytes, bytearray)):
        return decode_field(field, value)
    return _check(field, value)


def encode_field(field: str, value: Any) -> str:
    """Encode a field value as compact JSON text."""
    value = coerce_field(field, value)
    if field == "siblings":
        value = [sibling_to_json(s) for s in value]
    try:
        return json.dumps(value, ensure_ascii=False, allow_nan=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise SchemaMismatchError(field, f"value is not JSON serialisable: {e}") from e
