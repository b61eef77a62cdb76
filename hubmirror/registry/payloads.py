"""
Typed registry payloads.

Raw registry JSON is parsed into one of three tagged variants. ``None`` on
any optional attribute means the payload did not carry that field. JSON
pass-through values are kept as received; the merge engine validates them
field by field.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar

from hubmirror.registry.errors import ValidationError
from hubmirror.registry.record import parse_timestamp


class PayloadKind(str, Enum):
    """Which fetch produced a payload; decides what a merge may overwrite."""

    LISTING_SUMMARY = "listing_summary"
    DETAIL = "detail"
    TREE_LISTING = "tree_listing"


@dataclass
class ListingSummary:
    """One entry of a paginated model listing."""

    model_id: str
    pipeline_tag: str | None = None
    library_name: str | None = None
    downloads: int | None = None
    likes: int | None = None
    tags: Any = None
    private: bool | None = None
    gated: bool | None = None
    disabled: bool | None = None
    sha: str | None = None
    last_modified: datetime | None = None

    kind: ClassVar[PayloadKind] = PayloadKind.LISTING_SUMMARY


@dataclass
class ModelDetail(ListingSummary):
    """Full per-model detail record."""

    model_type: str | None = None
    used_storage: int | None = None
    config: Any = None
    card_data: Any = None
    transformers_info: Any = None
    safetensors: Any = None
    widget_data: Any = None
    siblings: Any = None
    spaces: Any = None

    kind: ClassVar[PayloadKind] = PayloadKind.DETAIL


@dataclass
class TreeListing:
    """File-tree listing, optionally scoped to a folder of the repository."""

    model_id: str
    siblings: list[Any] = field(default_factory=list)
    path: str | None = None

    kind: ClassVar[PayloadKind] = PayloadKind.TREE_LISTING


Payload = ListingSummary | ModelDetail | TreeListing


# -------------------------------------------------------------------------
# Parsers
# -------------------------------------------------------------------------


def _model_id(raw: Mapping[str, Any]) -> str:
    if not isinstance(raw, Mapping):
        raise ValidationError(f"Payload must be an object, got {type(raw).__name__}")
    model_id = raw.get("id") or raw.get("modelId") or raw.get("model_id")
    if not isinstance(model_id, str) or not model_id.strip():
        raise ValidationError("Payload has no model id")
    return model_id


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def _flag(value: Any) -> bool | None:
    # gated is either a boolean or a gating mode such as "auto" / "manual"
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip().lower() not in ("", "false", "0", "none")
    return bool(value)


def _count(raw: Mapping[str, Any], *keys: str) -> int | None:
    value = _first(raw, *keys)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"Expected integer for {keys[0]}, got boolean")
    if isinstance(value, float) and not value.is_integer():
        raise ValidationError(f"Expected integer for {keys[0]}, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Expected integer for {keys[0]}, got {value!r}") from e


def _text(raw: Mapping[str, Any], *keys: str) -> str | None:
    value = _first(raw, *keys)
    return None if value is None else str(value)


def _listing_fields(raw: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "model_id": _model_id(raw),
        "pipeline_tag": _text(raw, "pipeline_tag", "pipelineTag"),
        "library_name": _text(raw, "library_name", "libraryName"),
        "downloads": _count(raw, "downloads"),
        "likes": _count(raw, "likes"),
        "tags": raw.get("tags"),
        "private": _flag(raw.get("private")),
        "gated": _flag(raw.get("gated")),
        "disabled": _flag(raw.get("disabled")),
        "sha": _text(raw, "sha"),
        "last_modified": parse_timestamp(_first(raw, "lastModified", "last_modified")),
    }


def parse_listing(raw: Mapping[str, Any]) -> ListingSummary:
    """Parse one listing entry."""
    return ListingSummary(**_listing_fields(raw))


def parse_detail(raw: Mapping[str, Any]) -> ModelDetail:
    """Parse a model detail object."""
    values = _listing_fields(raw)
    config = raw.get("config")
    model_type = _text(raw, "model_type", "modelType")
    if model_type is None and isinstance(config, Mapping) and config.get("model_type"):
        model_type = str(config["model_type"])
    return ModelDetail(
        **values,
        model_type=model_type,
        used_storage=_count(raw, "usedStorage", "used_storage"),
        config=config,
        card_data=_first(raw, "cardData", "card_data"),
        transformers_info=_first(raw, "transformersInfo", "transformers_info"),
        safetensors=raw.get("safetensors"),
        widget_data=_first(raw, "widgetData", "widget_data"),
        siblings=raw.get("siblings"),
        spaces=raw.get("spaces"),
    )


def parse_tree(
    model_id: str,
    entries: Iterable[Any],
    path: str | None = None,
) -> TreeListing:
    """
    Parse a tree listing.

    Directory entries are dropped; file entries are kept as received.
    """
    if not isinstance(model_id, str) or not model_id.strip():
        raise ValidationError("Tree listing has no model id")
    files = [
        entry
        for entry in entries
        if not (isinstance(entry, Mapping) and entry.get("type", "file") != "file")
    ]
    return TreeListing(model_id=model_id, siblings=files, path=path or None)
