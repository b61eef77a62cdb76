"""
Merge engine.

Reconciles an incoming payload with the stored record for the same model
and produces the next record state. The engine is pure: it never touches
the store, it only decides what should be written.

Rules by payload kind:

- LISTING_SUMMARY / DETAIL overwrite scalar fields and ``tags`` that are
  present in the payload.
- DETAIL alone overwrites the opaque JSON fields (config, card data, ...).
- TREE_LISTING only contributes files.
- Files are always merged additively: matching filenames are updated,
  new ones appended, nothing is removed.
- A payload whose ``last_modified`` is older than the stored one is stale:
  only its files are merged, unless the caller forces the overwrite.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from hubmirror.logging_config import get_logger
from hubmirror.registry.codec import coerce_field
from hubmirror.registry.errors import JsonFieldError
from hubmirror.registry.payloads import Payload, PayloadKind
from hubmirror.registry.record import (
    SCALAR_FIELDS,
    ModelRecord,
    Sibling,
    parse_timestamp,
    utcnow,
)

logger = get_logger(__name__)

PASS_THROUGH_FIELDS: tuple[str, ...] = (
    "config",
    "card_data",
    "transformers_info",
    "safetensors",
    "widget_data",
    "spaces",
)

_MISSING = object()


@dataclass
class MergeResult:
    """Outcome of one merge."""

    record: ModelRecord
    changed: bool
    created: bool = False
    stale: bool = False
    field_errors: dict[str, str] = field(default_factory=dict)

    @property
    def outcome(self) -> str:
        if self.created:
            return "created"
        if self.changed:
            return "updated"
        if self.stale:
            return "stale"
        return "unchanged"


def reconcile_siblings(
    existing: Iterable[Sibling],
    incoming: Iterable[Sibling],
) -> list[Sibling]:
    """
    Additive file merge.

    Existing order is kept, unseen filenames are appended in incoming
    order, and an incoming entry without a size never erases a known size.
    """
    merged: dict[str, Sibling] = {s.relative_filename: s for s in existing}
    for sibling in incoming:
        current = merged.get(sibling.relative_filename)
        if current is not None and sibling.size_in_bytes is None:
            continue
        merged[sibling.relative_filename] = sibling
    return list(merged.values())


def _json_value(payload: Payload, name: str, errors: dict[str, str]) -> Any:
    raw = getattr(payload, name, None)
    if raw is None:
        return _MISSING
    try:
        return coerce_field(name, raw)
    except JsonFieldError as exc:
        errors[name] = exc.message
        logger.warning(
            "merge_field_skipped",
            model_id=payload.model_id,
            field=name,
            kind=payload.kind.value,
            error=exc.message,
        )
        return _MISSING


def _is_stale(existing: ModelRecord, payload: Payload) -> bool:
    incoming = getattr(payload, "last_modified", None)
    if incoming is None or existing.last_modified is None:
        return False
    return incoming < existing.last_modified


def _create(payload: Payload, now: datetime, errors: dict[str, str]) -> MergeResult:
    values: dict[str, Any] = {"model_id": payload.model_id}

    for name in SCALAR_FIELDS:
        value = getattr(payload, name, None)
        if value is not None:
            values[name] = value

    for name in ("tags", *PASS_THROUGH_FIELDS):
        value = _json_value(payload, name, errors)
        if value is not _MISSING:
            values[name] = value

    siblings = _json_value(payload, "siblings", errors)
    if siblings is not _MISSING:
        values["siblings"] = reconcile_siblings([], siblings)

    record = ModelRecord(**values, created_at=now, updated_at=now)
    return MergeResult(record=record, changed=True, created=True, field_errors=errors)


def merge(
    existing: ModelRecord | None,
    payload: Payload,
    *,
    force: bool = False,
    now: datetime | None = None,
) -> MergeResult:
    """
    Produce the record to persist for ``payload``.

    Args:
        existing: Stored record for the same model id, or None
        payload: Parsed registry payload
        force: Bypass the freshness guard (manual refresh)
        now: Merge timestamp (defaults to current UTC time)

    Returns:
        MergeResult; ``changed`` is False when nothing needs writing

    Raises:
        ValidationError: the merged record is invalid (e.g. negative counter)
    """
    now = parse_timestamp(now) if now is not None else utcnow()
    errors: dict[str, str] = {}

    if existing is None:
        return _create(payload, now, errors)

    if existing.model_id != payload.model_id:
        raise ValueError(
            f"Cannot merge payload for {payload.model_id} into {existing.model_id}"
        )

    stale = not force and _is_stale(existing, payload)
    if stale:
        logger.info(
            "merge_stale_payload",
            model_id=payload.model_id,
            kind=payload.kind.value,
            incoming=str(payload.last_modified),
            stored=str(existing.last_modified),
        )

    updates: dict[str, Any] = {}

    if payload.kind is not PayloadKind.TREE_LISTING and not stale:
        for name in SCALAR_FIELDS:
            value = getattr(payload, name, None)
            if value is not None:
                updates[name] = value

        overwrite = ["tags"]
        if payload.kind is PayloadKind.DETAIL:
            overwrite.extend(PASS_THROUGH_FIELDS)
        for name in overwrite:
            value = _json_value(payload, name, errors)
            if value is not _MISSING:
                updates[name] = value

    siblings = _json_value(payload, "siblings", errors)
    if siblings is not _MISSING:
        merged = reconcile_siblings(existing.siblings, siblings)
        if merged != existing.siblings:
            updates["siblings"] = merged

    if not updates:
        return MergeResult(record=existing, changed=False, stale=stale, field_errors=errors)

    candidate = dataclasses.replace(existing, **updates)
    if candidate.content_equals(existing):
        return MergeResult(record=existing, changed=False, stale=stale, field_errors=errors)

    # updated_at never moves backwards for one id
    candidate.updated_at = max(now, existing.updated_at)
    return MergeResult(record=candidate, changed=True, stale=stale, field_errors=errors)
