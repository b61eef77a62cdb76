"""
Canonical in-memory model record.

One ``ModelRecord`` per registry model id. JSON-typed fields hold decoded
Python values here; the codec turns them into stored text.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import UTC, datetime
from typing import Any

from hubmirror.registry.errors import JsonFieldError, ValidationError


SCALAR_FIELDS: tuple[str, ...] = (
    "private",
    "gated",
    "disabled",
    "pipeline_tag",
    "library_name",
    "model_type",
    "downloads",
    "likes",
    "sha",
    "last_modified",
    "used_storage",
)

COUNTER_FIELDS: tuple[str, ...] = ("downloads", "likes", "used_storage")
FLAG_FIELDS: tuple[str, ...] = ("private", "gated", "disabled")
OPTIONAL_TEXT_FIELDS: tuple[str, ...] = ("pipeline_tag", "library_name", "model_type", "sha")


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or datetime into an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as e:
            raise ValidationError(f"Invalid timestamp: {value!r}") from e
    else:
        raise ValidationError(f"Invalid timestamp type: {type(value).__name__}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def format_timestamp(value: datetime | None) -> str | None:
    """Fixed-width UTC text, so stored timestamps sort chronologically."""
    if value is None:
        return None
    return value.astimezone(UTC).isoformat(timespec="microseconds")


@dataclass(frozen=True)
class Sibling:
    """One file in a model repository manifest."""

    relative_filename: str
    size_in_bytes: int | None = None

    def __post_init__(self):
        if not isinstance(self.relative_filename, str) or not self.relative_filename:
            raise ValidationError("Sibling filename must be a non-empty string")
        size = self.size_in_bytes
        if size is not None and (isinstance(size, bool) or not isinstance(size, int) or size < 0):
            raise ValidationError(
                f"Sibling {self.relative_filename!r} has invalid size {size!r}"
            )


@dataclass
class ModelRecord:
    """Complete mirrored metadata for one model."""

    # Identity
    model_id: str

    # Flags
    private: bool = False
    gated: bool = False
    disabled: bool = False

    # Classification
    pipeline_tag: str | None = None
    library_name: str | None = None
    model_type: str | None = None

    # Counters
    downloads: int = 0
    likes: int = 0

    # Version markers
    sha: str | None = None
    last_modified: datetime | None = None

    # JSON fields
    tags: list[str] = field(default_factory=list)
    config: dict[str, Any] = field(default_factory=dict)
    card_data: dict[str, Any] = field(default_factory=dict)
    transformers_info: dict[str, Any] = field(default_factory=dict)
    safetensors: dict[str, Any] = field(default_factory=dict)
    widget_data: list[Any] = field(default_factory=list)
    siblings: list[Sibling] = field(default_factory=list)
    spaces: list[str] = field(default_factory=list)

    used_storage: int = 0

    # Bookkeeping
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        from hubmirror.registry.codec import JSON_FIELDS, coerce_field

        if not isinstance(self.model_id, str) or not self.model_id.strip():
            raise ValidationError("model_id must be a non-empty string")

        for name in FLAG_FIELDS:
            setattr(self, name, bool(getattr(self, name)))

        for name in COUNTER_FIELDS:
            value = getattr(self, name)
            if value is None:
                setattr(self, name, 0)
                continue
            if isinstance(value, bool) or not isinstance(value, int):
                raise ValidationError(f"{self.model_id}: {name} must be an integer, got {value!r}")
            if value < 0:
                raise ValidationError(f"{self.model_id}: {name} must be >= 0, got {value}")

        for name in OPTIONAL_TEXT_FIELDS:
            value = getattr(self, name)
            if value is not None and not isinstance(value, str):
                raise ValidationError(f"{self.model_id}: {name} must be a string")

        for name in JSON_FIELDS:
            try:
                setattr(self, name, coerce_field(name, getattr(self, name)))
            except JsonFieldError as e:
                raise ValidationError(f"{self.model_id}: {e}") from e

        names = [s.relative_filename for s in self.siblings]
        if len(names) != len(set(names)):
            raise ValidationError(f"{self.model_id}: duplicate sibling filenames")

        self.last_modified = parse_timestamp(self.last_modified)
        self.created_at = parse_timestamp(self.created_at)
        self.updated_at = parse_timestamp(self.updated_at)
        if self.created_at is None or self.updated_at is None:
            raise ValidationError(f"{self.model_id}: created_at and updated_at are required")
        if self.created_at > self.updated_at:
            raise ValidationError(f"{self.model_id}: created_at is after updated_at")

    @property
    def author(self) -> str | None:
        """Namespace part of the id (``org`` in ``org/name``)."""
        if "/" not in self.model_id:
            return None
        return self.model_id.split("/", 1)[0]

    @property
    def total_file_size(self) -> int:
        """Sum of known sibling sizes."""
        return sum(s.size_in_bytes or 0 for s in self.siblings)

    def sibling_map(self) -> dict[str, Sibling]:
        return {s.relative_filename: s for s in self.siblings}

    def content_equals(self, other: ModelRecord) -> bool:
        """Equal in every field except ``updated_at``."""
        return all(
            getattr(self, f.name) == getattr(other, f.name)
            for f in fields(self)
            if f.name != "updated_at"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serialisable dictionary."""
        return {
            "model_id": self.model_id,
            "private": self.private,
            "gated": self.gated,
            "disabled": self.disabled,
            "pipeline_tag": self.pipeline_tag,
            "library_name": self.library_name,
            "model_type": self.model_type,
            "downloads": self.downloads,
            "likes": self.likes,
            "sha": self.sha,
            "last_modified": format_timestamp(self.last_modified),
            "tags": list(self.tags),
            "config": self.config,
            "card_data": self.card_data,
            "transformers_info": self.transformers_info,
            "safetensors": self.safetensors,
            "widget_data": self.widget_data,
            "siblings": [
                {"relative_filename": s.relative_filename, "size_in_bytes": s.size_in_bytes}
                for s in self.siblings
            ],
            "spaces": list(self.spaces),
            "used_storage": self.used_storage,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }
