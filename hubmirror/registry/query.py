"""
Query translator.

Maps registry-style listing criteria (filter, search, sort, limit, ...)
onto SQL against the local ``models`` table, with the same ordering and
pagination contract the registry exposes.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from hubmirror.registry.errors import InvalidQueryError
from hubmirror.registry.record import ModelRecord


DEFAULT_LIMIT = 10
DEFAULT_MAX_LIMIT = 1000

SORT_COLUMNS: dict[str, str] = {
    "downloads": "downloads",
    "likes": "likes",
    "created_at": "created_at",
    "last_modified": "last_modified",
}

SORT_ALIASES: dict[str, str] = {
    "createdAt": "created_at",
    "lastModified": "last_modified",
}

# Count-like keys sort high-to-low unless told otherwise, time keys oldest first.
DEFAULT_DIRECTIONS: dict[str, str] = {
    "downloads": "desc",
    "likes": "desc",
    "created_at": "asc",
    "last_modified": "asc",
}

DIRECTION_ALIASES: dict[str, str] = {
    "asc": "asc",
    "ascending": "asc",
    "1": "asc",
    "desc": "desc",
    "descending": "desc",
    "-1": "desc",
}

# Task categories the registry uses for ``pipeline_tag``. A free-text
# ``filter`` drawn from this vocabulary is treated as a pipeline match.
PIPELINE_TAGS: frozenset[str] = frozenset(
    {
        "audio-classification",
        "audio-to-audio",
        "automatic-speech-recognition",
        "depth-estimation",
        "document-question-answering",
        "feature-extraction",
        "fill-mask",
        "image-classification",
        "image-feature-extraction",
        "image-segmentation",
        "image-text-to-text",
        "image-to-image",
        "image-to-text",
        "image-to-video",
        "mask-generation",
        "object-detection",
        "question-answering",
        "reinforcement-learning",
        "sentence-similarity",
        "summarization",
        "table-question-answering",
        "text-classification",
        "text-generation",
        "text-ranking",
        "text-to-audio",
        "text-to-image",
        "text-to-speech",
        "text-to-video",
        "text2text-generation",
        "token-classification",
        "translation",
        "video-classification",
        "visual-question-answering",
        "zero-shot-classification",
        "zero-shot-image-classification",
        "zero-shot-object-detection",
    }
)

_TAG_MEMBER_SQL = "EXISTS (SELECT 1 FROM json_each(models.tags) WHERE json_each.value = ?)"


@dataclass
class QueryCriteria:
    """Registry-style listing request. Every criterion is optional."""

    limit: int = DEFAULT_LIMIT
    skip: int = 0
    filter: str | None = None
    pipeline_tag: str | None = None
    library: str | None = None
    tags: list[str] = field(default_factory=list)
    search: str | None = None
    author: str | None = None
    sort: str | None = None
    direction: str | int | None = None

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> QueryCriteria:
        """
        Build criteria from request parameters.

        Values may be strings (as in a query string) or lists for repeated
        keys. Every ``tags`` value may itself be comma-separated; other
        repeated keys keep their last value.
        """

        def _one(key: str) -> Any:
            value = params.get(key)
            if isinstance(value, (list, tuple)):
                return value[-1] if value else None
            return value

        def _int(key: str, default: int) -> int:
            value = _one(key)
            if value is None or value == "":
                return default
            try:
                return int(value)
            except (TypeError, ValueError) as e:
                raise InvalidQueryError(f"{key} must be an integer, got {value!r}") from e

        def _str(key: str) -> str | None:
            value = _one(key)
            if value is None:
                return None
            value = str(value).strip()
            return value or None

        raw_tags = params.get("tags") or []
        if isinstance(raw_tags, str):
            raw_tags = [raw_tags]
        tags = [
            part.strip()
            for value in raw_tags
            for part in str(value).split(",")
            if part.strip()
        ]

        return cls(
            limit=_int("limit", DEFAULT_LIMIT),
            skip=_int("skip", 0),
            filter=_str("filter"),
            pipeline_tag=_str("pipeline_tag"),
            library=_str("library"),
            tags=tags,
            search=_str("search"),
            author=_str("author"),
            sort=_str("sort"),
            direction=_str("direction"),
        )


@dataclass
class QueryPlan:
    """SQL and parameters for one page."""

    sql: str
    params: list[Any]
    limit: int
    skip: int
    sort: str | None
    direction: str | None


@dataclass
class QueryPage:
    """One page of results."""

    items: list[ModelRecord]
    skip: int
    limit: int
    has_more: bool

    @property
    def next_skip(self) -> int | None:
        return self.skip + len(self.items) if self.has_more else None

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class QueryTranslator:
    """Turns QueryCriteria into SQL over the ``models`` table."""

    def __init__(self, max_limit: int = DEFAULT_MAX_LIMIT):
        if max_limit < 1:
            raise ValueError("max_limit must be >= 1")
        self.max_limit = max_limit

    def resolve_sort(self, criteria: QueryCriteria) -> tuple[str | None, str | None]:
        """Validate sort key and direction; return canonical names."""
        if criteria.sort is None:
            if criteria.direction is not None:
                self._direction(criteria.direction)
            return None, None

        key = SORT_ALIASES.get(criteria.sort, criteria.sort)
        if key not in SORT_COLUMNS:
            raise InvalidQueryError(
                f"Unsupported sort key {criteria.sort!r}; "
                f"expected one of {', '.join(sorted(SORT_COLUMNS))}"
            )
        if criteria.direction is None:
            return key, DEFAULT_DIRECTIONS[key]
        return key, self._direction(criteria.direction)

    @staticmethod
    def _direction(value: str | int) -> str:
        direction = DIRECTION_ALIASES.get(str(value).strip().lower())
        if direction is None:
            raise InvalidQueryError(f"Unsupported sort direction {value!r}")
        return direction

    def validate(self, criteria: QueryCriteria) -> int:
        """Check paging bounds and return the effective limit."""
        if isinstance(criteria.limit, bool) or not isinstance(criteria.limit, int):
            raise InvalidQueryError(f"limit must be an integer, got {criteria.limit!r}")
        if isinstance(criteria.skip, bool) or not isinstance(criteria.skip, int):
            raise InvalidQueryError(f"skip must be an integer, got {criteria.skip!r}")
        if criteria.limit <= 0:
            raise InvalidQueryError(f"limit must be > 0, got {criteria.limit}")
        if criteria.skip < 0:
            raise InvalidQueryError(f"skip must be >= 0, got {criteria.skip}")
        return min(criteria.limit, self.max_limit)

    def where(self, criteria: QueryCriteria) -> tuple[str, list[Any]]:
        """WHERE clause (starting with ``WHERE 1=1``) and its parameters."""
        sql = " WHERE 1=1"
        params: list[Any] = []

        if criteria.filter:
            if criteria.filter in PIPELINE_TAGS:
                sql += " AND pipeline_tag = ?"
                params.append(criteria.filter)
            else:
                sql += f" AND (library_name = ? OR {_TAG_MEMBER_SQL})"
                params.extend([criteria.filter, criteria.filter])

        if criteria.pipeline_tag:
            sql += " AND pipeline_tag = ?"
            params.append(criteria.pipeline_tag)

        if criteria.library:
            sql += " AND library_name = ?"
            params.append(criteria.library)

        for tag in dict.fromkeys(criteria.tags or []):
            sql += f" AND {_TAG_MEMBER_SQL}"
            params.append(tag)

        if criteria.search:
            sql += " AND instr(unicode_lower(model_id), ?) > 0"
            params.append(criteria.search.lower())

        if criteria.author:
            sql += " AND model_id LIKE ? ESCAPE '\\'"
            params.append(f"{_escape_like(criteria.author)}/%")

        return sql, params

    def translate(self, criteria: QueryCriteria) -> QueryPlan:
        """
        Build the page query.

        One extra row is fetched so the caller can tell whether more
        results exist without counting the table.

        Raises:
            InvalidQueryError: bad limit, skip, sort key or direction
        """
        limit = self.validate(criteria)
        sort, direction = self.resolve_sort(criteria)
        where, params = self.where(criteria)

        order = "model_id ASC"
        if sort is not None:
            order = f"{SORT_COLUMNS[sort]} {direction.upper()}, model_id ASC"

        sql = f"SELECT * FROM models{where} ORDER BY {order} LIMIT ? OFFSET ?"
        params.extend([limit + 1, criteria.skip])
        return QueryPlan(
            sql=sql,
            params=params,
            limit=limit,
            skip=criteria.skip,
            sort=sort,
            direction=direction,
        )

    def translate_count(self, criteria: QueryCriteria) -> tuple[str, list[Any]]:
        """COUNT query for the same filters (paging and sort ignored)."""
        self.resolve_sort(criteria)
        where, params = self.where(criteria)
        return f"SELECT COUNT(*) FROM models{where}", params
