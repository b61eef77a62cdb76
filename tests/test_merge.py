"""Tests for the merge engine."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from hypothesis import given
from hypothesis import strategies as st

from hubmirror.registry import (
    ModelRecord,
    Sibling,
    ValidationError,
    merge,
    parse_detail,
    parse_listing,
    parse_tree,
    reconcile_siblings,
)

T0 = datetime(2024, 1, 1, tzinfo=UTC)
T1 = T0 + timedelta(hours=1)
T2 = T0 + timedelta(hours=2)


def _listing(**overrides):
    raw = {
        "id": "org/model",
        "downloads": 10,
        "likes": 1,
        "pipeline_tag": "text-generation",
        "library_name": "transformers",
        "tags": ["a", "b"],
        "lastModified": "2024-01-01T00:00:00Z",
    }
    raw.update(overrides)
    return parse_listing(raw)


def test_first_payload_creates_record():
    result = merge(None, _listing(), now=T0)

    assert result.created and result.changed
    assert result.outcome == "created"
    assert result.record.created_at == result.record.updated_at == T0
    assert result.record.tags == ["a", "b"]


def test_merge_is_idempotent():
    first = merge(None, _listing(), now=T0).record
    again = merge(first, _listing(), now=T1)

    assert again.changed is False
    assert again.outcome == "unchanged"
    assert again.record is first
    assert again.record.updated_at == T0


def test_listing_updates_counters_and_bumps_updated_at():
    first = merge(None, _listing(), now=T0).record
    result = merge(first, _listing(downloads=500), now=T1)

    assert result.changed
    assert result.record.downloads == 500
    assert result.record.created_at == T0
    assert result.record.updated_at == T1


def test_listing_keeps_detail_only_fields():
    detail = parse_detail(
        {
            "id": "org/model",
            "config": {"model_type": "gpt2"},
            "cardData": {"license": "mit"},
            "siblings": [{"rfilename": "config.json", "size": 5}],
        }
    )
    base = merge(None, detail, now=T0).record
    result = merge(base, _listing(), now=T1)

    assert result.record.config == {"model_type": "gpt2"}
    assert result.record.card_data == {"license": "mit"}
    assert result.record.model_type == "gpt2"
    assert result.record.siblings == [Sibling("config.json", 5)]


def test_detail_overwrites_pass_through_fields():
    base = merge(None, parse_detail({"id": "org/model", "config": {"a": 1}}), now=T0).record
    result = merge(base, parse_detail({"id": "org/model", "config": {"b": 2}}), now=T1)

    assert result.record.config == {"b": 2}


def test_sibling_merge_is_additive():
    base = merge(
        None,
        parse_detail(
            {
                "id": "org/model",
                "siblings": [{"rfilename": "a.bin", "size": 1}, {"rfilename": "b.bin", "size": 2}],
            }
        ),
        now=T0,
    ).record

    tree = parse_tree(
        "org/model",
        [{"type": "file", "path": "b.bin", "size": 20}, {"type": "file", "path": "c.bin", "size": 3}],
    )
    result = merge(base, tree, now=T1)

    assert result.record.siblings == [Sibling("a.bin", 1), Sibling("b.bin", 20), Sibling("c.bin", 3)]


def test_tree_listing_only_touches_files():
    base = merge(None, _listing(), now=T0).record
    tree = parse_tree("org/model", [{"type": "file", "path": "x.bin", "size": 1}])
    result = merge(base, tree, now=T1)

    assert result.record.downloads == base.downloads
    assert result.record.tags == base.tags
    assert [s.relative_filename for s in result.record.siblings] == ["x.bin"]


def test_unknown_size_never_erases_known_size():
    merged = reconcile_siblings([Sibling("a.bin", 10)], [Sibling("a.bin", None), Sibling("b.bin", None)])
    assert merged == [Sibling("a.bin", 10), Sibling("b.bin", None)]


def test_stale_payload_is_ignored():
    base = merge(None, _listing(lastModified="2024-06-01T00:00:00Z", downloads=100), now=T0).record
    result = merge(base, _listing(lastModified="2024-01-01T00:00:00Z", downloads=5), now=T1)

    assert result.stale
    assert not result.changed
    assert result.record.downloads == 100


def test_stale_payload_still_contributes_files():
    base = merge(None, parse_detail({"id": "org/model", "lastModified": "2024-06-01T00:00:00Z"}), now=T0).record
    old_detail = parse_detail(
        {
            "id": "org/model",
            "lastModified": "2024-01-01T00:00:00Z",
            "config": {"old": True},
            "siblings": [{"rfilename": "a.bin"}],
        }
    )
    result = merge(base, old_detail, now=T1)

    assert result.stale and result.changed
    assert result.record.config == {}
    assert result.record.siblings == [Sibling("a.bin")]


def test_force_bypasses_freshness_guard():
    base = merge(None, _listing(lastModified="2024-06-01T00:00:00Z", downloads=100), now=T0).record
    result = merge(base, _listing(lastModified="2024-01-01T00:00:00Z", downloads=5), force=True, now=T1)

    assert result.changed
    assert result.record.downloads == 5


def test_bad_json_field_is_skipped_not_fatal():
    base = merge(None, parse_detail({"id": "org/model", "config": {"a": 1}}), now=T0).record
    result = merge(
        base,
        parse_detail({"id": "org/model", "config": ["wrong"], "cardData": {"license": "mit"}}),
        now=T1,
    )

    assert result.field_errors.keys() == {"config"}
    assert result.record.config == {"a": 1}
    assert result.record.card_data == {"license": "mit"}


def test_non_finite_config_is_skipped():
    base = merge(None, parse_detail({"id": "org/model", "downloads": 1, "config": {"a": 1}}), now=T0).record
    result = merge(
        base,
        parse_detail({"id": "org/model", "downloads": 5, "config": {"x": float("nan")}}),
        now=T1,
    )

    assert result.field_errors.keys() == {"config"}
    assert result.changed
    assert result.record.downloads == 5
    assert result.record.config == {"a": 1}


def test_mismatched_ids_rejected():
    base = merge(None, _listing(), now=T0).record
    with pytest.raises(ValueError):
        merge(base, _listing(id="other/model"), now=T1)


def test_negative_counter_fails_validation():
    base = merge(None, _listing(), now=T0).record
    with pytest.raises(ValidationError):
        merge(base, _listing(downloads=-3), now=T1)


def test_updated_at_never_moves_backwards():
    base = merge(None, _listing(), now=T2).record
    result = merge(base, _listing(downloads=11), now=T1)

    assert result.record.updated_at == T2
    assert result.record.created_at <= result.record.updated_at


@given(st.lists(st.integers(min_value=0, max_value=10**9), min_size=1, max_size=8))
def test_timestamps_stay_ordered(download_counts):
    record: ModelRecord | None = None
    for i, count in enumerate(download_counts):
        record = merge(record, _listing(downloads=count), now=T0 + timedelta(minutes=i)).record
        assert record.created_at == T0
        assert record.created_at <= record.updated_at
