"""Tests for registry payload parsing."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from hubmirror.registry import (
    PayloadKind,
    ValidationError,
    parse_detail,
    parse_listing,
    parse_tree,
)


def test_parse_listing_entry():
    payload = parse_listing(
        {
            "_id": "621ffdc036468d709f174338",
            "id": "openai-community/gpt2",
            "likes": 2500,
            "downloads": 900000,
            "private": False,
            "pipeline_tag": "text-generation",
            "library_name": "transformers",
            "tags": ["transformers", "pytorch", "gpt2"],
            "lastModified": "2024-02-19T10:57:45.000Z",
        }
    )

    assert payload.kind is PayloadKind.LISTING_SUMMARY
    assert payload.model_id == "openai-community/gpt2"
    assert payload.downloads == 900000
    assert payload.gated is None
    assert payload.last_modified == datetime(2024, 2, 19, 10, 57, 45, tzinfo=UTC)


def test_parse_detail_maps_camel_case_keys():
    payload = parse_detail(
        {
            "id": "org/model",
            "gated": "manual",
            "cardData": {"license": "mit"},
            "transformersInfo": {"auto_model": "AutoModel"},
            "widgetData": [{"text": "hi"}],
            "usedStorage": 1234,
            "config": {"model_type": "llama"},
            "siblings": [{"rfilename": "config.json"}],
            "spaces": ["org/demo"],
        }
    )

    assert payload.kind is PayloadKind.DETAIL
    assert payload.gated is True
    assert payload.card_data == {"license": "mit"}
    assert payload.transformers_info == {"auto_model": "AutoModel"}
    assert payload.widget_data == [{"text": "hi"}]
    assert payload.used_storage == 1234
    assert payload.model_type == "llama"
    assert payload.siblings == [{"rfilename": "config.json"}]


def test_absent_fields_stay_none():
    payload = parse_detail({"id": "org/model"})

    assert payload.config is None
    assert payload.downloads is None
    assert payload.siblings is None


@pytest.mark.parametrize(
    "raw",
    [
        {},
        {"id": ""},
        {"id": "org/model", "downloads": "many"},
        {"id": "org/model", "likes": True},
        {"id": "org/model", "downloads": 1.7},
        {"id": "org/model", "downloads": "1.7"},
        {"id": "org/model", "likes": float("nan")},
        {"id": "org/model", "likes": float("inf")},
        {"id": "org/model", "lastModified": "not a date"},
        ["org/model"],
    ],
)
def test_invalid_entries(raw):
    with pytest.raises(ValidationError):
        parse_listing(raw)


def test_whole_float_counts_accepted():
    payload = parse_listing({"id": "org/model", "downloads": 12.0})
    assert payload.downloads == 12
    assert isinstance(payload.downloads, int)


def test_parse_tree_drops_directories():
    payload = parse_tree(
        "TheBloke/Llama-2-70B-GGUF",
        [
            {"type": "directory", "path": "llama-2-70b.Q8_0"},
            {"type": "file", "path": "llama-2-70b.Q8_0/part-a.gguf", "size": 10},
            {"type": "file", "path": "llama-2-70b.Q8_0/part-b.gguf", "size": 20},
        ],
        path="llama-2-70b.Q8_0",
    )

    assert payload.kind is PayloadKind.TREE_LISTING
    assert payload.path == "llama-2-70b.Q8_0"
    assert [e["path"] for e in payload.siblings] == [
        "llama-2-70b.Q8_0/part-a.gguf",
        "llama-2-70b.Q8_0/part-b.gguf",
    ]
