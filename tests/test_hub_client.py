"""Tests for hubmirror.hub.client with a mocked HTTP session."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from hubmirror.hub import HubClient
from hubmirror.registry import FetchError, NotFoundError


def _response(payload=None, status=200, next_url=None):
    response = MagicMock()
    response.status_code = status
    response.url = "https://hub.test/api"
    response.json.return_value = payload
    response.links = {"next": {"url": next_url}} if next_url else {}
    return response


@pytest.fixture
def session():
    s = MagicMock(spec=requests.Session)
    s.headers = {}
    return s


def test_token_sent_as_bearer(session):
    HubClient(endpoint="https://hub.test/", token="hf_secret", session=session)
    assert session.headers["Authorization"] == "Bearer hf_secret"


def test_listing_follows_next_links(session):
    session.get.side_effect = [
        _response([{"id": "a/1"}, {"id": "a/2"}], next_url="https://hub.test/api/models?cursor=abc"),
        _response([{"id": "a/3"}]),
    ]
    client = HubClient(endpoint="https://hub.test", page_size=2, session=session)

    pages = list(client.iter_listing_pages({"pipeline_tag": "text-generation"}))

    assert pages == [[{"id": "a/1"}, {"id": "a/2"}], [{"id": "a/3"}]]
    first, second = session.get.call_args_list
    assert first.args[0] == "https://hub.test/api/models"
    assert first.kwargs["params"] == {"limit": 2, "pipeline_tag": "text-generation"}
    assert second.args[0] == "https://hub.test/api/models?cursor=abc"
    assert second.kwargs["params"] is None


def test_listing_stops_at_limit(session):
    session.get.side_effect = [
        _response([{"id": "a/1"}, {"id": "a/2"}], next_url="https://hub.test/next"),
        _response([{"id": "a/3"}, {"id": "a/4"}], next_url="https://hub.test/next2"),
    ]
    client = HubClient(endpoint="https://hub.test", session=session)

    pages = list(client.iter_listing_pages(limit=3))

    assert pages == [[{"id": "a/1"}, {"id": "a/2"}], [{"id": "a/3"}]]
    assert session.get.call_count == 2


def test_model_info_quotes_id(session):
    session.get.return_value = _response({"id": "org/model name"})
    client = HubClient(endpoint="https://hub.test", session=session)

    assert client.model_info("org/model name") == {"id": "org/model name"}
    assert session.get.call_args.args[0] == "https://hub.test/api/models/org/model%20name"


def test_model_info_not_found(session):
    session.get.return_value = _response(status=404)
    client = HubClient(endpoint="https://hub.test", session=session)

    with pytest.raises(NotFoundError) as exc:
        client.model_info("x/y")
    assert exc.value.model_id == "x/y"


def test_http_errors_become_fetch_errors(session):
    session.get.return_value = _response(status=503)
    client = HubClient(endpoint="https://hub.test", session=session)

    with pytest.raises(FetchError) as exc:
        client.model_info("x/y")
    assert exc.value.status_code == 503


def test_connection_errors_become_fetch_errors(session):
    session.get.side_effect = requests.ConnectionError("refused")
    client = HubClient(endpoint="https://hub.test", session=session)

    with pytest.raises(FetchError, match="refused"):
        list(client.iter_listing_pages())


def test_invalid_json(session):
    response = _response()
    response.json.side_effect = ValueError("no json")
    session.get.return_value = response
    client = HubClient(endpoint="https://hub.test", session=session)

    with pytest.raises(FetchError, match="invalid JSON"):
        client.model_info("x/y")


def test_list_tree_scoped_path(session):
    session.get.return_value = _response([{"type": "file", "path": "sub/a.bin", "size": 1}])
    client = HubClient(endpoint="https://hub.test", session=session)

    entries = client.list_tree("org/model", path="/sub/")

    assert entries == [{"type": "file", "path": "sub/a.bin", "size": 1}]
    call = session.get.call_args
    assert call.args[0] == "https://hub.test/api/models/org/model/tree/main/sub"
    assert call.kwargs["params"] == {"recursive": "true"}


@pytest.mark.integration
def test_live_model_info():
    with HubClient() as client:
        data = client.model_info("openai-community/gpt2")
    assert data["id"] == "openai-community/gpt2"
