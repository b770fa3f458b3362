"""Unit tests for saved search presets."""

from __future__ import annotations

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "python"))
sys.path.insert(0, os.path.dirname(__file__))

from fake_dynamodb import FakeDynamoClient
from rollmodel_shared import store
from rollmodel_shared.http_utils import ApiError
from rollmodel_shared.saved_searches import (
    create_saved_search,
    delete_saved_search,
    list_saved_searches,
    parse_saved_search_payload,
    update_saved_search,
)


@pytest.fixture
def fake(monkeypatch):
    client = FakeDynamoClient()
    monkeypatch.setattr(store, "_get_ddb", lambda: client)
    return client


def _payload(**overrides):
    payload = {"name": "Guard rounds", "query": "guard", "tag": "", "minIntensity": "", "maxIntensity": ""}
    payload.update(overrides)
    return payload


def test_payload_defaults_invalid_enums():
    parsed = parse_saved_search_payload(_payload(giOrNoGi="both", sortBy="name", sortDirection="up", isPinned=True))
    assert parsed["giOrNoGi"] == ""
    assert parsed["sortBy"] == "createdAt"
    assert parsed["sortDirection"] == "desc"
    assert parsed["isPinned"] is True
    assert "isFavorite" not in parsed


@pytest.mark.parametrize(
    "payload",
    [_payload(name="  "), _payload(tag=None), _payload(isFavorite="yes")],
)
def test_payload_errors(payload):
    with pytest.raises(ApiError) as caught:
        parse_saved_search_payload(payload)
    assert caught.value.message == "Saved search payload is invalid."


def test_malformed_records_are_skipped(fake, caplog):
    created = create_saved_search("a-1", parse_saved_search_payload(_payload()))
    store.put_item({"PK": "USER#a-1", "SK": "SAVED_SEARCH#broken", "entityType": "SAVED_SEARCH", "name": "x"})

    with caplog.at_level("WARNING"):
        searches = list_saved_searches("a-1")
    assert [s["id"] for s in searches] == [created["id"]]
    assert "skipping malformed saved search" in caplog.text


def test_update_clears_omitted_flags(fake):
    created = create_saved_search("a-1", parse_saved_search_payload(_payload(isPinned=True)))
    updated = update_saved_search("a-1", created["id"], parse_saved_search_payload(_payload(name="Renamed")))
    assert updated["name"] == "Renamed"
    assert "isPinned" not in updated
    assert updated["createdAt"] == created["createdAt"]


def test_update_and_delete_missing(fake):
    with pytest.raises(ApiError) as caught:
        update_saved_search("a-1", "nope", parse_saved_search_payload(_payload()))
    assert caught.value.status_code == 404
    with pytest.raises(ApiError):
        delete_saved_search("a-1", "nope")


def test_delete(fake):
    created = create_saved_search("a-1", parse_saved_search_payload(_payload()))
    delete_saved_search("a-1", created["id"])
    assert list_saved_searches("a-1") == []
