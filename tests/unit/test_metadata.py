"""
Unit tests for the metadata client
"""

import json

import pytest
import requests

from image_server.metadata import MetadataClient, get_field
from tests.conftest import METADATA_URL
from tests.helpers import fake_response

DOC = {"Images": [{"ImageAssetRefs": [{"URI": "mgid:file:gsp:a:/x.jpg", "Width": 10, "Height": 10}]}]}
URL = METADATA_URL + "jp/example.com?id=item-1"


def _body(*docs):
    return json.dumps({"response": {"docs": list(docs)}}).encode()


@pytest.fixture
def client(ctx):
    return MetadataClient(ctx)


class TestGetField:
    def test_exact_then_case_insensitive(self):
        assert get_field({"URI": 1, "uri": 2}, "uri") == 2
        assert get_field({"imageAssetRefs": [1]}, "ImageAssetRefs") == [1]
        assert get_field({"a": 1}, "b", "dflt") == "dflt"
        assert get_field(["not", "a", "dict"], "a") is None


class TestMetadataClient:
    """Test cases for MetadataClient"""

    def test_build_url(self, client):
        assert client.build_url("item-1", "example.com") == URL

    def test_fetch_caches_raw_body(self, client, session, ctx):
        session.get.return_value = fake_response(200, _body(DOC))
        assert client.fetch_descriptor("item-1", "example.com") == DOC
        assert ctx.store.get_object(URL) == _body(DOC)
        session.get.assert_called_once_with(URL, timeout=10.0)

    def test_cached_body_skips_network(self, client, session, ctx):
        ctx.store.put_object(URL, _body(DOC))
        assert client.fetch_descriptor("item-1", "example.com") == DOC
        session.get.assert_not_called()

    def test_force_refresh_bypasses_cache(self, client, session, ctx):
        ctx.store.put_object(URL, _body({"stale": True}))
        session.get.return_value = fake_response(200, _body(DOC))
        assert client.fetch_descriptor("item-1", "example.com", force_refresh=True) == DOC
        assert ctx.store.get_object(URL) == _body(DOC)

    def test_http_error_not_cached(self, client, session, ctx):
        session.get.return_value = fake_response(502, b"bad gateway")
        assert client.fetch_descriptor("item-1", "example.com") is None
        assert ctx.store.get_object(URL) is None

    def test_connection_error_returns_none(self, client, session):
        session.get.side_effect = requests.ConnectionError("down")
        assert client.fetch_raw("item-1", "example.com") is None

    @pytest.mark.parametrize("body", [b"not json", _body(), _body(DOC, DOC), b'{"response": {}}'])
    def test_anything_but_one_doc_is_not_found(self, client, session, ctx, body):
        session.get.return_value = fake_response(200, body)
        assert client.fetch_descriptor("item-1", "example.com") is None
        # the raw body is cached even though it does not parse to one document
        assert ctx.store.get_object(URL) == body
        assert client.fetch_descriptor("item-1", "example.com") is None
        session.get.assert_called_once()
