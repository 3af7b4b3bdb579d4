import json
from pathlib import Path

import requests

from damsync.providers.imageshop.client import ImageshopClient
from damsync.providers.imageshop.db import init_db
from damsync.providers.imageshop.models import ApiError, Document, SearchResult
from damsync.providers.imageshop.store import Cache


class _FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None, reason="OK", headers=None, content=b""):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else ("" if payload is None else json.dumps(payload))
        self.reason = reason
        self.headers = headers or {}
        self.content = content

    def json(self):
        return json.loads(self.text)


class _FakeSession:
    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def head(self, url, **kwargs):
        self.calls.append(("HEAD", url, kwargs))
        return self.responses.pop(0)

    def get(self, url, **kwargs):
        self.calls.append(("GET", url, kwargs))
        return self.responses.pop(0)


def _client(*responses, **kwargs) -> tuple[ImageshopClient, _FakeSession]:
    session = _FakeSession(responses)
    kwargs.setdefault("site_url", "https://www.example.com/")
    client = ImageshopClient(api_token="secret-token", interface_name="Web", session=session, **kwargs)
    return client, session


def test_requests_carry_token_and_json_body():
    client, session = _client(_FakeResponse(payload={"Url": "https://dl/1"}))

    assert client.download(1) == "https://dl/1"

    method, url, kwargs = session.calls[0]
    assert method == "POST"
    assert url == "https://api.imageshop.no/Download"
    assert kwargs["headers"]["token"] == "secret-token"
    assert json.loads(kwargs["data"])["DocumentId"] == 1
    assert kwargs["timeout"] == 30


def test_http_error_becomes_api_error():
    client, _ = _client(_FakeResponse(status_code=403, reason="Forbidden"))

    ret = client.get_document(1)

    assert isinstance(ret, ApiError)
    assert ret.code == 403
    assert ret.transient is False


def test_transport_error_is_transient():
    client, _ = _client(requests.ConnectionError("refused"))

    ret = client.get_document(1)

    assert isinstance(ret, ApiError)
    assert ret.code == 0
    assert ret.transient is True


def test_invalid_json_is_reported():
    client, _ = _client(_FakeResponse(text="<html>"))

    assert isinstance(client.get_document(1), ApiError)


def test_get_document_parses_model_and_missing_id_is_not_found():
    client, session = _client(
        _FakeResponse(payload={"DocumentID": 5, "Name": "x", "Tags": "a, b", "SubDocumentList": None}),
        _FakeResponse(payload={}),
    )
    client.set_language("sv_SE")

    doc = client.get_document(5)
    assert isinstance(doc, Document)
    assert doc.tags == ["a", "b"]
    assert doc.renditions == []
    assert session.calls[0][2]["params"] == {"language": "sv", "DocumentID": 5}

    missing = client.get_document(6)
    assert isinstance(missing, ApiError)
    assert missing.code == 404


def test_empty_body_counts_as_success():
    client, _ = _client(_FakeResponse(text=""))

    assert client.delete_document(9) is True


def test_search_merges_defaults_with_criteria():
    client, session = _client(
        _FakeResponse(payload=[{"Id": 7, "Name": "Web"}, {"Id": 8, "Name": "Print"}]),
        _FakeResponse(payload={"DocumentList": [{"DocumentID": 1}, {"Name": "no id"}], "NumberOfDocuments": 1}),
    )

    ret = client.search({"Querystring": "sunset", "Pagesize": 0})

    assert isinstance(ret, SearchResult)
    assert [d.id for d in ret.documents] == [1]
    body = json.loads(session.calls[1][2]["data"])
    assert body["InterfaceIds"] == [7, 8]
    assert body["Querystring"] == "sunset"
    assert body["Pagesize"] == 0
    assert body["SortDirection"] == "DESC"
    assert body["DocumentType"] == ["IMAGE"]


def test_interfaces_are_shared_through_cache(tmp_path: Path):
    db = str(tmp_path / "service.db")
    init_db(db)
    cache = Cache(db)
    first, first_session = _client(_FakeResponse(payload=[{"Id": 7, "Name": "Web"}]), cache=cache)
    second, second_session = _client(cache=cache)

    assert first.get_interface_by_name("Web") == {"Id": 7, "Name": "Web"}
    assert second.get_interface_by_id("7") == {"Id": 7, "Name": "Web"}
    assert len(first_session.calls) == 1
    assert second_session.calls == []


def test_permalink_payload_and_cdn_url():
    client, _ = _client()

    payload = client.permalink_payload(42, 800, 600, "example-3-abc")

    assert payload["documentid"] == 42
    assert payload["cropmode"] == "ZOOM"
    assert (payload["width"], payload["height"]) == (800, 600)
    assert payload["permalinktoken"] == "example-3-abc-800x600"
    assert payload["optionalurlhint"] == "https://www.example.com/"
    assert client.cdn_url("example-3-abc", 800, 600) == "https://v.imgi.no/example-3-abc-800x600"
    assert "permalinktoken" not in client.permalink_payload(42, 800, 600)


def test_create_document_flattens_path_and_targets_interface():
    client, session = _client(_FakeResponse(payload={"docId": 77}))

    assert client.create_document("QUJD", "2026/10/sunset.jpg") == 77

    body = json.loads(session.calls[0][2]["data"])
    assert body["fileName"] == "2026_10_sunset.jpg"
    assert body["interfaceName"] == "Web"
    assert body["doc"]["interfaces"] == [{"id": "Web"}]


def test_raw_fetch_helpers():
    client, _ = _client(
        _FakeResponse(headers={"content-type": "image/png"}),
        _FakeResponse(content=b"png"),
        _FakeResponse(status_code=404),
    )

    assert client.head_content_type("https://files/x") == "image/png"
    assert client.fetch_file("https://files/x") == b"png"
    ret = client.fetch_file("https://files/y")
    assert isinstance(ret, ApiError) and ret.code == 404
