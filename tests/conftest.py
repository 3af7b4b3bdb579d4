from io import BytesIO
from pathlib import Path

import pytest
from PIL import Image

from damsync.core.config import AppConfig
from damsync.core.services import build_services
from damsync.providers.imageshop import client as client_module
from damsync.providers.imageshop.client import ImageshopClient
from damsync.providers.imageshop.models import ApiError


def make_document(doc_id: int, width: int = 4000, height: int = 3000, name: str = "sunset", **extra) -> dict:
    doc = {
        "DocumentID": doc_id,
        "Name": name,
        "FileName": f"{name}.jpg",
        "IsImage": True,
        "InterfaceList": [{"InterfaceID": 7, "InterfaceName": "Web"}],
        "SubDocumentList": [
            {
                "VersionName": "Original",
                "IsOriginal": True,
                "Width": width,
                "Height": height,
                "SubDocumentPath": f"{doc_id}/original.jpg",
            }
        ],
    }
    doc.update(extra)
    return doc


def png_bytes(width: int, height: int) -> bytes:
    buf = BytesIO()
    Image.new("RGB", (width, height), (200, 120, 40)).save(buf, format="PNG")
    return buf.getvalue()


class FakeImageshopClient(ImageshopClient):
    """Real client with the HTTP layer replaced by an in-memory route table."""

    def __init__(self, **kwargs):
        kwargs.setdefault("api_token", "secret-token")
        kwargs.setdefault("interface_name", "Web")
        kwargs.setdefault("site_url", "https://www.example.com")
        super().__init__(**kwargs)
        self.documents: dict[int, dict] = {}
        self.requests: list[tuple[str, str, dict | None, object]] = []
        self.links: dict[str, str] = {}
        self.files: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}
        self.fetched: list[str] = []
        self.deleted: list[int] = []
        self.search_handler = lambda body: {"DocumentList": [], "NumberOfDocuments": 0}
        self.next_doc_id = 1000
        self.routes = {
            ("GET", client_module.WHOAMI): {"Name": "tester"},
            ("GET", client_module.CAN_UPLOAD): True,
            ("GET", client_module.GET_INTERFACES): [{"Id": 7, "Name": "Web"}],
            ("GET", client_module.GET_DOCUMENT): lambda params, body: self.documents.get(int(params["DocumentID"])) or {},
            ("GET", client_module.GET_DOCUMENT_LINK): lambda params, body: self.links.get(params["subdocumentpath"]) or {},
            ("POST", client_module.CREATE_PERMALINK): lambda params, body: {"url": self.cdn_url(body["permalinktoken"].rsplit("-", 1)[0], body["width"], body["height"])},
            ("POST", client_module.CREATE_PERMALINKS): None,
            ("POST", client_module.CREATE_DOCUMENT): lambda params, body: {"docId": self._allocate_doc_id()},
            ("POST", client_module.DOWNLOAD): lambda params, body: {"Url": f"https://files.example/{body['DocumentId']}"},
            ("POST", client_module.SEARCH): lambda params, body: self.search_handler(body),
            ("GET", client_module.DELETE_DOCUMENT): lambda params, body: self.deleted.append(int(params["documentId"])),
            ("PUT", client_module.SET_METADATA): None,
        }

    def _allocate_doc_id(self) -> int:
        self.next_doc_id += 1
        return self.next_doc_id

    def execute_request(self, method, path, params=None, body=None):
        self.requests.append((method, path, params, body))
        route = self.routes.get((method, path))
        if isinstance(route, ApiError):
            return route
        if callable(route):
            return route(params or {}, body)
        return route

    def calls(self, path: str) -> list:
        return [r for r in self.requests if r[1] == path]

    def head_content_type(self, url):
        return self.content_types.get(url, "image/png")

    def fetch_file(self, url):
        self.fetched.append(url)
        if url in self.files:
            return self.files[url]
        return ApiError(code=404, message="file_not_found")


@pytest.fixture()
def cfg(tmp_path: Path) -> AppConfig:
    cfg = AppConfig()
    cfg.database.path = str(tmp_path / "runtime" / "service.db")
    cfg.logging.file = str(tmp_path / "runtime" / "service.log")
    cfg.site.uploads_dir = str(tmp_path / "uploads")
    cfg.site.site_url = "https://www.example.com"
    cfg.site.locale = "nb_NO"
    cfg.auth.api_token = "secret-token"
    cfg.auth.upload_interface = "Web"
    return cfg


@pytest.fixture()
def fake_client() -> FakeImageshopClient:
    return FakeImageshopClient()


@pytest.fixture()
def log_records() -> list:
    return []


@pytest.fixture()
def services(cfg, fake_client, log_records):
    def log_func(level, module, message, detail=None):
        log_records.append((level, module, message, detail))

    svc = build_services(cfg, client=fake_client, log_func=log_func)
    svc.sync.sleep = lambda _sec: None
    return svc


@pytest.fixture()
def attachment_factory(services, cfg):
    def _create(title="sunset", document_id=501, mime_type="image/jpeg", file_path="2026/10/sunset.jpg", content=b"jpeg-bytes"):
        local_id = services.store.insert_attachment(title, file_path, mime_type, created_at="2026-10-01T12:00:00")
        if content is not None and file_path:
            target = Path(cfg.site.uploads_dir) / file_path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(content)
        if document_id:
            services.store.set(local_id, "document_id", document_id)
        return local_id

    return _create


def logged_messages(log_records: list) -> list[str]:
    return [r[2] for r in log_records]
