import json
from typing import Any, Optional

import requests

from .language import DEFAULT_LANGUAGE, resolve_language
from .models import ApiError, Document, SearchResult

BASE = "https://api.imageshop.no"
CDN_PREFIX = "https://v.imgi.no"

CAN_UPLOAD = "/Login/CanUpload"
WHOAMI = "/Login/WhoAmI"
CREATE_DOCUMENT = "/Document/CreateDocument"
GET_DOCUMENT = "/Document/GetDocumentById"
DOWNLOAD = "/Download"
CREATE_PERMALINK = "/Permalink/CreatePermaLink2"
CREATE_PERMALINKS = "/Permalink/CreatePermaLinks"
GET_INTERFACES = "/Interface/GetInterfaces"
SEARCH = "/Search2"
GET_DOCUMENT_LINK = "/Document/GetDocumentLink"
DELETE_DOCUMENT = "/Document/DeleteDocument"
SET_METADATA = "/Document/SetMetadata"

INTERFACES_CACHE_KEY = "imageshop_interfaces"
SUCCESS_CODES = (200, 201)


class ImageshopClient:
    """Thin wrapper over the Imageshop REST API.

    Every public call returns the parsed payload (or a typed model built from
    it) on success, and an ``ApiError`` otherwise. Transport failures never
    escape as exceptions.
    """

    def __init__(
        self,
        api_token: str,
        interface_name: str = "",
        site_url: str = "",
        timeout: int = 30,
        base_url: str = BASE,
        cdn_prefix: str = CDN_PREFIX,
        cache=None,
        interface_cache_ttl: int = 3600,
        session: Optional[requests.Session] = None,
    ):
        self.api_token = api_token or ""
        self.interface_name = interface_name or ""
        self.site_url = (site_url or "").rstrip("/")
        self.timeout = timeout
        self.base_url = (base_url or BASE).rstrip("/")
        self.cdn_prefix = (cdn_prefix or CDN_PREFIX).strip().rstrip("/")
        self.cache = cache
        self.interface_cache_ttl = interface_cache_ttl
        self.session = session or requests.Session()
        self.language = DEFAULT_LANGUAGE
        self._interfaces: Optional[list[dict[str, Any]]] = None

    def set_language(self, locale: str) -> str:
        self.language = resolve_language(locale)
        return self.language

    def headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "token": self.api_token,
            "Content-Type": "application/json",
        }

    def execute_request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        body: Any = None,
    ) -> Any:
        url = path if path.startswith("http") else f"{self.base_url}{path}"
        try:
            res = self.session.request(
                method,
                url,
                headers=self.headers(),
                params=params,
                data=json.dumps(body, ensure_ascii=False) if body is not None else None,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            return ApiError(code=0, message=str(e))

        if res.status_code not in SUCCESS_CODES:
            return ApiError(code=int(res.status_code), message=str(getattr(res, "reason", "") or ""))

        text = res.text or ""
        if not text.strip():
            return None
        try:
            return res.json()
        except ValueError as e:
            return ApiError(code=int(res.status_code), message=f"invalid_response: {e}")

    def can_upload(self) -> Any:
        return self.execute_request("GET", CAN_UPLOAD)

    def test_valid_token(self) -> bool:
        ret = self.execute_request("GET", WHOAMI)
        return not isinstance(ret, ApiError) and bool(ret)

    def get_interfaces(self, ignore_cache: bool = False) -> list[dict[str, Any]]:
        if self._interfaces is not None and not ignore_cache:
            return self._interfaces

        interfaces = None
        if self.cache is not None and not ignore_cache:
            interfaces = self.cache.get(INTERFACES_CACHE_KEY)

        if interfaces is None:
            ret = self.execute_request("GET", GET_INTERFACES)
            if isinstance(ret, ApiError):
                return self._interfaces or []
            interfaces = [i for i in (ret or []) if isinstance(i, dict)]
            if self.cache is not None:
                self.cache.set(INTERFACES_CACHE_KEY, interfaces, self.interface_cache_ttl)

        self._interfaces = interfaces
        return interfaces

    def get_interface_by_id(self, interface_id: Any) -> Optional[dict[str, Any]]:
        for interface in self.get_interfaces():
            if str(interface.get("Id")) == str(interface_id):
                return interface
        return None

    def get_interface_by_name(self, name: str) -> Optional[dict[str, Any]]:
        for interface in self.get_interfaces():
            if interface.get("Name") == name:
                return interface
        return None

    def search(self, criteria: Optional[dict[str, Any]] = None) -> SearchResult | ApiError:
        attributes = {
            "InterfaceIds": [i.get("Id") for i in self.get_interfaces()],
            "Language": self.language,
            "Querystring": "",
            "Page": 0,
            "Pagesize": 80,
            "DocumentType": ["IMAGE"],
            "SortBy": "DEFAULT",
            "SortDirection": "DESC",
        }
        attributes.update(criteria or {})

        ret = self.execute_request("POST", SEARCH, body=attributes)
        if isinstance(ret, ApiError):
            return ret
        if not isinstance(ret, dict):
            return ApiError(code=0, message="invalid_search_response")
        return SearchResult.from_api(ret)

    def get_document(self, document_id: int) -> Document | ApiError:
        ret = self.execute_request(
            "GET",
            GET_DOCUMENT,
            params={"language": self.language, "DocumentID": document_id},
        )
        if isinstance(ret, ApiError):
            return ret
        if not isinstance(ret, dict) or not ret.get("DocumentID"):
            return ApiError(code=404, message=f"document_not_found: {document_id}")
        return Document.model_validate(ret)

    def create_document(self, b64_content: str, file_name: str) -> int | ApiError:
        payload = {
            "bFile": b64_content,
            "fileName": (file_name or "").replace("/", "_"),
            "interfaceName": self.interface_name,
            "doc": {
                "Active": True,
                "interfaces": [{"id": self.interface_name}],
            },
        }
        ret = self.execute_request("POST", CREATE_DOCUMENT, body=payload)
        if isinstance(ret, ApiError):
            return ret
        doc_id = ret.get("docId") if isinstance(ret, dict) else None
        if not doc_id:
            return ApiError(code=0, message="create_document_no_doc_id")
        return int(doc_id)

    def delete_document(self, document_id: int) -> Any:
        # Destructive, and only unlocked on accounts that asked for it.
        ret = self.execute_request("GET", DELETE_DOCUMENT, params={"documentId": document_id})
        if isinstance(ret, ApiError):
            return ret
        return True if ret is None else ret

    def set_metadata(self, document_id: int, fields: dict[str, Any]) -> Any:
        payload = {"DocumentId": document_id}
        payload.update(fields)
        ret = self.execute_request("PUT", SET_METADATA, body=payload)
        if isinstance(ret, ApiError):
            return ret
        return True if ret is None else ret

    def download(self, document_id: int) -> str | ApiError:
        """Signed, temporary URL for the original file."""
        payload = {
            "DocumentId": document_id,
            "Quality": "OriginalFile",
            "DownloadAsAttachment": False,
        }
        ret = self.execute_request("POST", DOWNLOAD, body=payload)
        if isinstance(ret, ApiError):
            return ret
        url = ret.get("Url") if isinstance(ret, dict) else None
        if not url:
            return ApiError(code=0, message="download_no_url")
        return url

    def get_document_link(self, interface_name: str, sub_document_path: str) -> str | ApiError:
        ret = self.execute_request(
            "GET",
            GET_DOCUMENT_LINK,
            params={"interfacename": interface_name, "subdocumentpath": sub_document_path},
        )
        if isinstance(ret, ApiError):
            return ret
        if isinstance(ret, dict):
            ret = ret.get("Url") or ret.get("url")
        if not ret or not isinstance(ret, str):
            return ApiError(code=404, message="document_link_missing")
        return ret

    def permalink_token(self, token_base: str, width: int, height: int) -> str:
        return f"{token_base}-{int(width)}x{int(height)}"

    def permalink_payload(
        self,
        document_id: int,
        width: int,
        height: int,
        token: Optional[str] = None,
        crop_mode: str = "ZOOM",
    ) -> dict[str, Any]:
        payload = {
            "language": self.language,
            "documentid": document_id,
            "cropmode": crop_mode,
            "width": int(width),
            "height": int(height),
            "x1": 0,
            "y1": 0,
            "x2": 100,
            "y2": 100,
            "previewwidth": 100,
            "previewheight": 100,
            "optionalurlhint": f"{self.site_url}/",
        }
        if token is not None:
            payload["permalinktoken"] = self.permalink_token(token, width, height)
        return payload

    def create_permalink(self, payload: dict[str, Any]) -> str | ApiError:
        ret = self.execute_request("POST", CREATE_PERMALINK, body=payload)
        if isinstance(ret, ApiError):
            return ret
        url = ret.get("url") if isinstance(ret, dict) else None
        if not url:
            return ApiError(code=0, message="create_permalink_no_url")
        return url

    def get_permalink(
        self,
        document_id: int,
        width: int,
        height: int,
        crop_mode: str = "ZOOM",
        token: Optional[str] = None,
    ) -> str | ApiError:
        return self.create_permalink(self.permalink_payload(document_id, width, height, token, crop_mode))

    def create_permalinks(self, payloads: list[dict[str, Any]]) -> Any:
        """Ask the API to materialise several pre-announced permalinks in one call."""
        ret = self.execute_request("POST", CREATE_PERMALINKS, body=payloads)
        if isinstance(ret, ApiError):
            return ret
        return True if ret is None else ret

    def cdn_url(self, token: str, width: int, height: int) -> str:
        return f"{self.cdn_prefix}/{self.permalink_token(token, width, height)}"

    def head_content_type(self, url: str) -> str:
        try:
            res = self.session.head(url, timeout=self.timeout, allow_redirects=True)
        except requests.RequestException:
            return ""
        if res.status_code not in SUCCESS_CODES:
            return ""
        return str(res.headers.get("content-type", "") or "")

    def fetch_file(self, url: str) -> bytes | ApiError:
        try:
            res = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            return ApiError(code=0, message=str(e))
        if res.status_code not in SUCCESS_CODES:
            return ApiError(code=int(res.status_code), message=f"download_failed_status_{res.status_code}")
        return res.content
