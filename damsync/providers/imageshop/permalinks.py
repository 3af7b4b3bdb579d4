"""Two-layer permalink cache.

The durable layer is the per-attachment ``permalinks`` meta field, keyed by
``{file}-{width}-{height}-{crop}``; entries are written once and replayed until
explicitly flushed. The short-lived layer is the generic cache, keyed by a hash
of the outbound permalink payload, and only dedupes identical remote calls.
"""

import hashlib
import json
import re
from datetime import datetime
from typing import Any, Optional
from urllib.parse import quote_plus

from .models import ApiError, Attachment, Document, Rendition, ResolvedSize
from .store import META_PERMALINK_TOKEN, META_PERMALINKS


def size_key(file_name: str, width: int, height: int, crop: bool) -> str:
    return f"{file_name}-{int(width)}-{int(height)}-{'1' if crop else '0'}"


def payload_cache_key(payload: dict[str, Any]) -> str:
    raw = json.dumps(payload, sort_keys=True, ensure_ascii=False)
    return "imageshop_permalink_" + hashlib.md5(raw.encode("utf-8")).hexdigest()


def site_slug(site_url: str) -> str:
    """``https://www.example.com:8080`` -> ``example``."""
    domain = re.sub(r"https?://|www\.", "", site_url or "", flags=re.IGNORECASE)
    domain = domain.split(".", 1)[0]
    domain = domain.split(":", 1)[0]
    return domain.split("/", 1)[0]


def _token_date(created_at: str) -> str:
    try:
        return datetime.fromisoformat(created_at).strftime("%Y-%m-%d %H:%M:%S")
    except (TypeError, ValueError):
        return created_at or ""


class PermalinkCache:
    def __init__(self, store, cache, client, site_url: str, ttl: int = 3600, batch: bool = True, log_func=None):
        self.store = store
        self.cache = cache
        self.client = client
        self.site_url = site_url
        self.ttl = ttl
        self.batch = batch
        self.log_func = log_func

    def _log(self, level: str, message: str, detail: Optional[dict] = None):
        if self.log_func:
            self.log_func(level, "permalinks", message, json.dumps(detail or {}, ensure_ascii=False))

    def token_for(self, attachment: Attachment) -> str:
        """Stable per-attachment token base, generated once and memoized."""
        token = self.store.get(attachment.local_id, META_PERMALINK_TOKEN)
        if token:
            return token
        digest = hashlib.md5(f"{_token_date(attachment.created_at)}-{attachment.title}".encode("utf-8")).hexdigest()
        token = f"{site_slug(self.site_url)}-{int(attachment.local_id)}-{digest}"
        self.store.set(attachment.local_id, META_PERMALINK_TOKEN, token)
        return token

    def lookup(self, attachment_id: int, key: str) -> Optional[ResolvedSize]:
        index = self.store.get(attachment_id, META_PERMALINKS, {}) or {}
        entry = index.get(key) if isinstance(index, dict) else None
        if not entry:
            return None
        return ResolvedSize.model_validate(entry)

    def remember(self, attachment_id: int, key: str, resolved: ResolvedSize):
        self.store.merge(attachment_id, META_PERMALINKS, {key: resolved.model_dump()})

    def forget(self, attachment_id: int, keys: list[str]):
        self.store.drop_entries(attachment_id, META_PERMALINKS, keys)

    def flush_index(self, attachment_id: int):
        with self.store.lock(attachment_id):
            self.store.delete_meta(attachment_id, META_PERMALINKS)

    def fetch_url(self, document_id: int, width: int, height: int, token: Optional[str] = None) -> str | ApiError:
        payload = self.client.permalink_payload(document_id, width, height, token)
        cache_key = payload_cache_key(payload)
        cached = self.cache.get(cache_key)
        if cached:
            return cached
        ret = self.client.create_permalink(payload)
        if isinstance(ret, ApiError):
            return ret
        self.cache.set(cache_key, ret, self.ttl)
        return ret

    def session(self, batch: Optional[bool] = None) -> "ResolverSession":
        return ResolverSession(self, self.batch if batch is None else batch)


class ResolverSession:
    """Unit of work for one request or job.

    Holds fetched documents and probe-corrected originals for its lifetime,
    and, in batch mode, the permalink payloads to announce in a single bulk
    call on ``flush()``. Use as a context manager or call ``close()``.
    """

    def __init__(self, permalinks: PermalinkCache, batch: bool = True):
        self.permalinks = permalinks
        self.batch = batch
        self.documents: dict[int, Document | ApiError] = {}
        self.originals: dict[int, Optional[Rendition]] = {}
        self._queued: dict[str, dict[str, Any]] = {}
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    @property
    def pending(self) -> int:
        return len(self._queued)

    def document(self, document_id: int) -> Document | ApiError:
        if document_id not in self.documents:
            self.documents[document_id] = self.permalinks.client.get_document(document_id)
        return self.documents[document_id]

    def permalink_url(
        self,
        document_id: int,
        width: int,
        height: int,
        token: str,
        file_name: str,
        attachment_id: Optional[int] = None,
        key: Optional[str] = None,
    ) -> Optional[str]:
        client = self.permalinks.client
        if self.batch:
            payload = client.permalink_payload(document_id, width, height, token)
            base = client.cdn_url(token, width, height)
            cache_key = payload_cache_key(payload)
            item = self._queued.setdefault(cache_key, {"payload": payload, "url": base, "refs": []})
            if attachment_id is not None and key is not None:
                item["refs"].append((attachment_id, key))
        else:
            base = self.permalinks.fetch_url(document_id, width, height, token)
            if isinstance(base, ApiError):
                self.permalinks._log(
                    "WARNING",
                    "permalink_fetch_failed",
                    {"document_id": document_id, "width": width, "height": height, "error": base.message},
                )
                return None
        return f"{base.rstrip('/')}/{quote_plus(file_name or '')}"

    def flush(self) -> int:
        """Announce queued permalinks in one call. Returns how many were sent."""
        queued, self._queued = self._queued, {}
        cache = self.permalinks.cache
        pending = {k: v for k, v in queued.items() if not cache.get(k)}
        if not pending:
            return 0

        ret = self.permalinks.client.create_permalinks([v["payload"] for v in pending.values()])
        if isinstance(ret, ApiError):
            by_attachment: dict[int, list[str]] = {}
            for item in pending.values():
                for attachment_id, key in item["refs"]:
                    by_attachment.setdefault(attachment_id, []).append(key)
            for attachment_id, keys in by_attachment.items():
                self.permalinks.forget(attachment_id, keys)
            self.permalinks._log(
                "WARNING",
                "permalink_batch_failed",
                {"count": len(pending), "code": ret.code, "error": ret.message},
            )
            return 0

        for cache_key, item in pending.items():
            cache.set(cache_key, item["url"], self.permalinks.ttl)
        return len(pending)

    def close(self):
        if self.closed:
            return
        self.closed = True
        self.flush()
