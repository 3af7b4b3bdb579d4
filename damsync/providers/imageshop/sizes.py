"""Size resolution: requested box -> final geometry -> delivery URL."""

import json
import math
from io import BytesIO
from typing import Optional, Sequence, Union

from PIL import Image, UnidentifiedImageError

from .errors import DamSyncError, DegenerateGeometryError
from .models import ApiError, Attachment, Document, ImageSource, Rendition, ResolvedSize, SizeSpec
from .permalinks import PermalinkCache, ResolverSession, size_key
from .store import META_MEDIA_SIZES


def processing_key(attachment_id: int) -> str:
    return f"imageshop_attachment_{int(attachment_id)}_processing"


def compute_box(width: int, height: int, crop: bool, original: Optional[Rendition]) -> Optional[tuple[int, int]]:
    """Fit a requested box inside the original, keeping its aspect ratio.

    Returns ``None`` when nothing can be sized, and raises
    ``DegenerateGeometryError`` when clamping collapses both sides to zero.
    """
    width, height = int(width), int(height)
    if width == 0 and height == 0:
        return None

    if original is None:
        # Without an original there is no ratio to derive a missing side from.
        if width == 0 or height == 0:
            return None
        return width, height

    ow, oh = original.width, original.height

    width = min(width, ow)
    height = min(height, oh)

    if width == 0 and height == 0:
        raise DegenerateGeometryError(f"degenerate_box: original={ow}x{oh}")

    if width == 0:
        width = height * ow // oh
    elif height == 0:
        height = width * oh // ow
    elif ow > width or oh > height:
        original_ratio = ow / oh
        image_ratio = width / height
        if image_ratio > original_ratio:
            width = int(math.floor(height * original_ratio + 0.5))
        else:
            height = int(math.floor(width / original_ratio + 0.5))

    if crop and width > ow:
        width = ow

    return width, height


def probe_dimensions(client, document: Document, rendition: Rendition) -> tuple[int, int]:
    """Read real pixel dimensions of an original the API reports as 0x0."""
    link = client.get_document_link(document.interface_name, rendition.path)
    if isinstance(link, ApiError) or not link:
        return 0, 0

    content_type = client.head_content_type(link)
    if not content_type or "image" not in content_type.lower():
        return 0, 0

    data = client.fetch_file(link)
    if isinstance(data, ApiError) or not data:
        return 0, 0

    try:
        with Image.open(BytesIO(data)) as img:
            width, height = img.size
    except (UnidentifiedImageError, OSError):
        return 0, 0
    return int(width), int(height)


def ratios_match(w1: int, h1: int, w2: int, h2: int) -> bool:
    """True when two boxes share an aspect ratio, allowing 1px of rounding."""
    if not (w1 and h1 and w2 and h2):
        return False
    if w1 > w2:
        large_w, large_h, small_w, small_h = w1, h1, w2, h2
    else:
        large_w, large_h, small_w, small_h = w2, h2, w1, h1
    scale = small_w / large_w
    constrained_w = int(round(large_w * scale))
    constrained_h = int(round(large_h * scale))
    return abs(constrained_w - small_w) <= 1 and abs(constrained_h - small_h) <= 1


class SizeResolver:
    def __init__(self, store, client, permalinks: PermalinkCache, log_func):
        self.store = store
        self.client = client
        self.permalinks = permalinks
        self.log_func = log_func

    def _log(self, level: str, message: str, detail: dict):
        self.log_func(level, "sizes", message, json.dumps(detail, ensure_ascii=False))

    def session(self) -> ResolverSession:
        return self.permalinks.session()

    def original_for(self, session: ResolverSession, document: Document) -> Optional[Rendition]:
        """The document's original rendition, probed at most once per session when it reports no size."""
        if document.id in session.originals:
            return session.originals[document.id]

        original = document.original()
        if original is not None and not original.has_dimensions:
            width, height = probe_dimensions(self.client, document, original)
            self._log(
                "INFO",
                "original_dimensions_probed",
                {"document_id": document.id, "width": width, "height": height},
            )
            original = original.with_dimensions(width, height)

        session.originals[document.id] = original
        return original

    def resolve_size(
        self,
        attachment: Attachment,
        spec: SizeSpec,
        session: Optional[ResolverSession] = None,
    ) -> Optional[ResolvedSize]:
        """Resolve one size for an attachment, or ``None`` to fall back to the local file."""
        if not spec.is_original and spec.width == 0 and spec.height == 0:
            return None
        if not attachment.remote_document_id:
            return None

        owned = session is None
        session = session or self.session()
        try:
            if spec.is_original:
                return self.resolve_original(attachment, session)
            return self._resolve_box(attachment, spec, session)
        except DegenerateGeometryError as e:
            self._log(
                "WARNING",
                "size_degenerate",
                {"attachment_id": attachment.local_id, "width": spec.width, "height": spec.height, "error": str(e)},
            )
            return None
        except DamSyncError as e:
            self._log(
                "WARNING",
                "size_resolve_failed",
                {"attachment_id": attachment.local_id, "width": spec.width, "height": spec.height, "error": str(e)},
            )
            return None
        finally:
            if owned:
                session.close()

    def _document(self, attachment: Attachment, session: ResolverSession) -> Optional[Document]:
        document = session.document(attachment.remote_document_id)
        if isinstance(document, ApiError):
            self._log(
                "WARNING",
                "document_fetch_failed",
                {"attachment_id": attachment.local_id, "document_id": attachment.remote_document_id, "code": document.code, "error": document.message},
            )
            return None
        return document

    def _resolve_box(self, attachment: Attachment, spec: SizeSpec, session: ResolverSession) -> Optional[ResolvedSize]:
        file_name = attachment.file_name
        key = size_key(file_name, spec.width, spec.height, spec.crop)

        cached = self.permalinks.lookup(attachment.local_id, key)
        if cached is not None:
            return cached

        document = self._document(attachment, session)
        if document is None:
            return None

        original = self.original_for(session, document)
        box = compute_box(spec.width, spec.height, spec.crop, original)
        if box is None:
            return None
        width, height = box

        token = self.permalinks.token_for(attachment)
        url = session.permalink_url(document.id, width, height, token, file_name, attachment.local_id, key)
        if not url:
            return None

        resolved = ResolvedSize(width=width, height=height, url=url, file=file_name)
        self.permalinks.remember(attachment.local_id, key, resolved)
        return resolved

    def resolve_original(self, attachment: Attachment, session: ResolverSession) -> Optional[ResolvedSize]:
        document = self._document(attachment, session)
        if document is None:
            return None
        original = self.original_for(session, document)
        width = original.width if original else 0
        height = original.height if original else 0
        token = self.permalinks.token_for(attachment)
        url = session.permalink_url(document.id, width, height, token, attachment.file_name)
        return ResolvedSize(width=width, height=height, url=url or "", file=attachment.file_name)


class ImageSourceResolver:
    """Answers rendering requests from the stored size index, healing 0x0 entries once."""

    def __init__(self, store, cache, resolver: SizeResolver, projector, log_func, allowed_mimes: Sequence[str], cooldown: int = 300):
        self.store = store
        self.cache = cache
        self.resolver = resolver
        self.projector = projector
        self.log_func = log_func
        self.allowed_mimes = list(allowed_mimes)
        self.cooldown = cooldown

    def _log(self, level: str, message: str, detail: dict):
        self.log_func(level, "image_src", message, json.dumps(detail, ensure_ascii=False))

    def eligible(self, attachment: Optional[Attachment]) -> bool:
        return attachment is not None and attachment.mime_type in self.allowed_mimes

    def image_src(self, attachment_id: int, size: Union[str, Sequence[int]], _retry: bool = False) -> Optional[ImageSource]:
        """``None`` means the caller keeps its local representation."""
        attachment = self.store.get_attachment(attachment_id)
        if not self.eligible(attachment) or not attachment.remote_document_id:
            return None

        if self.cache.get(processing_key(attachment_id)) is not None:
            return None

        details = self.store.get(attachment_id, META_MEDIA_SIZES)
        if not details or not details.get("sizes"):
            projected = self.projector.project(attachment)
            if projected is None or not projected.sizes:
                return None
            details = projected.model_dump()

        requested = size
        if size == "full":
            size = "original"

        sizes = details.get("sizes") or {}
        if isinstance(size, (list, tuple)):
            data = self._select_box(details, int(size[0]), int(size[1]))
        elif size in sizes:
            data = sizes[size]
        else:
            data = sizes.get("original")

        if not data:
            return None
        data = dict(data)

        if not data.get("url"):
            original = sizes.get("original") or {}
            fallback = self.resolver.resolve_size(
                attachment,
                SizeSpec.box(original.get("width", 0), original.get("height", 0)),
            )
            if fallback is None or not fallback.url:
                return None
            data["url"] = fallback.url

        width, height = int(data.get("width") or 0), int(data.get("height") or 0)
        if not _retry and width == 0 and height == 0:
            self.store.delete_meta(attachment_id, META_MEDIA_SIZES)
            healed = self.image_src(attachment_id, requested, _retry=True)
            if healed is None or (healed.width == 0 and healed.height == 0):
                self.store.delete_meta(attachment_id, META_MEDIA_SIZES)
                self.cache.set(processing_key(attachment_id), "processing", self.cooldown)
                self._log("WARNING", "size_still_empty_cooldown", {"attachment_id": attachment_id, "cooldown_sec": self.cooldown})
                return None
            return healed

        return ImageSource(url=data["url"], width=width, height=height, is_intermediate=size != "original")

    def _select_box(self, details: dict, width: int, height: int) -> Optional[dict]:
        sizes = details.get("sizes") or {}
        original = sizes.get("original") or {}
        base_w = int(details.get("width") or original.get("width") or 0)
        base_h = int(details.get("height") or original.get("height") or 0)

        candidates: dict[int, dict] = {}
        for data in sizes.values():
            dw, dh = int(data.get("width") or 0), int(data.get("height") or 0)
            if dw == width and dh == height:
                candidates[dw * dh] = data
                break
            if dw >= width and dh >= height:
                if width == 0 or height == 0:
                    same_ratio = ratios_match(dw, dh, base_w, base_h)
                else:
                    same_ratio = ratios_match(dw, dh, width, height)
                if same_ratio:
                    candidates[dw * dh] = data

        if candidates:
            return candidates[min(candidates)]

        thumbnail = sizes.get("thumbnail")
        if thumbnail and int(thumbnail.get("width") or 0) >= width and int(thumbnail.get("height") or 0) >= height:
            return thumbnail
        return original or None
