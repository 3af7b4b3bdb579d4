import json
from typing import Any, Optional

from .models import ApiError, Attachment, Document, MediaDetails, SizeSpec
from .sizes import SizeResolver, processing_key
from .store import META_MEDIA_SIZES, META_PERMALINKS

# Local field -> Imageshop metadata field.
REMOTE_FIELDS = {
    "name": "Name",
    "credits": "Credits",
    "rights": "Rights",
    "description": "Description",
    "tags": "Tags",
    "language": "Language",
}


def generate_caption(document: Optional[Document]) -> Optional[str]:
    """``description (credits)``, or whichever of the two exists."""
    if document is None:
        return None
    caption = document.description
    if document.credits:
        caption = f"{caption} ({document.credits})" if caption else document.credits
    return caption


def caption_key(attachment_id: int, locale: str) -> str:
    return f"imageshop_attachment_caption_{locale}_{int(attachment_id)}"


class MetadataProjector:
    def __init__(
        self,
        store,
        cache,
        client,
        resolver: SizeResolver,
        image_sizes: dict,
        log_func,
        locale: str = "en_US",
        caption_ttl: int = 604800,
    ):
        self.store = store
        self.cache = cache
        self.client = client
        self.resolver = resolver
        self.image_sizes = image_sizes
        self.log_func = log_func
        self.locale = locale
        self.caption_ttl = caption_ttl

    def _log(self, level: str, message: str, detail: dict):
        self.log_func(level, "projector", message, json.dumps(detail, ensure_ascii=False))

    def project(self, attachment: Attachment) -> Optional[MediaDetails]:
        """Rebuild the attachment's size index from its remote document, replacing the stored one."""
        if not attachment.remote_document_id:
            return None

        # Still waiting on the remote side to finish processing this file.
        if self.cache.get(processing_key(attachment.local_id)) is not None:
            return MediaDetails()

        with self.resolver.session() as session:
            document = session.document(attachment.remote_document_id)
            if isinstance(document, ApiError):
                self._log(
                    "WARNING",
                    "project_document_failed",
                    {"attachment_id": attachment.local_id, "document_id": attachment.remote_document_id, "code": document.code, "error": document.message},
                )
                return None

            original = self.resolver.original_for(session, document)

            sizes = {}
            for slug, size in self.image_sizes.items():
                if original is None and (size.width == 0 or size.height == 0):
                    continue
                resolved = self.resolver.resolve_size(
                    attachment,
                    SizeSpec.box(size.width, size.height, size.crop, slug=slug),
                    session=session,
                )
                if resolved is None:
                    continue
                sizes[slug] = resolved

            if "original" not in sizes:
                resolved_original = self.resolver.resolve_original(attachment, session)
                if resolved_original is not None:
                    sizes["original"] = resolved_original
            if "full" not in sizes and "original" in sizes:
                sizes["full"] = sizes["original"]

        base = sizes.get("original")
        details = MediaDetails(
            sizes=sizes,
            width=base.width if base else 0,
            height=base.height if base else 0,
            file=attachment.file_name,
            caption=generate_caption(document),
            credits=document.credits,
        )

        with self.store.lock(attachment.local_id):
            self.store.set(attachment.local_id, META_MEDIA_SIZES, details.model_dump())

        self._log(
            "INFO",
            "project_done",
            {"attachment_id": attachment.local_id, "document_id": document.id, "sizes": sorted(sizes)},
        )
        return details

    def caption(self, attachment_id: int) -> Optional[str]:
        attachment = self.store.get_attachment(attachment_id)
        if attachment is None or not attachment.remote_document_id:
            return None

        key = caption_key(attachment_id, self.locale)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        self.client.set_language(self.locale)
        document = self.client.get_document(attachment.remote_document_id)
        if isinstance(document, ApiError):
            return None
        caption = generate_caption(document) or ""
        self.cache.set(key, caption, self.caption_ttl)
        return caption

    def flush_references(self, attachment_id: int) -> Optional[MediaDetails]:
        """Drop both stored indexes and the cached caption, then rebuild the size index."""
        attachment = self.store.get_attachment(attachment_id)
        if attachment is None:
            return None

        with self.store.lock(attachment_id):
            self.store.delete_meta(attachment_id, META_PERMALINKS)
            self.store.delete_meta(attachment_id, META_MEDIA_SIZES)

        details = self.project(attachment)
        self.cache.delete(caption_key(attachment_id, self.locale))
        self._log("INFO", "references_flushed", {"attachment_id": attachment_id})
        return details

    def update_remote_metadata(self, document_id: int, fields: dict[str, Any]) -> dict[str, Any] | ApiError:
        """Push edited fields to Imageshop and return the refreshed local-facing values."""
        payload = {REMOTE_FIELDS[k]: v for k, v in fields.items() if k in REMOTE_FIELDS}
        ret = self.client.set_metadata(document_id, payload)
        if isinstance(ret, ApiError):
            return ret
        if not ret:
            return ApiError(code=0, message="update_metadata_failed")

        document = self.client.get_document(document_id)
        if isinstance(document, ApiError):
            return document

        return {
            "title": document.name,
            "alt": document.description,
            "caption": generate_caption(document),
            "description": document.description,
        }
