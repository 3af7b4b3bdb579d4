import base64
import json
import mimetypes
import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from .errors import NotFoundError
from .models import ApiError, Attachment, MediaDetails
from .store import META_DOCUMENT_ID, META_MEDIA_SIZES, META_PERMALINKS


class MediaTransfer:
    """Moves files between the local media library and Imageshop."""

    def __init__(self, store, client, uploads_dir: str, log_func, projector=None):
        self.store = store
        self.client = client
        self.uploads_dir = Path(uploads_dir)
        self.log_func = log_func
        self.projector = projector

    def _log(self, level: str, message: str, detail: dict):
        self.log_func(level, "media", message, json.dumps(detail, ensure_ascii=False))

    def local_path(self, attachment: Attachment) -> Path:
        p = Path(attachment.file_path)
        return p if p.is_absolute() else self.uploads_dir / p

    def export_single(self, local_id: int, force: bool = False) -> Optional[int]:
        """Upload one image attachment. Returns the local id, or ``None`` when the upload failed."""
        attachment = self.store.get_attachment(local_id)
        if attachment is None:
            self._log("WARNING", "export_missing_attachment", {"attachment_id": local_id})
            return None

        if not attachment.mime_type.startswith("image/"):
            return local_id
        if attachment.remote_document_id and not force:
            return local_id

        path = self.local_path(attachment)
        if not path.is_file():
            self._log("ERROR", "export_file_unreadable", {"attachment_id": local_id, "path": str(path)})
            return None

        try:
            content = base64.b64encode(path.read_bytes()).decode("ascii")
        except OSError as e:
            self._log("ERROR", "export_read_failed", {"attachment_id": local_id, "path": str(path), "error": str(e)})
            return None

        ret = self.client.create_document(content, attachment.file_path)
        if isinstance(ret, ApiError):
            self._log("ERROR", "export_failed", {"attachment_id": local_id, "code": ret.code, "error": ret.message})
            return None

        with self.store.lock(local_id):
            if attachment.remote_document_id and attachment.remote_document_id != ret:
                # A new document means every stored URL points at the old one.
                self.store.delete_meta(local_id, META_PERMALINKS)
                self.store.delete_meta(local_id, META_MEDIA_SIZES)
            self.store.set(local_id, META_DOCUMENT_ID, ret)

        self._log("INFO", "export_done", {"attachment_id": local_id, "document_id": ret, "force": force})
        return local_id

    def _unique_path(self, file_name: str) -> Path:
        now = datetime.now()
        folder = self.uploads_dir / f"{now:%Y}" / f"{now:%m}"
        folder.mkdir(parents=True, exist_ok=True)
        safe = Path(file_name.replace("\\", "/")).name or "file"
        candidate = folder / safe
        stem, suffix = candidate.stem, candidate.suffix
        n = 1
        while candidate.exists():
            candidate = folder / f"{stem}-{n}{suffix}"
            n += 1
        return candidate

    def import_document(self, document_id: int, file_name: str) -> int:
        """Download a document's original and create or update its local attachment."""
        url = self.client.download(document_id)
        if isinstance(url, ApiError):
            url.raise_for_error()

        data = self.client.fetch_file(url)
        if isinstance(data, ApiError):
            data.raise_for_error()

        target = self._unique_path(file_name)
        target.write_bytes(data)

        mime_type = mimetypes.guess_type(target.name)[0] or ""
        title = re.sub(r"\.[^.]+$", "", file_name)
        relative = target.relative_to(self.uploads_dir).as_posix()

        existing = self.store.query(META_DOCUMENT_ID, int(document_id))
        if existing:
            local_id = existing[0]
            self.store.update_attachment(local_id, title, relative, mime_type)
            with self.store.lock(local_id):
                self.store.delete_meta(local_id, META_MEDIA_SIZES)
        else:
            local_id = self.store.insert_attachment(title, relative, mime_type)
            self.store.set(local_id, META_DOCUMENT_ID, int(document_id))

        self._log(
            "INFO",
            "import_done",
            {"attachment_id": local_id, "document_id": document_id, "file": relative, "updated": bool(existing)},
        )
        return local_id

    def validate_reference(self, local_id: int) -> bool:
        """Re-export when the stored document id is missing or no longer resolves. Returns True if re-exported."""
        attachment = self.store.get_attachment(local_id)
        if attachment is None:
            raise NotFoundError(404, f"attachment_not_found: {local_id}")

        if not attachment.remote_document_id:
            self._log("INFO", "reference_missing_reexport", {"attachment_id": local_id})
            self.export_single(local_id, force=True)
            return True

        document = self.client.get_document(attachment.remote_document_id)
        if isinstance(document, ApiError) and document.transient:
            self._log(
                "WARNING",
                "reference_check_failed",
                {"attachment_id": local_id, "document_id": attachment.remote_document_id, "error": document.message},
            )
            return False
        if isinstance(document, ApiError) or not document.renditions:
            self._log(
                "INFO",
                "reference_invalid_reexport",
                {"attachment_id": local_id, "document_id": attachment.remote_document_id},
            )
            self.export_single(local_id, force=True)
            return True
        return False

    def update_metadata(self, local_id: int) -> Optional[MediaDetails]:
        """Repair the remote reference if needed, then rebuild the size index."""
        self.validate_reference(local_id)
        attachment = self.store.get_attachment(local_id)
        if attachment is None or self.projector is None:
            return None
        return self.projector.project(attachment)
