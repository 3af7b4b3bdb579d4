import json
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .errors import ConflictError
from .models import ApiError
from .store import META_DOCUMENT_ID

HOOK_PUSH = "damsync_push_to_remote"
HOOK_PULL = "damsync_pull_to_local"

PUSH_CHUNK_SIZE = 20
PULL_CHUNK_SIZE = 5
ITEM_DELAY_SEC = 2

IN_PROGRESS_MESSAGE = "A previous import is still in progress, please wait for it to finish before scheduling another."


def chunked(items: list, size: int) -> List[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


@dataclass
class SyncStartResult:
    accepted: bool
    direction: str
    status_code: int = 200
    reason: str = ""
    scheduled_jobs: List[int] = field(default_factory=list)
    items: int = 0

    def to_dict(self) -> dict:
        return {
            "success": self.accepted,
            "status": "success" if self.accepted else "error",
            "direction": self.direction,
            "message": self.reason,
            "scheduled_jobs": self.scheduled_jobs,
            "items": self.items,
        }


class SyncOrchestrator:
    """Chunked push (local -> Imageshop) and pull (Imageshop -> local) runs.

    A run is computed once, split into chunks and handed to the job scheduler;
    each chunk is then processed sequentially whenever the scheduler invokes it.
    Only one run per direction may be queued at a time.
    """

    def __init__(
        self,
        store,
        client,
        scheduler,
        media,
        log_func,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        item_delay: float = ITEM_DELAY_SEC,
    ):
        self.store = store
        self.client = client
        self.scheduler = scheduler
        self.media = media
        self.log_func = log_func
        self.sleep = sleep
        self.clock = clock
        self.item_delay = item_delay

    def _log(self, level: str, module: str, message: str, detail: Optional[str] = None):
        self.log_func(level, module, message, detail)

    def register(self):
        self.scheduler.register(HOOK_PUSH, self.process_push_batch)
        self.scheduler.register(HOOK_PULL, self.process_pull_batch)

    def _hook(self, direction: str) -> str:
        if direction == "push":
            return HOOK_PUSH
        if direction == "pull":
            return HOOK_PULL
        raise ValueError(f"unknown_direction: {direction}")

    def _ensure_idle(self, direction: str):
        if self.scheduler.is_pending(self._hook(direction)):
            raise ConflictError(direction, IN_PROGRESS_MESSAGE)

    def _push_candidates(self) -> list[dict]:
        return self.store.missing_meta(META_DOCUMENT_ID, mime_prefix="image/")

    def _pull_candidates(self, document_ids: Optional[List[int]] = None) -> list[dict] | ApiError:
        # Pagesize 0 returns every document in the interface.
        ret = self.client.search({"Pagesize": 0, "SortDirection": "ASC"})
        if isinstance(ret, ApiError):
            return ret
        wanted = {int(d) for d in document_ids} if document_ids else None
        return [
            {"DocumentID": doc.id, "FileName": doc.file_name}
            for doc in ret.documents
            if wanted is None or doc.id in wanted
        ]

    def start_sync(self, direction: str, document_ids: Optional[List[int]] = None) -> SyncStartResult:
        hook = self._hook(direction)
        try:
            self._ensure_idle(direction)
        except ConflictError as e:
            self._log("WARN", "sync", "sync_start_conflict", json.dumps({"direction": direction}, ensure_ascii=False))
            return SyncStartResult(accepted=False, direction=direction, status_code=425, reason=e.message)

        if direction == "push":
            candidates = self._push_candidates()
            chunk_size = PUSH_CHUNK_SIZE
            empty_reason = "No images were found in the local media library that need to be exported to Imageshop."
            payloads = [{"items": [{"id": c["id"], "title": c["title"]} for c in chunk]} for chunk in chunked(candidates, chunk_size)]
        else:
            candidates = self._pull_candidates(document_ids)
            if isinstance(candidates, ApiError):
                self._log("ERROR", "sync", "sync_start_search_failed", json.dumps({"code": candidates.code, "error": candidates.message}, ensure_ascii=False))
                return SyncStartResult(accepted=False, direction=direction, status_code=502, reason=candidates.message)
            chunk_size = PULL_CHUNK_SIZE
            empty_reason = "No documents were found in the active Imageshop interface that need to be imported."
            payloads = [{"items": chunk} for chunk in chunked(candidates, chunk_size)]

        if not candidates:
            return SyncStartResult(accepted=False, direction=direction, status_code=200, reason=empty_reason)

        run_at = self.clock() - 1
        job_ids = self.scheduler.schedule_if_idle(hook, run_at, payloads)
        if job_ids is None:
            self._log("WARN", "sync", "sync_start_conflict", json.dumps({"direction": direction}, ensure_ascii=False))
            return SyncStartResult(accepted=False, direction=direction, status_code=425, reason=IN_PROGRESS_MESSAGE)

        self._log(
            "INFO",
            "sync",
            "sync_scheduled",
            json.dumps({"direction": direction, "items": len(candidates), "jobs": len(job_ids)}, ensure_ascii=False),
        )
        return SyncStartResult(
            accepted=True,
            direction=direction,
            reason="The import has been scheduled, and should start momentarily.",
            scheduled_jobs=job_ids,
            items=len(candidates),
        )

    def process_push_batch(self, payload: dict) -> dict:
        summary = {"direction": "push", "total": 0, "exported": 0, "errors": 0}
        for item in payload.get("items", []):
            summary["total"] += 1
            local_id = int(item["id"])
            try:
                ret = self.media.export_single(local_id)
                if ret is None:
                    summary["errors"] += 1
                else:
                    summary["exported"] += 1
            except Exception as e:
                summary["errors"] += 1
                self._log("ERROR", "sync", "push_item_failed", json.dumps({"id": local_id, "error": str(e)}, ensure_ascii=False))
            self.sleep(self.item_delay)

        self._log("INFO", "sync", "push_batch_done", json.dumps(summary, ensure_ascii=False))
        return summary

    def process_pull_batch(self, payload: dict) -> dict:
        summary = {"direction": "pull", "total": 0, "imported": 0, "errors": 0}
        for item in payload.get("items", []):
            summary["total"] += 1
            document_id = int(item["DocumentID"])
            try:
                self.media.import_document(document_id, item.get("FileName") or f"{document_id}")
                summary["imported"] += 1
            except Exception as e:
                summary["errors"] += 1
                self._log("ERROR", "sync", "pull_item_failed", json.dumps({"document_id": document_id, "error": str(e)}, ensure_ascii=False))
            self.sleep(self.item_delay)

        self._log("INFO", "sync", "pull_batch_done", json.dumps(summary, ensure_ascii=False))
        return summary

    def get_sync_status(self) -> dict:
        return {
            "total": self.store.count_attachments(),
            "imported": self.store.count_with_meta(META_DOCUMENT_ID),
            "push_pending": self.scheduler.is_pending(HOOK_PUSH),
            "pull_pending": self.scheduler.is_pending(HOOK_PULL),
        }
