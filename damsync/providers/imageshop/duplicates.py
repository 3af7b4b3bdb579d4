import json
import math
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .models import ApiError
from .store import META_DOCUMENT_ID

PER_PAGE = 80

DEFAULT_DELAY_SEC = 5
REDUCED_DELAY_SEC = 2


@dataclass
class DuplicateReport:
    deleted_count: int = 0
    checked: int = 0
    errors: int = 0
    log: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "deleted_count": self.deleted_count,
            "checked": self.checked,
            "errors": self.errors,
            "log": self.log,
        }


def linked_attachments(store, attachment_ids: Optional[List[int]] = None) -> List[dict]:
    """Attachments that have both a local file and a stored document id."""
    rows = store.with_meta(META_DOCUMENT_ID)
    if attachment_ids:
        wanted = {int(i) for i in attachment_ids}
        rows = [r for r in rows if r["id"] in wanted]
    return rows


def duplicates_report(store) -> List[dict]:
    return [
        {"attachment_id": r["id"], "title": r["title"], "document_id": r["value"]}
        for r in linked_attachments(store)
    ]


def delete_remote_duplicates(
    store,
    client,
    interface: str,
    log_func,
    attachment_ids: Optional[List[int]] = None,
    dry_run: bool = False,
    delay: float = DEFAULT_DELAY_SEC,
    sleep: Callable[[float], None] = time.sleep,
) -> DuplicateReport:
    """Delete remote documents that share a linked attachment's title but not its document id.

    Dry runs issue no deletes and report the same count a real run would.
    """
    report = DuplicateReport()
    interface_ids = [interface] if interface else []

    for attachment in linked_attachments(store, attachment_ids):
        report.checked += 1
        title = attachment["title"]
        stored_id = int(attachment["value"])

        page = 0
        total_pages = None
        while True:
            criteria = {"Querystring": title, "Page": page, "Pagesize": PER_PAGE}
            if interface_ids:
                criteria["InterfaceIds"] = interface_ids
            results = client.search(criteria)

            if isinstance(results, ApiError):
                report.errors += 1
                log_func("WARN", "duplicates", "duplicate_search_failed", json.dumps({"title": title, "error": results.message}, ensure_ascii=False))
                break

            # A single hit cannot be a duplicate of anything.
            if len(results.documents) < 2:
                break

            for document in results.documents:
                if document.id == stored_id or document.name != title:
                    continue
                notice = f"Delete Imageshop ID {document.id} - Name `{document.name}` with original ID {stored_id}"
                if dry_run:
                    report.log.append(notice)
                    report.deleted_count += 1
                    continue

                ret = client.delete_document(document.id)
                if isinstance(ret, ApiError):
                    report.errors += 1
                    report.log.append(f"{notice} failed: {ret.message}")
                    log_func("ERROR", "duplicates", "duplicate_delete_failed", json.dumps({"document_id": document.id, "error": ret.message}, ensure_ascii=False))
                    continue
                report.log.append(notice)
                report.deleted_count += 1
                log_func("INFO", "duplicates", "duplicate_deleted", json.dumps({"document_id": document.id, "kept": stored_id}, ensure_ascii=False))

            if total_pages is None:
                total_pages = math.ceil(results.total_count / PER_PAGE)
            page += 1
            if page >= total_pages:
                break

        if delay:
            sleep(delay)

    log_func(
        "INFO",
        "duplicates",
        "duplicates_done",
        json.dumps({"checked": report.checked, "deleted": report.deleted_count, "dry_run": dry_run}, ensure_ascii=False),
    )
    return report
