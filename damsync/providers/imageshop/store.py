"""SQLite-backed object store, TTL cache and job scheduler.

These are the host-side collaborators the resolution engine and the sync
orchestrator talk to. Each call opens its own connection, so instances can
be shared between the web worker and background jobs.
"""

import json
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .db import get_conn
from .models import Attachment

META_DOCUMENT_ID = "document_id"
META_PERMALINK_TOKEN = "permalink_token"
META_MEDIA_SIZES = "media_sizes"
META_PERMALINKS = "permalinks"


def now_iso():
    return datetime.now().isoformat(timespec="seconds")


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _loads(raw: Optional[str], default: Any = None) -> Any:
    if raw is None:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        return default


# Shared by every ObjectStore in the process; services are rebuilt per request.
_ATTACHMENT_LOCKS: Dict[tuple, threading.Lock] = {}
_ATTACHMENT_LOCKS_GUARD = threading.Lock()


def attachment_lock(db_path: str, attachment_id: int) -> threading.Lock:
    key = (str(db_path), int(attachment_id))
    with _ATTACHMENT_LOCKS_GUARD:
        lk = _ATTACHMENT_LOCKS.get(key)
        if lk is None:
            lk = threading.Lock()
            _ATTACHMENT_LOCKS[key] = lk
        return lk


class ObjectStore:
    def __init__(self, db_path: str):
        self.db_path = db_path

    def _db(self):
        return get_conn(self.db_path)

    def lock(self, attachment_id: int) -> threading.Lock:
        """Per-attachment lock guarding read-modify-write of its indexes."""
        return attachment_lock(self.db_path, attachment_id)

    def _update_mapping(self, attachment_id: int, meta_key: str, update: Callable[[dict], bool]):
        # BEGIN IMMEDIATE takes the write lock up front, so other processes wait too.
        with self.lock(attachment_id):
            conn = self._db()
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT meta_value FROM attachment_meta WHERE attachment_id=? AND meta_key=?",
                    (int(attachment_id), meta_key),
                ).fetchone()
                current = _loads(row["meta_value"], {}) if row else {}
                if not isinstance(current, dict):
                    current = {}
                if update(current):
                    conn.execute(
                        """
                        INSERT INTO attachment_meta(attachment_id,meta_key,meta_value) VALUES (?,?,?)
                        ON CONFLICT(attachment_id,meta_key)
                        DO UPDATE SET meta_value=excluded.meta_value, updated_at=CURRENT_TIMESTAMP
                        """,
                        (int(attachment_id), meta_key, _dumps(current)),
                    )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    def insert_attachment(self, title: str, file_path: str, mime_type: str, created_at: Optional[str] = None) -> int:
        conn = self._db()
        cur = conn.cursor()
        cur.execute(
            "INSERT INTO attachments(title,file_path,mime_type,created_at) VALUES (?,?,?,?)",
            (title, file_path, mime_type, created_at or now_iso()),
        )
        aid = cur.lastrowid
        conn.commit()
        conn.close()
        return int(aid)

    def update_attachment(self, attachment_id: int, title: str, file_path: str, mime_type: str):
        conn = self._db()
        conn.execute(
            """
            UPDATE attachments
               SET title=?, file_path=?, mime_type=?, updated_at=CURRENT_TIMESTAMP
             WHERE id=?
            """,
            (title, file_path, mime_type, int(attachment_id)),
        )
        conn.commit()
        conn.close()

    def get_attachment(self, attachment_id: int) -> Optional[Attachment]:
        conn = self._db()
        row = conn.execute("SELECT * FROM attachments WHERE id=?", (int(attachment_id),)).fetchone()
        doc_row = conn.execute(
            "SELECT meta_value FROM attachment_meta WHERE attachment_id=? AND meta_key=?",
            (int(attachment_id), META_DOCUMENT_ID),
        ).fetchone()
        conn.close()
        if not row:
            return None
        document_id = _loads(doc_row["meta_value"]) if doc_row else None
        return Attachment(
            local_id=row["id"],
            title=row["title"] or "",
            file_path=row["file_path"] or "",
            mime_type=row["mime_type"] or "",
            created_at=str(row["created_at"] or ""),
            remote_document_id=int(document_id) if document_id else None,
        )

    def delete(self, attachment_id: int):
        conn = self._db()
        conn.execute("DELETE FROM attachment_meta WHERE attachment_id=?", (int(attachment_id),))
        conn.execute("DELETE FROM attachments WHERE id=?", (int(attachment_id),))
        conn.commit()
        conn.close()

    def get(self, attachment_id: int, meta_key: str, default: Any = None) -> Any:
        conn = self._db()
        row = conn.execute(
            "SELECT meta_value FROM attachment_meta WHERE attachment_id=? AND meta_key=?",
            (int(attachment_id), meta_key),
        ).fetchone()
        conn.close()
        if not row:
            return default
        return _loads(row["meta_value"], default)

    def set(self, attachment_id: int, meta_key: str, value: Any):
        conn = self._db()
        conn.execute(
            """
            INSERT INTO attachment_meta(attachment_id,meta_key,meta_value) VALUES (?,?,?)
            ON CONFLICT(attachment_id,meta_key)
            DO UPDATE SET meta_value=excluded.meta_value, updated_at=CURRENT_TIMESTAMP
            """,
            (int(attachment_id), meta_key, _dumps(value)),
        )
        conn.commit()
        conn.close()

    def delete_meta(self, attachment_id: int, meta_key: str):
        conn = self._db()
        conn.execute(
            "DELETE FROM attachment_meta WHERE attachment_id=? AND meta_key=?",
            (int(attachment_id), meta_key),
        )
        conn.commit()
        conn.close()

    def query(self, meta_key: str, value: Any) -> List[int]:
        conn = self._db()
        rows = conn.execute(
            "SELECT attachment_id FROM attachment_meta WHERE meta_key=? AND meta_value=? ORDER BY attachment_id",
            (meta_key, _dumps(value)),
        ).fetchall()
        conn.close()
        return [int(r["attachment_id"]) for r in rows]

    def merge(self, attachment_id: int, meta_key: str, entries: Dict[str, Any]):
        """Add keyed entries to a mapping-valued meta field without dropping existing keys."""

        def _add(current: dict) -> bool:
            current.update(entries)
            return True

        self._update_mapping(attachment_id, meta_key, _add)

    def drop_entries(self, attachment_id: int, meta_key: str, keys: List[str]):
        def _drop(current: dict) -> bool:
            removed = [current.pop(key) for key in keys if key in current]
            return bool(removed)

        self._update_mapping(attachment_id, meta_key, _drop)

    def missing_meta(self, meta_key: str, mime_prefix: Optional[str] = None) -> List[dict]:
        sql = """
            SELECT a.id, a.title
              FROM attachments a
         LEFT JOIN attachment_meta m
                ON (a.id = m.attachment_id AND m.meta_key = ?)
             WHERE (m.attachment_id IS NULL OR m.meta_value IS NULL OR m.meta_value IN ('', 'null', '""'))
        """
        params: list = [meta_key]
        if mime_prefix:
            sql += " AND a.mime_type LIKE ?"
            params.append(f"{mime_prefix}%")
        sql += " ORDER BY a.id"
        conn = self._db()
        rows = conn.execute(sql, params).fetchall()
        conn.close()
        return [{"id": int(r["id"]), "title": r["title"] or ""} for r in rows]

    def with_meta(self, meta_key: str) -> List[dict]:
        conn = self._db()
        rows = conn.execute(
            """
            SELECT a.id, a.title, a.file_path, m.meta_value
              FROM attachments a
              JOIN attachment_meta m
                ON (a.id = m.attachment_id AND m.meta_key = ?)
             WHERE m.meta_value IS NOT NULL AND m.meta_value NOT IN ('', 'null', '""')
               AND a.file_path IS NOT NULL AND a.file_path != ''
             ORDER BY a.id
            """,
            (meta_key,),
        ).fetchall()
        conn.close()
        return [
            {
                "id": int(r["id"]),
                "title": r["title"] or "",
                "file_path": r["file_path"],
                "value": _loads(r["meta_value"]),
            }
            for r in rows
        ]

    def attachment_ids(self) -> List[int]:
        conn = self._db()
        rows = conn.execute("SELECT id FROM attachments ORDER BY id").fetchall()
        conn.close()
        return [int(r["id"]) for r in rows]

    def count_attachments(self) -> int:
        conn = self._db()
        row = conn.execute("SELECT COUNT(DISTINCT id) AS total FROM attachments").fetchone()
        conn.close()
        return int(row["total"] or 0)

    def count_with_meta(self, meta_key: str) -> int:
        conn = self._db()
        row = conn.execute(
            """
            SELECT COUNT(DISTINCT a.id) AS total
              FROM attachments a
              JOIN attachment_meta m
                ON (a.id = m.attachment_id AND m.meta_key = ?)
             WHERE m.meta_value IS NOT NULL AND m.meta_value NOT IN ('', 'null', '""')
            """,
            (meta_key,),
        ).fetchone()
        conn.close()
        return int(row["total"] or 0)


class Cache:
    """Short-lived key/value cache; ``ttl=0`` stores without expiry."""

    def __init__(self, db_path: str, clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self.clock = clock

    def _db(self):
        return get_conn(self.db_path)

    def get(self, key: str, default: Any = None) -> Any:
        conn = self._db()
        row = conn.execute("SELECT value_json, expires_at FROM cache WHERE cache_key=?", (key,)).fetchone()
        if row and row["expires_at"] is not None and row["expires_at"] <= self.clock():
            conn.execute("DELETE FROM cache WHERE cache_key=?", (key,))
            conn.commit()
            row = None
        conn.close()
        if not row:
            return default
        return _loads(row["value_json"], default)

    def set(self, key: str, value: Any, ttl: int = 0):
        expires_at = self.clock() + ttl if ttl and ttl > 0 else None
        conn = self._db()
        conn.execute(
            """
            INSERT INTO cache(cache_key,value_json,expires_at) VALUES (?,?,?)
            ON CONFLICT(cache_key) DO UPDATE SET value_json=excluded.value_json, expires_at=excluded.expires_at
            """,
            (key, _dumps(value), expires_at),
        )
        conn.commit()
        conn.close()

    def delete(self, key: str):
        conn = self._db()
        conn.execute("DELETE FROM cache WHERE cache_key=?", (key,))
        conn.commit()
        conn.close()

    def purge_expired(self) -> int:
        conn = self._db()
        cur = conn.execute("DELETE FROM cache WHERE expires_at IS NOT NULL AND expires_at <= ?", (self.clock(),))
        removed = cur.rowcount
        conn.commit()
        conn.close()
        return int(removed or 0)


class JobScheduler:
    """Run-once deferred jobs keyed by hook name.

    A job is ``pending`` until a worker claims it in ``run_due``; claimed jobs
    no longer count as pending, matching how a cron-style scheduler unschedules
    an event before running it.
    """

    def __init__(self, db_path: str, log_func, clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self.log_func = log_func
        self.clock = clock
        self._hooks: Dict[str, Callable[[dict], Any]] = {}

    def _db(self):
        return get_conn(self.db_path)

    def _log(self, level: str, module: str, message: str, detail: Optional[str] = None):
        self.log_func(level, module, message, detail)

    def register(self, hook: str, callback: Callable[[dict], Any]):
        self._hooks[hook] = callback

    def schedule_once(self, run_at: float, hook: str, payload: dict) -> int:
        conn = self._db()
        cur = conn.cursor()
        cur.execute(
            "INSERT INTO scheduled_jobs(hook,payload_json,run_at,status) VALUES (?,?,?,'pending')",
            (hook, _dumps(payload), float(run_at)),
        )
        jid = cur.lastrowid
        conn.commit()
        conn.close()
        return int(jid)

    def schedule_if_idle(self, hook: str, run_at: float, payloads: List[dict]) -> Optional[List[int]]:
        """Queue every payload under ``hook`` unless a job for it is already pending.

        Check and inserts share one write transaction. Returns the new job ids,
        or ``None`` when the hook was busy.
        """
        conn = self._db()
        try:
            conn.execute("BEGIN IMMEDIATE")
            busy = conn.execute(
                "SELECT 1 FROM scheduled_jobs WHERE hook=? AND status='pending' LIMIT 1",
                (hook,),
            ).fetchone()
            if busy is not None:
                conn.rollback()
                return None
            ids = []
            for payload in payloads:
                cur = conn.execute(
                    "INSERT INTO scheduled_jobs(hook,payload_json,run_at,status) VALUES (?,?,?,'pending')",
                    (hook, _dumps(payload), float(run_at)),
                )
                ids.append(int(cur.lastrowid))
            conn.commit()
            return ids
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def is_pending(self, hook: str) -> bool:
        conn = self._db()
        row = conn.execute(
            "SELECT 1 FROM scheduled_jobs WHERE hook=? AND status='pending' LIMIT 1",
            (hook,),
        ).fetchone()
        conn.close()
        return row is not None

    def pending_jobs(self, hook: Optional[str] = None) -> List[dict]:
        conn = self._db()
        if hook:
            rows = conn.execute(
                "SELECT * FROM scheduled_jobs WHERE status='pending' AND hook=? ORDER BY run_at, id",
                (hook,),
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM scheduled_jobs WHERE status='pending' ORDER BY run_at, id").fetchall()
        conn.close()
        out = []
        for r in rows:
            item = dict(r)
            item["payload"] = _loads(item.pop("payload_json"), {})
            out.append(item)
        return out

    def invoke(self, hook: str, payload: dict) -> Any:
        callback = self._hooks.get(hook)
        if callback is None:
            raise RuntimeError(f"hook_not_registered:{hook}")
        return callback(payload)

    def _claim(self, job_id: int) -> bool:
        conn = self._db()
        cur = conn.execute(
            "UPDATE scheduled_jobs SET status='running' WHERE id=? AND status='pending'",
            (job_id,),
        )
        claimed = cur.rowcount == 1
        conn.commit()
        conn.close()
        return claimed

    def _finish(self, job_id: int, status: str, error: Optional[str] = None):
        conn = self._db()
        conn.execute(
            "UPDATE scheduled_jobs SET status=?, last_error=?, finished_at=? WHERE id=?",
            (status, error, now_iso(), job_id),
        )
        conn.commit()
        conn.close()

    def run_due(self, limit: Optional[int] = None) -> int:
        """Invoke every due job once, oldest first. Returns the number of jobs run."""
        conn = self._db()
        rows = conn.execute(
            "SELECT id, hook, payload_json FROM scheduled_jobs WHERE status='pending' AND run_at <= ? ORDER BY run_at, id",
            (self.clock(),),
        ).fetchall()
        conn.close()

        ran = 0
        for row in rows:
            if limit is not None and ran >= limit:
                break
            if row["hook"] not in self._hooks:
                continue
            if not self._claim(row["id"]):
                continue
            ran += 1
            try:
                self.invoke(row["hook"], _loads(row["payload_json"], {}))
                self._finish(row["id"], "done")
            except Exception as e:
                self._finish(row["id"], "failed", str(e))
                self._log("ERROR", "scheduler", "job_failed", json.dumps({"id": row["id"], "hook": row["hook"], "error": str(e)}, ensure_ascii=False))
        return ran
