import sqlite3
from pathlib import Path


def get_conn(db_path: str):
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str):
    conn = get_conn(db_path)
    cur = conn.cursor()

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS attachments (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          title TEXT,
          file_path TEXT,
          mime_type TEXT,
          created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
          updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS attachment_meta (
          attachment_id INTEGER NOT NULL,
          meta_key TEXT NOT NULL,
          meta_value TEXT,
          updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
          PRIMARY KEY (attachment_id, meta_key)
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS cache (
          cache_key TEXT PRIMARY KEY,
          value_json TEXT,
          expires_at REAL
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS scheduled_jobs (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          hook TEXT,
          payload_json TEXT,
          run_at REAL,
          status TEXT DEFAULT 'pending',
          last_error TEXT,
          created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
          finished_at DATETIME
        )
        """
    )

    cur.execute("CREATE INDEX IF NOT EXISTS idx_attachment_meta_value ON attachment_meta(meta_key, meta_value)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_scheduled_jobs_hook ON scheduled_jobs(hook, status)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_scheduled_jobs_run_at ON scheduled_jobs(status, run_at)")

    conn.commit()
    conn.close()
