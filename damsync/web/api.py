from __future__ import annotations

import asyncio
import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse

from damsync.core.config import load_config, masked_config
from damsync.core.services import Services, build_services
from damsync.providers.imageshop.duplicates import delete_remote_duplicates, duplicates_report
from damsync.providers.imageshop.errors import NotFoundError, SizeValidationError
from damsync.providers.imageshop.models import ApiError, SizeSpec
from damsync.providers.imageshop.store import META_MEDIA_SIZES

router = APIRouter(prefix="/api")

JOB_RUN_LOCK = threading.Lock()
SCHEDULER_STATE_LOCK = threading.Lock()
SCHEDULER_POLL_GRANULARITY_SEC = 1
SCHEDULER_MIN_INTERVAL_SEC = 5
SCHEDULER_MAX_INTERVAL_SEC = 86400

_scheduler_task: asyncio.Task | None = None
_scheduler_stop_event: asyncio.Event | None = None
_scheduler_state: dict[str, object] = {
    "running": False,
    "enabled": False,
    "interval_sec": 0,
    "last_started_at": None,
    "last_finished_at": None,
    "last_ran_jobs": 0,
    "last_error": None,
    "skipped_busy_count": 0,
    "tick_count": 0,
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso_from_ts(ts: object) -> str | None:
    if not isinstance(ts, (int, float)):
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _sanitize_poll_interval(raw_value: object) -> int:
    raw = int(raw_value or 0) if isinstance(raw_value, (int, float)) else 0
    if raw <= 0:
        return 0
    return min(max(raw, SCHEDULER_MIN_INTERVAL_SEC), SCHEDULER_MAX_INTERVAL_SEC)


def _scheduler_state_update(**kwargs) -> None:
    with SCHEDULER_STATE_LOCK:
        _scheduler_state.update(kwargs)


def _scheduler_state_snapshot() -> dict[str, object]:
    with SCHEDULER_STATE_LOCK:
        snap = dict(_scheduler_state)
    snap["last_started_at"] = _iso_from_ts(snap.get("last_started_at"))
    snap["last_finished_at"] = _iso_from_ts(snap.get("last_finished_at"))
    return snap


def _build_services() -> Services:
    return build_services()


async def _wait_stop_or_timeout(stop_event: asyncio.Event, timeout_sec: float) -> bool:
    if timeout_sec <= 0:
        return stop_event.is_set()
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_sec)
        return True
    except asyncio.TimeoutError:
        return False


def _run_due_jobs() -> int:
    services = _build_services()
    services.cache.purge_expired()
    return services.scheduler.run_due()


async def _scheduler_loop(stop_event: asyncio.Event) -> None:
    """Poll the job table and run due sync chunks, one tick at a time."""
    logger = logging.getLogger("scheduler")
    _scheduler_state_update(running=True, last_error=None)
    logger.info("scheduler_started")

    try:
        while not stop_event.is_set():
            cfg = load_config()
            interval = _sanitize_poll_interval(cfg.sync.worker_poll_interval_sec)
            _scheduler_state_update(enabled=interval > 0, interval_sec=interval)

            if interval <= 0:
                await _wait_stop_or_timeout(stop_event, SCHEDULER_POLL_GRANULARITY_SEC)
                continue

            if not JOB_RUN_LOCK.acquire(blocking=False):
                with SCHEDULER_STATE_LOCK:
                    _scheduler_state["skipped_busy_count"] = int(_scheduler_state["skipped_busy_count"]) + 1
                logger.warning("scheduled_jobs_skipped jobs_busy")
                await _wait_stop_or_timeout(stop_event, interval)
                continue

            _scheduler_state_update(last_started_at=time.time())
            try:
                ran = await asyncio.to_thread(_run_due_jobs)
                with SCHEDULER_STATE_LOCK:
                    _scheduler_state["tick_count"] = int(_scheduler_state["tick_count"]) + 1
                _scheduler_state_update(last_finished_at=time.time(), last_ran_jobs=ran, last_error=None)
                if ran:
                    logger.info("scheduled_jobs_completed ran=%s", ran)
            except Exception as e:
                _scheduler_state_update(last_finished_at=time.time(), last_error=str(e))
                logger.exception("scheduled_jobs_failed: %s", e)
            finally:
                JOB_RUN_LOCK.release()

            await _wait_stop_or_timeout(stop_event, interval)
    finally:
        _scheduler_state_update(running=False)
        logger.info("scheduler_stopped")


def start_scheduler() -> None:
    global _scheduler_task, _scheduler_stop_event
    if _scheduler_task and not _scheduler_task.done():
        return

    _scheduler_stop_event = asyncio.Event()
    _scheduler_task = asyncio.create_task(_scheduler_loop(_scheduler_stop_event), name="damsync_scheduler")


async def stop_scheduler() -> None:
    global _scheduler_task, _scheduler_stop_event
    if _scheduler_stop_event is not None:
        _scheduler_stop_event.set()

    if _scheduler_task is not None:
        try:
            await _scheduler_task
        except Exception:
            logging.getLogger("scheduler").exception("scheduler_stop_error")

    _scheduler_task = None
    _scheduler_stop_event = None
    _scheduler_state_update(running=False)


def _build_readiness_payload() -> dict:
    checks: dict[str, bool] = {
        "config_load": False,
        "api_token_set": False,
        "database_parent_ready": False,
        "log_parent_ready": False,
        "scheduler_running": False,
    }
    warnings: list[str] = []
    errors: list[str] = []
    scheduler = _scheduler_state_snapshot()
    checks["scheduler_running"] = bool(scheduler.get("running"))

    cfg = None
    try:
        cfg = load_config()
        checks["config_load"] = True
    except Exception as e:
        errors.append(f"config_load_failed: {e}")

    if cfg is not None:
        checks["api_token_set"] = bool(cfg.auth.api_token)
        if not checks["api_token_set"]:
            warnings.append("api_token_missing")

        try:
            Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)
            checks["database_parent_ready"] = True
        except OSError as e:
            errors.append(f"database_parent_unavailable: {e}")

        try:
            Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
            checks["log_parent_ready"] = True
        except OSError as e:
            errors.append(f"log_parent_unavailable: {e}")

    ok = checks["config_load"] and checks["database_parent_ready"] and checks["log_parent_ready"]
    return {
        "ok": ok,
        "checked_at": _now_iso(),
        "checks": checks,
        "warnings": warnings,
        "errors": errors,
        "scheduler": scheduler,
    }


def _api_error(ret: ApiError, status_code: int = 502):
    raise HTTPException(status_code=status_code, detail={"code": ret.code, "message": ret.message})


def _require_attachment(services: Services, attachment_id: int):
    attachment = services.store.get_attachment(attachment_id)
    if attachment is None:
        raise HTTPException(status_code=404, detail="attachment_not_found")
    return attachment


def _parse_size(value: str, table: dict) -> SizeSpec:
    try:
        return SizeSpec.parse(value, table)
    except SizeValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.get("/healthz")
def healthz():
    return {
        "ok": True,
        "status": "alive",
        "checked_at": _now_iso(),
    }


@router.get("/readyz")
def readyz():
    payload = _build_readiness_payload()
    return JSONResponse(status_code=200 if payload["ok"] else 503, content=payload)


@router.get("/config")
def get_config():
    cfg = load_config()
    return {
        **masked_config(cfg),
        "_scheduler": {
            "configured_poll_interval_sec": int(cfg.sync.worker_poll_interval_sec or 0),
            "effective_poll_interval_sec": _sanitize_poll_interval(cfg.sync.worker_poll_interval_sec),
        },
    }


@router.post("/settings/test-connection")
def test_connection():
    services = _build_services()
    valid = services.client.test_valid_token()
    can_upload = services.client.can_upload() if valid else None
    return {
        "ok": valid,
        "language": services.client.language,
        "can_upload": None if isinstance(can_upload, ApiError) else can_upload,
        "interfaces": [i.get("Name") for i in services.client.get_interfaces()] if valid else [],
    }


@router.get("/status/scheduler")
def scheduler_status():
    return _scheduler_state_snapshot()


@router.post("/sync/remote")
def sync_remote():
    """Queue a push of every local image that has no Imageshop document yet."""
    result = _build_services().sync.start_sync("push")
    return JSONResponse(status_code=result.status_code, content=result.to_dict())


@router.post("/sync/local")
def sync_local(payload: dict | None = None):
    """Queue a pull of Imageshop documents into the local library."""
    document_ids = (payload or {}).get("document_ids") or None
    result = _build_services().sync.start_sync("pull", document_ids=document_ids)
    return JSONResponse(status_code=result.status_code, content=result.to_dict())


@router.get("/sync/status")
def sync_status():
    return _build_services().sync.get_sync_status()


@router.post("/jobs/run")
def run_jobs():
    if not JOB_RUN_LOCK.acquire(blocking=False):
        raise HTTPException(status_code=409, detail="jobs_busy")
    try:
        ran = _run_due_jobs()
    finally:
        JOB_RUN_LOCK.release()
    return {"ok": True, "ran": ran}


@router.get("/attachments/{attachment_id}/src")
def attachment_src(attachment_id: int, size: str = "original"):
    services = _build_services()
    _require_attachment(services, attachment_id)
    spec = _parse_size(size, services.cfg.media.image_sizes)
    requested = spec.slug if spec.slug else [spec.width, spec.height]
    source = services.image_src.image_src(attachment_id, requested)
    if source is None:
        return {"fallback": True, "source": None}
    return {"fallback": False, "source": source.model_dump()}


@router.get("/attachments/{attachment_id}/resolve")
def attachment_resolve(attachment_id: int, size: str):
    services = _build_services()
    attachment = _require_attachment(services, attachment_id)
    spec = _parse_size(size, services.cfg.media.image_sizes)
    resolved = services.resolver.resolve_size(attachment, spec)
    return {"resolved": resolved.model_dump() if resolved else None}


@router.get("/attachments/{attachment_id}/sizes")
def attachment_sizes(attachment_id: int):
    services = _build_services()
    _require_attachment(services, attachment_id)
    return {"media_details": services.store.get(attachment_id, META_MEDIA_SIZES)}


@router.post("/attachments/{attachment_id}/project")
def attachment_project(attachment_id: int):
    services = _build_services()
    attachment = _require_attachment(services, attachment_id)
    details = services.projector.project(attachment)
    if details is None:
        raise HTTPException(status_code=502, detail="projection_failed")
    return details.model_dump()


@router.get("/attachments/{attachment_id}/caption")
def attachment_caption(attachment_id: int):
    services = _build_services()
    _require_attachment(services, attachment_id)
    return {"caption": services.projector.caption(attachment_id)}


@router.post("/attachments/{attachment_id}/flush-cache")
def attachment_flush_cache(attachment_id: int):
    services = _build_services()
    _require_attachment(services, attachment_id)
    services.projector.flush_references(attachment_id)
    return {"success": True, "message": "The Imageshop references have been re-created."}


@router.post("/attachments/{attachment_id}/metadata")
def attachment_metadata(attachment_id: int, payload: dict):
    services = _build_services()
    attachment = _require_attachment(services, attachment_id)
    if not attachment.remote_document_id:
        raise HTTPException(status_code=409, detail="attachment_not_exported")
    ret = services.projector.update_remote_metadata(attachment.remote_document_id, payload)
    if isinstance(ret, ApiError):
        _api_error(ret)
    return ret


@router.post("/attachments/{attachment_id}/export")
def attachment_export(attachment_id: int, force: bool = False):
    services = _build_services()
    _require_attachment(services, attachment_id)
    ret = services.media.export_single(attachment_id, force=force)
    if ret is None:
        raise HTTPException(status_code=502, detail="export_failed")
    attachment = services.store.get_attachment(attachment_id)
    return {"ok": True, "attachment_id": ret, "document_id": attachment.remote_document_id if attachment else None}


@router.post("/attachments/{attachment_id}/validate")
def attachment_validate(attachment_id: int):
    services = _build_services()
    try:
        reexported = services.media.validate_reference(attachment_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="attachment_not_found")
    return {"ok": True, "reexported": reexported}


@router.get("/duplicates")
def duplicates_list():
    return {"items": duplicates_report(_build_services().store)}


@router.post("/duplicates/delete")
def duplicates_delete(payload: dict | None = None):
    body = payload or {}
    services = _build_services()
    report = delete_remote_duplicates(
        services.store,
        services.client,
        services.cfg.auth.upload_interface,
        services.log_func,
        attachment_ids=body.get("attachment_ids") or None,
        dry_run=bool(body.get("dry_run", False)),
        delay=float(body.get("delay", 0)),
    )
    return report.to_dict()
