from __future__ import annotations

import uuid

from celery.utils.log import get_task_logger
from sqlalchemy.orm import Session

from recordexport.core.config import get_settings
from recordexport.db.session import SessionLocal
from recordexport.services.exporters import build_default_registry
from recordexport.services.forms import load_form_schema
from recordexport.services.search import SearchUnavailable, build_search_backend
from worker.celery_app import celery_app

logger = get_task_logger(__name__)

# Built once per worker process; tasks resolve formats against it.
registry = build_default_registry()


def _session() -> Session:
    return SessionLocal()


def _terminate(db: Session, export_id: str, exc: Exception) -> None:
    from recordexport.models import ExportJob, TERMINAL_STATUSES
    from recordexport.services.bulk_exports import mark_terminated

    export_job = db.get(ExportJob, uuid.UUID(export_id))
    if export_job is not None and export_job.status not in TERMINAL_STATUSES:
        mark_terminated(db, export_job, str(exc))
        db.commit()


@celery_app.task(name="worker.tasks.run_export_task", bind=True, default_retry_delay=60)
def run_export_task(self, export_id: str) -> dict:
    from recordexport.models import ExportJob
    from recordexport.services.bulk_exports import mark_completed, mark_started, run_export
    from recordexport.services.packaging import PackagingFailure

    settings = get_settings()
    db = _session()
    backend = build_search_backend(settings)
    try:
        export_job = db.get(ExportJob, uuid.UUID(export_id))
        if export_job is None:
            raise RuntimeError(f"Export job {export_id} not found")
        if export_job.status is None:
            mark_started(db, export_job)
            db.commit()

        result = run_export(
            db,
            export_job,
            backend=backend,
            registry=registry,
            forms=load_form_schema(settings),
            settings=settings,
        )
        mark_completed(db, export_job)
        db.commit()
        return {
            "id": result.job_id,
            "status": export_job.status.value,
            "file_name": result.file_name,
            "exported": result.exported,
            "total": result.total,
        }
    except SearchUnavailable as exc:
        db.rollback()
        if self.request.retries < settings.export_run_max_retries:
            logger.warning("Search unavailable for export %s, retrying: %s", export_id, exc)
            raise self.retry(exc=exc, max_retries=settings.export_run_max_retries)
        logger.exception("Export task gave up after %d retries", self.request.retries, exc_info=exc)
        _terminate(db, export_id, exc)
        raise
    except PackagingFailure as exc:
        db.rollback()
        logger.exception("Export task failed to package", exc_info=exc)
        _terminate(db, export_id, exc)
        raise
    except Exception as exc:
        db.rollback()
        logger.exception("Export task failed; job left processing", exc_info=exc)
        raise
    finally:
        backend.close()
        db.close()


@celery_app.task(name="worker.tasks.sweep_export_jobs_task")
def sweep_export_jobs_task() -> dict:
    from recordexport.services.retention import sweep

    db = _session()
    try:
        result = sweep(db, settings=get_settings())
        db.commit()
        return {"archived": result.archived, "cleaned": result.cleaned, "skipped": result.skipped}
    finally:
        db.close()
