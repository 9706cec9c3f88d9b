from __future__ import annotations

import logging
import tempfile
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy.orm import Session

from recordexport.core.config import Settings, get_settings
from recordexport.models import TERMINAL_STATUSES, ExportJob, ExportStatusEnum
from recordexport.schemas.export import AccessScope, ExportJobCreate, ExportJobResponse, SortOrder
from recordexport.services.exporters import BaseExporter, ExporterRegistry
from recordexport.services.forms import FormSchema
from recordexport.services.packaging import (
    FileMissing,
    PackagingFailure,
    archive_path,
    package,
    remove_archive,
    safe_file_name,
)
from recordexport.services.projection import (
    PermissionProjector,
    properties_by_module_to_keys,
    property_keys_by_module_to_properties,
)
from recordexport.services.search import SearchBackend, SearchQuery, dump_filters, iter_pages, parse_filters

logger = logging.getLogger(__name__)


class InvalidJobState(RuntimeError):
    pass


@dataclass(frozen=True)
class ExportRunResult:
    job_id: str
    file_name: str
    path: Path
    exported: int
    total: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_not_terminal(job: ExportJob, action: str) -> None:
    if job.status in TERMINAL_STATUSES:
        raise InvalidJobState(f"Export job {job.id} is {job.status.value}; cannot {action}")


def default_file_name(record_type: str, extension: str, when: datetime | None = None) -> str:
    stamp = (when or _utcnow()).strftime("%Y%m%d-%H%M%S")
    return f"{record_type}-{stamp}.{extension}"


def create_export_job(
    db: Session,
    request: ExportJobCreate,
    scope: AccessScope,
    *,
    registry: ExporterRegistry,
) -> ExportJob:
    exporter = registry.resolve(request.record_type, request.format)
    filters = parse_filters(request.filters)
    requested_file_name = safe_file_name(request.file_name) if request.file_name else None

    job = ExportJob(
        record_type=request.record_type,
        filters=dump_filters(filters),
        order=request.order.model_dump() if request.order else None,
        query=request.query or None,
        match_criteria=request.match_criteria or None,
        owned_by=scope.user_name,
        managed_user_names=list(scope.managed_user_names),
        permitted_property_keys=properties_by_module_to_keys(scope.permitted_properties),
        format=exporter.id,
        custom_export_params=request.custom_export_params or None,
        password=request.password or None,
        requested_file_name=requested_file_name,
    )
    db.add(job)
    db.flush()
    logger.info(
        "Created export job id=%s record_type=%s format=%s owner=%s",
        job.id,
        job.record_type,
        job.format,
        job.owned_by,
    )
    return job


def get_export_job(db: Session, job_id: str | uuid.UUID) -> ExportJob | None:
    try:
        key = job_id if isinstance(job_id, uuid.UUID) else uuid.UUID(str(job_id))
    except ValueError:
        return None
    return db.get(ExportJob, key)


def job_status(db: Session, job_id: str | uuid.UUID) -> ExportJobResponse | None:
    job = get_export_job(db, job_id)
    if job is None:
        return None
    return ExportJobResponse(
        id=str(job.id),
        record_type=job.record_type,
        format=job.format,
        owned_by=job.owned_by,
        status=job.status.value if job.status else None,
        file_name=job.file_name,
        started_at=job.started_at,
        completed_on=job.completed_on,
        error_message=job.error_message,
    )


def available_formats(registry: ExporterRegistry, record_type: str) -> list[str]:
    return registry.formats_for(record_type)


def mark_started(db: Session, job: ExportJob) -> None:
    _ensure_not_terminal(job, "start")
    job.status = ExportStatusEnum.PROCESSING
    job.started_at = _utcnow()
    job.error_message = None
    db.flush()
    logger.info("Export job %s started", job.id)


def search_query_for(job: ExportJob) -> SearchQuery:
    return SearchQuery(
        record_type=job.record_type,
        filters=parse_filters(job.filters),
        order=SortOrder(**job.order) if job.order else None,
        query=job.query,
        match_criteria=job.match_criteria,
        managed_user_names=tuple(job.managed_user_names or ()),
    )


def run_export(
    db: Session,
    job: ExportJob,
    *,
    backend: SearchBackend,
    registry: ExporterRegistry,
    forms: FormSchema,
    settings: Settings | None = None,
    page_size: int | None = None,
) -> ExportRunResult:
    """Scan every matching record, export it and package the archive.

    Any failure propagates with the job still ``processing``; nothing is
    packaged unless the whole scan succeeded.
    """
    _ensure_not_terminal(job, "run")
    if job.status != ExportStatusEnum.PROCESSING:
        raise InvalidJobState(f"Export job {job.id} has not been started")

    settings = settings or get_settings()
    page_size = page_size or settings.export_page_size
    exporter = registry.resolve(job.record_type, job.format)
    permitted = property_keys_by_module_to_properties(job.permitted_property_keys, forms.properties(job.record_type))
    projector = PermissionProjector(job.permitted_property_keys)
    query = search_query_for(job)
    params: dict[str, Any] = dict(job.custom_export_params or {})
    file_name = job.requested_file_name or default_file_name(job.record_type, exporter.extension, job.started_at)

    if exporter.streaming:
        path, exported, total = _run_streaming(
            exporter, backend, query, projector, permitted, job, params, file_name, page_size, settings
        )
    else:
        projected: list[dict[str, Any]] = []
        total = 0
        for page in iter_pages(backend, query, page_size):
            projected.extend(projector.project(record) for record in page.records)
            total = page.total
        payload = exporter.export(projected, permitted, job.owned_by, params)
        path = package(file_name, payload, job.password, settings=settings, job_id=job.id)
        exported = len(projected)

    job.file_name = file_name
    db.flush()
    logger.info("Export job %s wrote %s (%d of %d records)", job.id, path.name, exported, total)
    return ExportRunResult(job_id=str(job.id), file_name=file_name, path=path, exported=exported, total=total)


def _run_streaming(
    exporter: BaseExporter,
    backend: SearchBackend,
    query: SearchQuery,
    projector: PermissionProjector,
    permitted: Any,
    job: ExportJob,
    params: dict[str, Any],
    file_name: str,
    page_size: int,
    settings: Settings,
) -> tuple[Path, int, int]:
    exported = 0
    total = 0
    try:
        spool = tempfile.NamedTemporaryFile(dir=str(settings.export_dir), suffix=".part", delete=False)
    except OSError as exc:
        raise PackagingFailure(f"Could not create export spool in {settings.export_dir}: {exc}") from exc

    spool_path = Path(spool.name)
    try:
        with spool:
            spool.write(exporter.header(permitted, params))
            for page in iter_pages(backend, query, page_size):
                projected = [projector.project(record) for record in page.records]
                spool.write(exporter.export_chunk(projected, permitted, job.owned_by, params, written=exported))
                exported += len(projected)
                total = page.total
            spool.write(exporter.footer(written=exported))
        path = package(file_name, spool_path, job.password, settings=settings, job_id=job.id)
    except OSError as exc:
        raise PackagingFailure(f"Could not write export spool {spool_path}: {exc}") from exc
    finally:
        spool_path.unlink(missing_ok=True)
    return path, exported, total


def mark_completed(db: Session, job: ExportJob) -> None:
    _ensure_not_terminal(job, "complete")
    if job.status != ExportStatusEnum.PROCESSING or not job.file_name:
        raise InvalidJobState(f"Export job {job.id} has no finished run to complete")
    job.status = ExportStatusEnum.COMPLETE
    job.completed_on = _utcnow()
    job.password = None
    db.flush()
    logger.info("Export job %s completed", job.id)


def mark_terminated(db: Session, job: ExportJob, error_message: str | None = None) -> None:
    _ensure_not_terminal(job, "terminate")
    job.status = ExportStatusEnum.TERMINATED
    job.completed_on = _utcnow()
    job.password = None
    if error_message:
        job.error_message = error_message.strip()[:2000]
    db.flush()
    logger.warning("Export job %s terminated: %s", job.id, job.error_message or "no reason given")


def stored_file_path(job: ExportJob, settings: Settings | None = None) -> Path | None:
    if not job.file_name:
        return None
    return archive_path(job.file_name, settings, job_id=job.id)


def remove_job_file(job: ExportJob, settings: Settings | None = None) -> bool:
    """Best-effort delete of the job's archive. Returns True if a file was removed."""
    path = stored_file_path(job, settings)
    if path is None:
        return False
    try:
        remove_archive(path)
    except FileMissing:
        logger.warning("Archiving export job %s: file %s missing", job.id, path)
        return False
    except OSError as exc:
        logger.warning("Archiving export job %s: could not delete %s: %s", job.id, path, exc)
        return False
    try:
        path.parent.rmdir()
    except OSError as exc:
        logger.warning("Export job %s: could not remove folder %s: %s", job.id, path.parent, exc)
    return True


def archive_job(db: Session, job: ExportJob, *, settings: Settings | None = None) -> None:
    _ensure_not_terminal(job, "archive")
    if job.status is None:
        raise InvalidJobState(f"Export job {job.id} has not been started")
    job.status = ExportStatusEnum.ARCHIVED
    db.flush()
    remove_job_file(job, settings)
    logger.info("Export job %s archived", job.id)
