from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from recordexport.core.config import Settings, get_settings
from recordexport.models import ExportJob, ExportStatusEnum
from recordexport.services.bulk_exports import InvalidJobState, archive_job, remove_job_file, stored_file_path

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    archived: list[str] = field(default_factory=list)
    cleaned: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def archive_cutoff(now: datetime | None = None, settings: Settings | None = None) -> datetime:
    settings = settings or get_settings()
    return (now or datetime.now(timezone.utc)) - timedelta(days=settings.export_archive_cutoff_days)


def sweep(
    db: Session,
    cutoff: datetime | None = None,
    now: datetime | None = None,
    *,
    settings: Settings | None = None,
) -> SweepResult:
    """Archive completed jobs older than ``cutoff`` and clear files left by old terminated jobs.

    Each job is committed on its own; a job changed concurrently by another
    writer is skipped and picked up by the next sweep.
    """
    settings = settings or get_settings()
    cutoff = cutoff or archive_cutoff(now, settings)
    result = SweepResult()

    completed = (
        db.query(ExportJob)
        .filter(ExportJob.status == ExportStatusEnum.COMPLETE, ExportJob.completed_on < cutoff)
        .order_by(ExportJob.completed_on.asc())
        .all()
    )
    for job in completed:
        job_id = str(job.id)
        try:
            archive_job(db, job, settings=settings)
            db.commit()
            result.archived.append(job_id)
        except (StaleDataError, InvalidJobState) as exc:
            db.rollback()
            logger.warning("Skipping export job %s during sweep: %s", job_id, exc)
            result.skipped.append(job_id)

    terminated = (
        db.query(ExportJob)
        .filter(
            ExportJob.status == ExportStatusEnum.TERMINATED,
            ExportJob.completed_on < cutoff,
            ExportJob.file_name.is_not(None),
        )
        .all()
    )
    for job in terminated:
        path = stored_file_path(job, settings)
        if path is not None and path.exists() and remove_job_file(job, settings):
            result.cleaned.append(str(job.id))

    logger.info(
        "Export sweep before %s: archived=%d cleaned=%d skipped=%d",
        cutoff.isoformat(),
        len(result.archived),
        len(result.cleaned),
        len(result.skipped),
    )
    return result
