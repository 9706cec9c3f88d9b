from celery import Celery
from celery.signals import worker_process_init

from recordexport.core.config import get_settings
from recordexport.core.logging import configure_logging

settings = get_settings()

celery_app = Celery(
    "recordexport_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["worker.tasks"],
)

celery_app.conf.update(
    task_routes={
        "worker.tasks.run_export_task": {"queue": "exports"},
        "worker.tasks.sweep_export_jobs_task": {"queue": "maintenance"},
    },
    beat_schedule={
        "sweep-export-jobs": {
            "task": "worker.tasks.sweep_export_jobs_task",
            "schedule": settings.export_sweep_interval_seconds,
        }
    },
    timezone="UTC",
)


@worker_process_init.connect
def init_worker_process(**_kwargs) -> None:
    from recordexport.db.session import Base, engine
    from recordexport.services.packaging import ensure_export_dir

    configure_logging()
    ensure_export_dir(settings)
    Base.metadata.create_all(bind=engine)
