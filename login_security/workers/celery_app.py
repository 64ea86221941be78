from celery import Celery

from login_security.core.config import settings

celery_app = Celery(
    "login_security",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_default_queue="default",
    task_queues={
        "default": {"exchange": "default", "routing_key": "default"},
    },
    beat_schedule={
        "login-security-cleanup": {
            "task": "tasks.login_security_cleanup",
            "schedule": settings.LOGIN_SECURITY_CLEANUP_INTERVAL_MINUTES * 60,
        },
    },
)

celery_app.autodiscover_tasks(["login_security.workers.tasks"], related_name="login_security_cleanup")
