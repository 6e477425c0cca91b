"""Celery application configuration."""

from celery import Celery
from celery.schedules import crontab

from nudge.config import get_settings


def create_celery_app() -> Celery:
    settings = get_settings()

    app = Celery("nudge")
    app.config_from_object(
        {
            "broker_url": settings.effective_celery_broker,
            "result_backend": settings.effective_celery_backend,
            "task_serializer": "json",
            "result_serializer": "json",
            "accept_content": ["json"],
            "timezone": "UTC",
            "enable_utc": True,
            "task_track_started": True,
            "task_acks_late": True,
            "worker_prefetch_multiplier": 1,
            # eta tasks wait unacked on the worker; keep the broker from redelivering them early
            "broker_transport_options": {
                "visibility_timeout": settings.callback_visibility_timeout_s,
            },
            "task_routes": {
                "nudge.queue.workers.fire_reminder_alert": {"queue": settings.callback_queue},
                "nudge.queue.workers.register_reminder_callbacks": {
                    "queue": settings.callback_queue
                },
                "nudge.queue.workers.cleanup_stale_reminders": {"queue": "maintenance"},
            },
            "beat_schedule": {
                "cleanup-stale-reminders": {
                    "task": "nudge.queue.workers.cleanup_stale_reminders",
                    "schedule": crontab(hour=settings.cleanup_hour_utc, minute=0),
                },
            },
        }
    )
    app.autodiscover_tasks(["nudge.queue"], related_name="workers")
    return app


celery_app = create_celery_app()
