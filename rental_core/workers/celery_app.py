"""
Celery application for the periodic sweeps.

    celery -A rental_core.workers.celery_app worker --beat -l info

Beat fires every sweep each `sweep_interval_seconds`; running several workers is
safe because every sweep item is claimed by compare-and-set.
"""
from __future__ import annotations

from typing import Any, Dict

from celery import Celery

from rental_core.core.config import Settings, get_settings
from rental_core.services.sweep_service import SWEEP_NAMES


def task_name(sweep: str) -> str:
    return f"rental_core.sweeps.{sweep}"


def beat_schedule(settings: Settings) -> Dict[str, Dict[str, Any]]:
    return {
        f"sweep-{sweep.replace('_', '-')}": {
            "task": task_name(sweep),
            "schedule": float(settings.sweep_interval_seconds),
            # a tick that misses its interval is superseded by the next one
            "options": {"expires": settings.sweep_interval_seconds},
        }
        for sweep in SWEEP_NAMES
    }


def create_celery_app(settings: Settings) -> Celery:
    app = Celery("rental_core", include=["rental_core.workers.tasks"])
    app.conf.broker_url = settings.celery_broker_url
    app.conf.result_backend = settings.celery_result_backend
    app.conf.task_serializer = "json"
    app.conf.result_serializer = "json"
    app.conf.accept_content = ["json"]
    app.conf.timezone = "UTC"
    app.conf.task_always_eager = settings.celery_task_always_eager
    app.conf.beat_schedule = beat_schedule(settings)
    return app


app = create_celery_app(get_settings())
