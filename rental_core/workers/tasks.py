"""
One Celery task per sweep. Each task runs a single sweep in a fresh session and
returns its report counters.
"""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, Dict

from celery import shared_task

from rental_core.core.config import get_settings
from rental_core.core.logging import configure_logging
from rental_core.db.session import SessionLocal
from rental_core.integrations import default_integrations
from rental_core.workers.sweeps import SweepRunner

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_runner() -> SweepRunner:
    settings = get_settings()
    configure_logging(settings)
    return SweepRunner(settings, default_integrations(settings), SessionLocal)


def _run(sweep: str) -> Dict[str, Any]:
    report = get_runner().run_sweep(sweep)
    return {"name": report.name, "processed": report.processed, "skipped": report.skipped, "errors": report.errors}


@shared_task(name="rental_core.sweeps.retraction_reminders")
def sweep_retraction_reminders():
    return _run("retraction_reminders")


@shared_task(name="rental_core.sweeps.retraction_windows")
def sweep_retraction_windows():
    return _run("retraction_windows")


@shared_task(name="rental_core.sweeps.recurring_entries")
def sweep_recurring_entries():
    return _run("recurring_entries")


@shared_task(name="rental_core.sweeps.auto_release")
def sweep_auto_release():
    return _run("auto_release")


@shared_task(name="rental_core.sweeps.document_renders")
def sweep_document_renders():
    return _run("document_renders")


@shared_task(name="rental_core.sweeps.mediator_assignment")
def sweep_mediator_assignment():
    return _run("mediator_assignment")


@shared_task(name="rental_core.sweeps.reconciliation")
def sweep_reconciliation():
    return _run("reconciliation")
