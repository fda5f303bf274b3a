"""
Sweep runner shared by the Celery tasks and the one-shot command.

    python -m rental_core.workers.sweeps --once

Periodic scheduling belongs to Celery beat (see `rental_core.workers.celery_app`).
"""
from __future__ import annotations

import argparse
import logging
import uuid
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional

from sqlalchemy.orm import Session

from rental_core.core.config import Settings, get_settings
from rental_core.core.logging import configure_logging, request_id_var
from rental_core.db.session import SessionLocal
from rental_core.integrations import Integrations, default_integrations
from rental_core.services.contract_coordinator import ContractCoordinator
from rental_core.services.sweep_service import SweepReport, SweepService

logger = logging.getLogger(__name__)


class SweepRunner:
    def __init__(self, settings: Settings, integrations: Integrations, session_factory: Callable[[], Session]):
        self.settings = settings
        self.session_factory = session_factory
        self.service = SweepService(ContractCoordinator(settings, integrations))

    @contextmanager
    def _session(self) -> Iterator[Session]:
        token = request_id_var.set(f"sweep-{uuid.uuid4().hex[:12]}")
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()
            request_id_var.reset(token)

    def run_sweep(self, name: str) -> SweepReport:
        with self._session() as db:
            return self.service.run(name, db)

    def run_once(self) -> List[SweepReport]:
        with self._session() as db:
            return self.service.run_all(db)


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Run escrow/contract sweeps once; Celery beat schedules them otherwise.")
    parser.add_argument("--once", action="store_true", help="run a single tick and exit")
    args = parser.parse_args(argv)
    if not args.once:
        parser.error("periodic runs are scheduled by Celery beat: celery -A rental_core.workers.celery_app worker --beat")

    settings = get_settings()
    configure_logging(settings)

    runner = SweepRunner(settings, default_integrations(settings), SessionLocal)
    for report in runner.run_once():
        logger.info(
            "sweep report",
            extra={"sweep": report.name, "processed": report.processed, "skipped": report.skipped, "errors": report.errors},
        )


if __name__ == "__main__":
    main()
