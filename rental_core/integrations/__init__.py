from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable

from rental_core.core.clock import Clock, SystemClock
from rental_core.core.config import Settings
from rental_core.integrations.documents import DocumentGenerator, SnapshotDocumentGenerator
from rental_core.integrations.mediators import MediatorDirectory, StaticMediatorDirectory
from rental_core.integrations.notifications import LoggingNotificationGateway, NotificationGateway
from rental_core.integrations.otp_transport import LoggingOtpSender, OtpSender
from rental_core.integrations.payments import DeferredPaymentGateway, PaymentGateway


@dataclass
class Integrations:
    """
    External collaborators consumed by the core, bundled for injection.
    """

    payments: PaymentGateway
    documents: DocumentGenerator
    notifications: NotificationGateway
    otp_sender: OtpSender
    mediators: MediatorDirectory
    clock: Clock = field(default_factory=SystemClock)
    sleep: Callable[[float], None] = time.sleep


def default_integrations(settings: Settings) -> Integrations:
    return Integrations(
        payments=DeferredPaymentGateway(),
        documents=SnapshotDocumentGenerator(settings.document_dir),
        notifications=LoggingNotificationGateway(),
        otp_sender=LoggingOtpSender(reveal_codes=settings.environment == "dev"),
        mediators=StaticMediatorDirectory(settings.mediator_pool),
    )
