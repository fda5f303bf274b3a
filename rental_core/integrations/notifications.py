from __future__ import annotations

import logging
from typing import Any, Dict, Protocol

logger = logging.getLogger(__name__)


class NotificationGateway(Protocol):
    def notify(self, user_id: str, template_code: str, payload: Dict[str, Any]) -> None: ...


class LoggingNotificationGateway:
    """
    Default gateway: records the intent in the structured log.
    Push/email/WhatsApp delivery lives outside this service.
    """

    def notify(self, user_id: str, template_code: str, payload: Dict[str, Any]) -> None:
        logger.info("notification", extra={"user_id": user_id, "template": template_code, "payload": payload})
