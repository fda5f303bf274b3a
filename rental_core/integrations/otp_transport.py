from __future__ import annotations

import logging
from typing import Protocol

from rental_core.core.redaction import mask_phone

logger = logging.getLogger(__name__)


class OtpDeliveryError(Exception):
    pass


class OtpSender(Protocol):
    def send(self, phone: str, code: str, purpose: str) -> None: ...


class LoggingOtpSender:
    """
    Development sender. Codes only reach the log when `reveal_codes` is set (dev environment).
    """

    def __init__(self, reveal_codes: bool = False):
        self.reveal_codes = reveal_codes

    def send(self, phone: str, code: str, purpose: str) -> None:
        extra = {"phone": mask_phone(phone), "purpose": purpose}
        if self.reveal_codes:
            extra["otp"] = code
        logger.info("otp dispatched", extra=extra)
