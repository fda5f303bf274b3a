from __future__ import annotations

from typing import Optional


def mask_phone(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return None
    digits = phone.strip()
    if len(digits) <= 4:
        return "****"
    return digits[:4] + "*" * (len(digits) - 6) + digits[-2:]
