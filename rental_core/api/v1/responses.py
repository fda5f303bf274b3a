# rental_core/api/v1/responses.py
from __future__ import annotations

import uuid
from typing import Any, Dict

from fastapi import HTTPException
from pydantic import BaseModel

from rental_core.core.errors import ErrorKind
from rental_core.services.outcomes import OperationResult, Outcome

_STATUS_BY_CODE = {
    "NOT_FOUND": 404,
    "FORBIDDEN": 403,
    "NOT_A_PARTY": 403,
    "TOO_MANY_ATTEMPTS": 429,
    "GATEWAY_DECLINED": 402,
}


def parse_uuid(raw: str, name: str) -> uuid.UUID:
    try:
        return uuid.UUID(raw)
    except Exception:
        raise HTTPException(status_code=400, detail=f"{name} must be UUID.")


def _status_for(result: OperationResult) -> int:
    if result.code in _STATUS_BY_CODE:
        return _STATUS_BY_CODE[result.code]
    if result.kind == ErrorKind.CONFLICT:
        return 409
    if result.kind == ErrorKind.INVARIANT:
        return 500
    return 400


def to_body(result: OperationResult) -> Dict[str, Any]:
    body = result.as_dict()
    data = result.data
    body["data"] = data.model_dump() if isinstance(data, BaseModel) else data
    return body


def respond(result: OperationResult) -> Dict[str, Any]:
    """
    ACCEPTED and PENDING_RETRY return a body (the route picks 200/201/202);
    REJECTED raises HTTPException carrying code, reason and what blocks progress.
    """
    if result.outcome == Outcome.REJECTED:
        raise HTTPException(
            status_code=_status_for(result),
            detail={"code": result.code, "reason": result.reason, "blocking": result.blocking},
        )
    return to_body(result)


def status_code_for(result: OperationResult, success: int = 200) -> int:
    return 202 if result.outcome == Outcome.PENDING_RETRY else success
