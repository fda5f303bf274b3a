from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, Field


class OperationResultResponse(BaseModel):
    outcome: str
    code: str
    reason: Optional[str] = None
    blocking: Optional[str] = None
    notes: List[str] = Field(default_factory=list)
    data: Optional[Any] = None
