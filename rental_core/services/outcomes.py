#rental_core/services/outcomes.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from rental_core.core.errors import DomainError, ErrorKind


class Outcome(str, Enum):
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    PENDING_RETRY = "PENDING_RETRY"


@dataclass
class OperationResult:
    """
    Caller-facing result of one coordinator operation.
    `blocking` names the party/action holding progress up when there is one.
    """

    outcome: Outcome
    code: str = "OK"
    reason: Optional[str] = None
    blocking: Optional[str] = None
    kind: Optional[ErrorKind] = None
    data: Any = None
    notes: List[str] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.outcome == Outcome.ACCEPTED

    @classmethod
    def accept(cls, data: Any = None, *, blocking: Optional[str] = None, notes: Optional[List[str]] = None) -> "OperationResult":
        return cls(Outcome.ACCEPTED, data=data, blocking=blocking, notes=list(notes or []))

    @classmethod
    def from_error(cls, err: DomainError, data: Any = None) -> "OperationResult":
        outcome = Outcome.PENDING_RETRY if err.kind == ErrorKind.TRANSIENT else Outcome.REJECTED
        return cls(outcome, code=err.code, reason=err.message, blocking=err.blocking, kind=err.kind, data=data)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "code": self.code,
            "reason": self.reason,
            "blocking": self.blocking,
            "notes": self.notes,
        }
