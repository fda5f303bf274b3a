from __future__ import annotations

from typing import List, Protocol, Sequence


class MediatorDirectory(Protocol):
    def available_mediators(self) -> List[str]: ...


class StaticMediatorDirectory:
    def __init__(self, mediator_ids: Sequence[str]):
        self._ids = list(mediator_ids)

    def available_mediators(self) -> List[str]:
        return list(self._ids)
