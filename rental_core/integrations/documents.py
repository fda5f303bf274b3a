from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Protocol

from rental_core.core.hashing import canonical_dumps

logger = logging.getLogger(__name__)


class DocumentRenderError(Exception):
    pass


@dataclass(frozen=True)
class RenderedDocument:
    ref: str
    sha256: str


class DocumentGenerator(Protocol):
    def render(self, contract_id: str, snapshot: Dict[str, Any]) -> RenderedDocument: ...


class SnapshotDocumentGenerator:
    """
    Writes the signed-data snapshot as canonical JSON under `base_dir`.
    Stands in for the PDF renderer in development; the ref/hash contract is the same.
    """

    def __init__(self, base_dir: str):
        self.base_dir = base_dir

    def render(self, contract_id: str, snapshot: Dict[str, Any]) -> RenderedDocument:
        body = canonical_dumps(snapshot).encode("utf-8")
        digest = hashlib.sha256(body).hexdigest()
        path = os.path.join(self.base_dir, f"contract-{contract_id}.json")
        try:
            os.makedirs(self.base_dir, exist_ok=True)
            with open(path, "wb") as fh:
                fh.write(body)
        except OSError as exc:
            raise DocumentRenderError(str(exc)) from exc
        logger.info("contract snapshot written", extra={"contract_id": contract_id, "path": path})
        return RenderedDocument(ref=path, sha256=digest)
