# rental_core/core/deps.py
from __future__ import annotations

from functools import lru_cache

from fastapi import Depends

from rental_core.core.config import get_settings
from rental_core.integrations import Integrations, default_integrations
from rental_core.services.contract_coordinator import ContractCoordinator


@lru_cache(maxsize=1)
def get_integrations() -> Integrations:
    """
    Process-wide external collaborators. Overridden in tests.
    """
    return default_integrations(get_settings())


def get_coordinator(integrations: Integrations = Depends(get_integrations)) -> ContractCoordinator:
    # stateless apart from its collaborators; one per request is cheap
    return ContractCoordinator(get_settings(), integrations)
