from fastapi import APIRouter

from rental_core.api.v1.health import router as health_router
from rental_core.api.v1.contracts import router as contracts_router
from rental_core.api.v1.escrow import router as escrow_router
from rental_core.api.v1.disputes import router as disputes_router
from rental_core.api.v1.audit import router as audit_router
from rental_core.api.v1.webhooks import router as webhooks_router


v1_router = APIRouter()

# ------------------------------------------------------------------
# SYSTEM
# ------------------------------------------------------------------
v1_router.include_router(health_router, tags=["health"])
v1_router.include_router(audit_router, tags=["audit"])

# ------------------------------------------------------------------
# CONTRACTS / ESCROW / DISPUTES
# ------------------------------------------------------------------
v1_router.include_router(contracts_router, tags=["contracts"])
v1_router.include_router(escrow_router, tags=["escrow"])
v1_router.include_router(disputes_router, tags=["disputes"])

# ------------------------------------------------------------------
# PROVIDER CALLBACKS
# ------------------------------------------------------------------
v1_router.include_router(webhooks_router, tags=["webhooks"])
