import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from rental_core.core.config import get_settings
from rental_core.db.session import get_db

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health(request: Request):
    return {
        "status": "ok",
        "environment": get_settings().environment,
        "request_id": getattr(request.state, "request_id", None),
    }


@router.get("/health/ready")
def ready(db: Session = Depends(get_db)):
    """Readiness: the database answers."""
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("readiness check failed")
        raise HTTPException(status_code=503, detail="Database unavailable.")
    return {"status": "ready"}
