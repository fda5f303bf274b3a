import logging

from fastapi import FastAPI

from rental_core.api.v1.router import v1_router
from rental_core.core.config import get_settings
from rental_core.core.logging import configure_logging
from rental_core.core.middleware import RequestContextMiddleware

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        version="0.1.0",
        description="Rental contracts, OTP signatures, escrowed rent and disputes.",
    )
    app.add_middleware(RequestContextMiddleware, header_name=settings.request_id_header)
    app.include_router(v1_router, prefix=settings.api_prefix)

    logger.info("api configured", extra={"prefix": settings.api_prefix})
    return app


app = create_app()
