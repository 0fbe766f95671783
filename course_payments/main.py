from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from course_payments.config import Settings
from course_payments.errors import PaymentsError, SignatureError
from course_payments.logging_config import configure_logging
from course_payments.routes import router
from course_payments.services import Services, build_services

logger = structlog.get_logger(__name__)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Application factory: `uvicorn course_payments.main:create_app --factory`."""
    if services is None:
        settings = Settings.from_env()
        configure_logging(settings.log_level, settings.json_logs)
        services = build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        services.close()

    app = FastAPI(title="Course Payments Service", lifespan=lifespan)
    app.state.services = services
    app.include_router(router)

    @app.exception_handler(PaymentsError)
    async def payments_error_handler(request: Request, exc: PaymentsError):
        body = {"detail": exc.message, "retryable": exc.retryable}
        if isinstance(exc, SignatureError):
            logger.warning("webhook_rejected", path=request.url.path, reason=exc.message)
        return JSONResponse(status_code=exc.status_code, content=body)

    return app
