import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.middleware.cors import CORSMiddleware

# Load env from the project root .env (tests configure the environment themselves)
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), ".env"))

from restohub.core.config import settings, validate_config
from restohub.core.logging import configure_logging
from restohub.core.middleware.request_id import RequestIdMiddleware
from restohub.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from restohub.core.database import check_connection
from restohub.api import plans, subscription, webhooks
from restohub.features.subscription.middleware import (
    GuardRejected,
    SubscriptionAccessMiddleware,
    SubscriptionMiddlewareConfig,
    guard_rejected_handler,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("restohub")
    logger.info("Starting RestoHub subscription service...")
    if not check_connection():
        logger.warning("Database not reachable at startup")
    try:
        yield
    finally:
        logging.getLogger("restohub").info("Stopping RestoHub subscription service...")


def create_app(access_config: Optional[SubscriptionMiddlewareConfig] = None) -> FastAPI:
    configure_logging(settings.ENV)
    validate_config(strict=settings.CONFIG_STRICT)

    app = FastAPI(title="RestoHub - Subscriptions", lifespan=lifespan)

    app.add_exception_handler(GuardRejected, guard_rejected_handler)
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # Middlewares (last added runs first)
    app.add_middleware(SubscriptionAccessMiddleware, config=access_config)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.BASE_URL],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIdMiddleware)

    app.include_router(plans.router, prefix="/api")
    app.include_router(subscription.router, prefix="/api")
    app.include_router(webhooks.router, prefix="/api")

    @app.get("/healthz")
    def healthz():
        return {"ok": True, "database": check_connection()}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("restohub.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
