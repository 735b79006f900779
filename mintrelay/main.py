import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from mintrelay.api import claims, collections, drops, health, metrics, relay, subscriptions
from mintrelay.core.config import settings, validate_config
from mintrelay.core.database import create_all_tables, init_engine
from mintrelay.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from mintrelay.core.logging import configure_logging
from mintrelay.core.middleware.ratelimit import RelayRateLimitMiddleware
from mintrelay.core.middleware.request_id import RequestIdMiddleware
from mintrelay.core.ratelimit import RateLimitConfig, RateLimiter
from mintrelay.features.services import RelayServices, build_services

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


def create_app(
    services: Optional[RelayServices] = None,
    *,
    rate_limit_config: Optional[RateLimitConfig] = None,
    limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = logging.getLogger("mintrelay")
        logger.info("Starting mintrelay...")
        app.state.startup_time = time.time()
        if getattr(app.state, "services", None) is None:
            init_engine()
            create_all_tables()
            app.state.services = build_services(settings)
        try:
            yield
        finally:
            logger.info("Stopping mintrelay...")

    app = FastAPI(title="mintrelay", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    # Outermost last: request ids wrap rate-limit rejections too
    app.add_middleware(RelayRateLimitMiddleware, config=rate_limit_config, limiter=limiter)
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(subscriptions.router)
    app.include_router(collections.router)
    app.include_router(claims.router)
    app.include_router(drops.router)
    app.include_router(relay.router)
    app.include_router(health.root_router)
    app.include_router(metrics.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("mintrelay.main:app", host=os.getenv("HOST", "127.0.0.1"), port=int(os.getenv("PORT", "8000")))
